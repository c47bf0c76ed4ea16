"""
client/session.py - Everything one running client needs, wired together

Replaces process-wide singletons: the session owns the settings store,
credentials, browser access, sources and one SyncEngine per source.
"""

import platform
from typing import Any, Dict, List, Optional
import logging

from ..browser.chromium import ChromiumBookmarks
from ..browser.tree import BrowserBookmarks
from ..config import AppConfig
from ..errors import SyncError
from ..sources.base import BookmarkSource, Credentials, SourceType, create_source
from ..sync.engine import SyncEngine, SyncResult, SyncTrigger
from ..sync.history import BookmarkVersion, VersionDiff
from ..sync.models import SyncState
from ..sync.tombstone import TombstoneManager
from .credentials import CredentialStore
from .store import SettingsStore

logger = logging.getLogger(__name__)


class SyncSession:
    def __init__(self, config: AppConfig, store: SettingsStore,
                 credentials: CredentialStore, browser: BrowserBookmarks,
                 tombstones: TombstoneManager, device_id: str):
        self.config = config
        self.store = store
        self.credentials = credentials
        self.browser = browser
        self.tombstones = tombstones
        self.device_id = device_id
        self.sources: Dict[str, BookmarkSource] = {}
        self.engines: Dict[str, SyncEngine] = {}

    @classmethod
    async def open(cls, config: AppConfig, browser: Optional[BrowserBookmarks] = None,
                   client=None) -> 'SyncSession':
        """Load persisted state and build a source and engine per connected source"""
        data_path = config.data_path
        data_path.mkdir(parents=True, exist_ok=True)

        store = SettingsStore(data_path / "settings.json")
        await store.load()
        device_id = await store.get_or_create_device_id()

        session = cls(
            config=config,
            store=store,
            credentials=CredentialStore(data_path / "credentials"),
            browser=browser or ChromiumBookmarks(config.browser.bookmarks_path),
            tombstones=TombstoneManager(data_path, identity=device_id),
            device_id=device_id,
        )

        for source_config in config.sources:
            if not source_config.connected:
                continue
            source = create_source(
                source_config,
                session.credentials.load(source_config.id),
                client=client,
                timeout=config.request_timeout,
                max_retries=config.max_retries,
            )
            session.add_source(source)

        await store.set('sources', [
            {'id': s.id, 'type': s.type, 'name': s.name or s.id, 'connected': s.connected}
            for s in config.sources
        ])
        logger.info(f"Session opened for device {device_id} with {len(session.sources)} sources")
        return session

    def add_source(self, source: BookmarkSource) -> SyncEngine:
        if source.source_type is SourceType.CLOUD:
            source.set_device(self.device_id, self.device_name, self.config.browser.name)

        engine = SyncEngine(
            source, self.browser, self.store, self.tombstones,
            strategy=self.config.conflict_resolution,
            max_consecutive_failures=self.config.max_consecutive_failures,
            tombstone_max_age_days=self.config.tombstone_max_age_days,
            on_credentials_refreshed=self._save_credentials,
        )
        self.sources[source.id] = source
        self.engines[source.id] = engine
        return engine

    @property
    def device_name(self) -> str:
        return self.config.device_name or platform.node() or self.device_id

    @property
    def is_syncing(self) -> bool:
        return any(engine.is_syncing for engine in self.engines.values())

    async def _save_credentials(self, source_id: str, credentials: Credentials):
        self.credentials.save(source_id, credentials)

    def engine(self, source_id: Optional[str] = None) -> SyncEngine:
        source_id = source_id or self.config.selected_source
        if source_id is None:
            if len(self.engines) != 1:
                raise KeyError("Several sources configured; choose one with --source")
            return next(iter(self.engines.values()))
        try:
            return self.engines[source_id]
        except KeyError:
            raise KeyError(f"Source {source_id!r} is not configured or not connected") from None

    async def sync(self, source_id: Optional[str] = None,
                   trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        return await self.engine(source_id).sync(trigger)

    async def sync_all(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> Dict[str, SyncResult]:
        """Sources are synced one after another so they never fight over the browser"""
        results = {}
        for source_id, engine in self.engines.items():
            results[source_id] = await engine.sync(trigger)
        return results

    async def force_push(self, source_id: Optional[str] = None) -> SyncResult:
        return await self.engine(source_id).force_push()

    async def force_pull(self, source_id: Optional[str] = None) -> SyncResult:
        return await self.engine(source_id).force_pull()

    async def reset(self, source_id: Optional[str] = None):
        await self.engine(source_id).reset_failures()

    def _cloud_source(self, source_id: Optional[str] = None):
        source = self.engine(source_id).source
        if source.source_type is not SourceType.CLOUD:
            raise SyncError(f"{source.name} is not a cloud source")
        return source

    async def delete_cloud_data(self, source_id: Optional[str] = None):
        source = self._cloud_source(source_id)
        await source.delete_all()
        await self.store.clear_source_state(source.id)

    async def list_devices(self, source_id: Optional[str] = None) -> List[Any]:
        return await self._cloud_source(source_id).get_devices()

    async def remove_device(self, device_id: str, source_id: Optional[str] = None):
        await self._cloud_source(source_id).remove_device(device_id)

    async def device_sync_states(self, source_id: Optional[str] = None) -> Dict[str, SyncState]:
        states = await self._cloud_source(source_id).get_all_sync_states()
        return {state.device_id: state for state in states}

    async def history(self, limit: int = 20, source_id: Optional[str] = None) -> List[BookmarkVersion]:
        return await self._cloud_source(source_id).get_history(limit)

    async def compare_versions(self, old_version: int, new_version: int,
                               source_id: Optional[str] = None) -> VersionDiff:
        return await self._cloud_source(source_id).compare_versions(old_version, new_version)

    async def rollback(self, version: int, source_id: Optional[str] = None) -> SyncResult:
        """Restore a saved cloud version, then pull it into the browser"""
        source = self._cloud_source(source_id)
        await source.rollback(version)
        return await self.engine(source.id).sync()

    def status(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'device_name': self.device_name,
            'last_sync': self.store.last_sync(),
            'tombstones': self.tombstones.get_statistics(),
            'sources': [engine.status() for engine in self.engines.values()],
        }

    async def close(self):
        for source in self.sources.values():
            await source.close()

    async def logout(self):
        """Forget credentials and every source's sync bookkeeping"""
        self.credentials.clear()
        for source_id in self.sources:
            await self.store.clear_source_state(source_id)
        await self.store.remove('lastSync')
        await self.close()
        logger.info("Logged out")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
