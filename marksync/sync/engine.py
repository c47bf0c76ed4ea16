"""
sync/engine.py - Bookmark synchronization engine

One engine per source. A cycle reads the browser and the remote, compares
checksums, and only when they differ runs the tombstone filter and the
configured merge policy, writes the remote first and then applies the
result to the browser.
"""

import asyncio
import functools
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass, asdict, field, replace
import logging

from ..browser.tree import BrowserBookmarks, FolderResolver, normalize_folder_path
from ..errors import NotFoundError, RetryLimitExceeded, SyncError, UnauthorizedError
from ..sources.base import BookmarkSource, SourceType
from .checksum import checksum
from .conflict import CloudConflictResolver, Resolution, SyncAction
from .merge import (
    ConflictStrategy, drop_superseded, find_conflicts, index_by_key, merge_bookmarks, merge_union,
)
from .models import Bookmark, BookmarkFile, now_iso, to_epoch_ms
from .tombstone import (
    DeletionTracker, Tombstone, TombstoneManager,
    filter_tombstones_to_apply, merge_tombstones, now_ms, prune_tombstones,
)

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    IDLE = "idle"
    READING = "reading"
    COMPARING = "comparing"
    NOOP_DONE = "noop_done"
    WRITING = "writing"
    ERROR = "error"


class SyncStatus(Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"
    BUSY = "busy"
    PAUSED = "paused"


class SyncTrigger(Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    BOOKMARK_CHANGE = "bookmark-change"


@dataclass
class LocalChanges:
    added: int = 0
    deleted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.added + self.deleted + self.updated


@dataclass
class SyncResult:
    """Everything a caller needs to report one cycle"""
    status: SyncStatus
    source_id: str = ''
    action: str = 'none'
    pushed: bool = False
    pulled: bool = False
    skipped: bool = False
    added_locally: int = 0
    deleted_locally: int = 0
    updated_locally: int = 0
    bookmark_count: int = 0
    checksum: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    duration: float = 0.0
    conflict: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.status is SyncStatus.SUCCESS

    def apply_changes(self, changes: LocalChanges) -> 'SyncResult':
        self.added_locally = changes.added
        self.deleted_locally = changes.deleted
        self.updated_locally = changes.updated
        self.pulled = self.pulled or changes.total > 0
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['success'] = self.success
        return data


def _without_ids(bookmarks) -> List[Bookmark]:
    """Browser ids are meaningless on other devices"""
    return [b.with_id(None) for b in bookmarks]


def _normalized(bookmarks) -> List[Bookmark]:
    return [replace(b, folder_path=normalize_folder_path(b.folder_path)) for b in bookmarks]


def _conflict_details(local, remote) -> List[Dict[str, Any]]:
    """Entries both sides hold with different titles"""
    return [
        {'url': c.key[0], 'folderPath': c.key[1],
         'localTitle': c.local.title, 'remoteTitle': c.remote.title}
        for c in find_conflicts(local, remote)
    ]


class SyncEngine:
    """
    Synchronizes the browser with one source.
    At most one cycle runs at a time; a second request is rejected as busy.
    """

    def __init__(self, source: BookmarkSource, browser: BrowserBookmarks,
                 store, tombstone_manager: TombstoneManager, *,
                 strategy: str = 'newest-wins',
                 max_consecutive_failures: int = 3,
                 tombstone_max_age_days: int = 30,
                 on_credentials_refreshed: Optional[Callable[..., Awaitable[Any]]] = None):
        self.source = source
        self.browser = browser
        self.store = store
        self.tombstone_manager = tombstone_manager
        self.deletion_tracker = DeletionTracker(tombstone_manager)
        self.strategy = ConflictStrategy(strategy)
        self.max_consecutive_failures = max_consecutive_failures
        self.tombstone_max_age_days = tombstone_max_age_days
        self.on_credentials_refreshed = on_credentials_refreshed

        self.phase = SyncPhase.IDLE
        self.last_result: Optional[SyncResult] = None
        self._lock = asyncio.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def is_cloud(self) -> bool:
        return self.source.source_type is SourceType.CLOUD

    @property
    def state(self) -> Dict[str, Any]:
        return self.store.source_state(self.source.id)

    @property
    def consecutive_failures(self) -> int:
        return int(self.state.get('consecutiveFailures', 0))

    @property
    def paused(self) -> bool:
        return self.consecutive_failures >= self.max_consecutive_failures

    def status(self) -> Dict[str, Any]:
        state = self.state
        return {
            'source': self.source.id,
            'phase': self.phase.value,
            'syncing': self.is_syncing,
            'last_sync': state.get('lastSync'),
            'checksum': state.get('checksum'),
            'consecutive_failures': int(state.get('consecutiveFailures', 0)),
            'paused': self.paused,
            'last_error': state.get('lastError'),
        }

    async def reset_failures(self):
        """Clear the failure counter and resume scheduled syncs"""
        await self.store.update_source_state(self.source.id, consecutiveFailures=0, lastError=None)
        if self.phase is SyncPhase.ERROR:
            self.phase = SyncPhase.IDLE
        logger.info(f"Reset failure counter for {self.source.name}")

    # Cycle

    async def sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        if self._lock.locked():
            logger.info(f"Sync with {self.source.name} already in progress, rejecting {trigger.value} request")
            return SyncResult(SyncStatus.BUSY, self.source.id, error="Sync already in progress")

        if trigger is not SyncTrigger.MANUAL and self.paused:
            error = RetryLimitExceeded(
                f"Sync paused after {self.consecutive_failures} consecutive failures; "
                f"reset or sync manually to resume"
            )
            logger.warning(error.message)
            return SyncResult(SyncStatus.PAUSED, self.source.id, error=error.message,
                              error_code=error.code)

        async with self._lock:
            started = time.monotonic()
            logger.info(f"Starting {trigger.value} sync with {self.source.name}")
            try:
                result = await self._run_cycle()
            except (SyncError, OSError) as e:
                result = await self._record_failure(e)
            else:
                if result.status is SyncStatus.SUCCESS:
                    await self.store.update_source_state(
                        self.source.id, consecutiveFailures=0, lastError=None,
                    )
                self.phase = SyncPhase.IDLE

            result.duration = time.monotonic() - started
            self.last_result = result
            logger.info(
                f"Sync with {self.source.name} finished: {result.status.value} "
                f"({result.action}) in {result.duration:.2f}s"
            )
            return result

    async def _record_failure(self, exc: Exception) -> SyncResult:
        error = exc if isinstance(exc, SyncError) else SyncError(str(exc))
        self.phase = SyncPhase.ERROR
        logger.error(f"Sync with {self.source.name} failed: {error}", exc_info=exc)

        failures = self.consecutive_failures
        if error.retryable:
            failures += 1
        await self.store.update_source_state(
            self.source.id, consecutiveFailures=failures, lastError=error.message,
        )
        if error.retryable and failures >= self.max_consecutive_failures:
            logger.warning(
                f"{failures} consecutive failures with {self.source.name}, pausing scheduled sync"
            )

        return SyncResult(
            SyncStatus.ERROR, self.source.id, action='error',
            error=error.message, error_code=error.code, retryable=error.retryable,
        )

    async def _run_cycle(self) -> SyncResult:
        self.phase = SyncPhase.READING
        state = self.state
        last_sync = state.get('lastSync')

        local = await self.browser.get_bookmarks()
        local_tombstones = self._track_deletions(local, state)

        if self.is_cloud:
            return await self._cloud_cycle(local, local_tombstones, last_sync)

        remote = await self._read_remote()
        if remote is None:
            return await self._initial_push(local, local_tombstones)

        self.phase = SyncPhase.COMPARING
        local_checksum = checksum(local)
        if local_checksum == remote.content_checksum:
            return await self._noop(local, local_checksum)

        self.phase = SyncPhase.WRITING
        return await self._file_cycle(local, local_checksum, local_tombstones, remote, state)

    def _track_deletions(self, local: List[Bookmark], state: Dict[str, Any]) -> List[Tombstone]:
        previous = state.get('snapshot')
        if previous is not None:
            self.deletion_tracker.detect_changes(previous, (b.url for b in local))
        return self.tombstone_manager.get_all()

    async def _with_reauth(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run operation, refreshing credentials once if they were rejected"""
        try:
            return await operation()
        except UnauthorizedError:
            logger.info(f"{self.source.name} rejected credentials, refreshing")
            credentials = await self.source.refresh_credentials()
            if credentials is not None and self.on_credentials_refreshed:
                await self.on_credentials_refreshed(self.source.id, credentials)
            return await operation()

    async def _read_remote(self) -> Optional[BookmarkFile]:
        try:
            return await self._with_reauth(self.source.read)
        except NotFoundError:
            logger.info(f"No bookmarks stored in {self.source.name} yet")
            return None

    async def _noop(self, local: List[Bookmark], local_checksum: str) -> SyncResult:
        self.phase = SyncPhase.NOOP_DONE
        logger.info(f"Checksums match, {self.source.name} already in sync")
        await self._finish(local, local_checksum)
        return SyncResult(
            SyncStatus.SUCCESS, self.source.id, action='none', skipped=True,
            bookmark_count=len(local), checksum=local_checksum,
        )

    async def _initial_push(self, local: List[Bookmark],
                            local_tombstones: List[Tombstone]) -> SyncResult:
        self.phase = SyncPhase.WRITING
        data = BookmarkFile.create(_without_ids(local), local_tombstones)
        await self.source.write(data)

        local_checksum = checksum(local)
        await self._finish(local, local_checksum)
        return SyncResult(
            SyncStatus.SUCCESS, self.source.id, action='pushed', pushed=True,
            bookmark_count=len(local), checksum=local_checksum,
        )

    async def _local_is_newer(self, remote: BookmarkFile) -> bool:
        local_modified = await self.browser.last_modified() or now_ms()
        return local_modified >= to_epoch_ms(remote.metadata.last_modified)

    def _split_deletions(self, local, local_tombstones, remote_tombstones, last_sync):
        """
        Returns (local bookmarks minus applied deletions, tombstones known to this device).
        """
        to_apply = filter_tombstones_to_apply(remote_tombstones, local_tombstones, last_sync)
        applied = {t.url for t in to_apply}
        local_side = [b for b in local if b.url not in applied]
        known = merge_tombstones(local_tombstones, to_apply)
        if applied:
            logger.info(f"Applying {len(applied)} remote deletions")
        return local_side, known

    def _outgoing_tombstones(self, remote_tombstones, local_tombstones) -> List[Tombstone]:
        return prune_tombstones(
            merge_tombstones(remote_tombstones, local_tombstones),
            self.tombstone_max_age_days,
        )

    async def _file_cycle(self, local: List[Bookmark], local_checksum: str,
                          local_tombstones: List[Tombstone], remote: BookmarkFile,
                          state: Dict[str, Any]) -> SyncResult:
        remote_checksum = remote.content_checksum
        local_side, known = self._split_deletions(
            local, local_tombstones, remote.tombstones, state.get('lastSync'),
        )
        remote_side = drop_superseded(_normalized(remote.bookmarks), known)

        last_checksum = state.get('checksum')
        local_changed = last_checksum is None or local_checksum != last_checksum
        remote_changed = last_checksum is None or remote_checksum != last_checksum

        if local_changed and remote_changed:
            if self.strategy is ConflictStrategy.MANUAL:
                logger.warning(f"Local and {self.source.name} both changed, manual resolution required")
                return SyncResult(
                    SyncStatus.CONFLICT, self.source.id, action='conflict',
                    bookmark_count=len(local), checksum=local_checksum,
                    conflict={
                        'local': BookmarkFile.create(_without_ids(local), local_tombstones).to_dict(),
                        'remote': remote.to_dict(),
                        'bookmarks': _conflict_details(local_side, remote_side),
                    },
                )
            merged = merge_bookmarks(
                local_side, remote_side, self.strategy, await self._local_is_newer(remote),
            ).bookmarks
        else:
            # only one side moved since the last sync; the stale side takes it
            merged = merge_bookmarks(
                local_side, remote_side, ConflictStrategy.NEWEST_WINS, local_is_newer=local_changed,
            ).bookmarks
        merged_checksum = checksum(merged)

        result = SyncResult(
            SyncStatus.SUCCESS, self.source.id, action='merged',
            bookmark_count=len(merged), checksum=merged_checksum,
        )

        if merged_checksum != remote_checksum:
            outgoing = BookmarkFile.create(
                _without_ids(merged),
                self._outgoing_tombstones(remote.tombstones, local_tombstones),
                created_at=remote.metadata.created_at,
            )
            write = await self.source.write_if_changed(outgoing)
            result.pushed = not write.skipped
            result.skipped = write.skipped
        else:
            result.skipped = True

        result.apply_changes(await self.apply_local(local, merged))
        if result.pushed and not result.pulled:
            result.action = 'pushed'
        elif result.pulled and not result.pushed:
            result.action = 'pulled'
        elif not (result.pushed or result.pulled):
            result.action = 'none'

        await self._finish(merged, merged_checksum,
                           prune_tombstones(known, self.tombstone_max_age_days))
        return result

    async def _cloud_cycle(self, local: List[Bookmark], local_tombstones: List[Tombstone],
                           last_sync: Optional[int]) -> SyncResult:
        remote = await self._read_remote()

        self.phase = SyncPhase.COMPARING
        local_checksum = checksum(local)
        if remote is not None and local_checksum == remote.content_checksum:
            await self.source.update_sync_state(local_checksum, self.source.version)
            return await self._noop(local, local_checksum)

        self.phase = SyncPhase.WRITING
        remote_tombstones = remote.tombstones if remote else []
        local_side, known = self._split_deletions(local, local_tombstones, remote_tombstones, last_sync)
        local_file = BookmarkFile.create(
            _without_ids(local_side),
            self._outgoing_tombstones(remote_tombstones, local_tombstones),
            created_at=remote.metadata.created_at if remote else None,
        )

        resolver = CloudConflictResolver(self.source)
        outcome = await resolver.sync_with_conflict_detection(local_file, local_checksum)
        result = SyncResult(SyncStatus.SUCCESS, self.source.id, action=outcome.action.value)

        if outcome.action in (SyncAction.PUSHED, SyncAction.NONE):
            converged = local_side
            result.pushed = outcome.action is SyncAction.PUSHED

        elif outcome.action is SyncAction.PULLED:
            remote_side = drop_superseded(_normalized(outcome.data.bookmarks), known)
            if last_sync is None:
                # First sync of this device: keep what is already here
                converged = merge_union(local_side, remote_side).bookmarks
                if checksum(converged) != outcome.data.content_checksum:
                    await resolver.resolve_conflict(
                        Resolution.MERGE, local_file, outcome.data,
                        self._merged_file(converged, outcome.data, local_tombstones),
                    )
                    result.pushed = True
                    result.action = 'merged'
            else:
                converged = remote_side

        else:
            remote_side = drop_superseded(_normalized(outcome.data.bookmarks), known)
            if self.strategy is ConflictStrategy.MANUAL:
                return SyncResult(
                    SyncStatus.CONFLICT, self.source.id, action='conflict',
                    bookmark_count=len(local), checksum=local_checksum,
                    conflict={
                        'local': local_file.to_dict(),
                        'remote': outcome.data.to_dict(),
                        'version': outcome.version,
                        'bookmarks': _conflict_details(local_side, remote_side),
                    },
                )

            # the cloud row carries the higher version, so it is the newer side
            converged = merge_bookmarks(
                local_side, remote_side, self.strategy, local_is_newer=False,
            ).bookmarks
            await resolver.resolve_conflict(
                Resolution.MERGE, local_file, outcome.data,
                self._merged_file(converged, outcome.data, local_tombstones),
            )
            result.pushed = True
            result.action = 'merged'

        result.apply_changes(await self.apply_local(local, converged))
        result.bookmark_count = len(converged)
        result.checksum = checksum(converged)

        await self._finish(converged, result.checksum,
                           prune_tombstones(known, self.tombstone_max_age_days))
        return result

    def _merged_file(self, bookmarks, remote: BookmarkFile,
                     local_tombstones: List[Tombstone]) -> BookmarkFile:
        return BookmarkFile.create(
            _without_ids(bookmarks),
            self._outgoing_tombstones(remote.tombstones, local_tombstones),
            created_at=remote.metadata.created_at,
        )

    async def _finish(self, bookmarks: List[Bookmark], content_checksum: str,
                      tombstones: Optional[List[Tombstone]] = None):
        """Persist what was synced so the next cycle can detect changes"""
        if tombstones is not None:
            self.tombstone_manager.replace_all(tombstones)
        self.tombstone_manager.cleanup_old_tombstones(self.tombstone_max_age_days)

        await self.store.update_source_state(
            self.source.id,
            lastSync=now_ms(),
            checksum=content_checksum,
            snapshot=sorted({b.url for b in bookmarks}),
        )
        await self.store.set('lastSync', now_iso())

    # Local application

    async def apply_local(self, current: List[Bookmark], target: List[Bookmark]) -> LocalChanges:
        """
        Make the browser hold exactly target (by identity key).
        All or nothing: on failure every change made here is undone and the
        error propagates.
        """
        current_index = index_by_key(current)
        target_index = index_by_key(target)

        removals = [b for key, b in current_index.items() if key not in target_index]
        additions = [b for key, b in target_index.items() if key not in current_index]
        updates = [
            (current_index[key], b) for key, b in target_index.items()
            if key in current_index and current_index[key].title != b.title
        ]

        changes = LocalChanges()
        if not (removals or additions or updates):
            return changes

        resolver = FolderResolver(self.browser, await self.browser.get_tree())
        undo: List[Callable[[], Awaitable[Any]]] = []

        try:
            for bookmark in removals:
                await self.browser.remove(bookmark.id)
                undo.append(functools.partial(self._recreate, resolver, bookmark))
                changes.deleted += 1

            for old, new in updates:
                await self.browser.update(old.id, title=new.title)
                undo.append(functools.partial(self.browser.update, old.id, title=old.title))
                changes.updated += 1

            for bookmark in additions:
                parent_id = await resolver.ensure(bookmark.folder_path)
                node = await self.browser.create(
                    parent_id, bookmark.title, bookmark.url, bookmark.added_ms or None,
                )
                undo.append(functools.partial(self.browser.remove, node.id))
                changes.added += 1

        except Exception:
            logger.error(f"Applying changes to the browser failed, rolling back {len(undo)} changes")
            await self._rollback(undo, resolver)
            raise

        logger.info(
            f"Applied to browser: {changes.added} added, {changes.deleted} deleted, "
            f"{changes.updated} updated"
        )
        return changes

    async def _recreate(self, resolver: FolderResolver, bookmark: Bookmark):
        parent_id = await resolver.ensure(bookmark.folder_path)
        await self.browser.create(parent_id, bookmark.title, bookmark.url, bookmark.added_ms or None)

    async def _rollback(self, undo, resolver: FolderResolver):
        for operation in reversed(undo):
            try:
                await operation()
            except (SyncError, OSError) as e:
                logger.error(f"Rollback step failed: {e}")
        for folder_id in reversed(resolver.created):
            try:
                await self.browser.remove(folder_id)
            except (SyncError, OSError) as e:
                logger.error(f"Could not remove folder {folder_id} during rollback: {e}")

    # Force operations

    async def force_push(self) -> SyncResult:
        """Overwrite the remote with this browser's bookmarks"""
        return await self._force('push', self._force_push)

    async def force_pull(self) -> SyncResult:
        """Overwrite this browser's bookmarks with the remote"""
        return await self._force('pull', self._force_pull)

    async def _force(self, direction: str, operation) -> SyncResult:
        if self._lock.locked():
            return SyncResult(SyncStatus.BUSY, self.source.id, error="Sync already in progress")

        async with self._lock:
            started = time.monotonic()
            logger.warning(f"Force {direction} with {self.source.name}")
            try:
                result = await operation()
                self.phase = SyncPhase.IDLE
            except (SyncError, OSError) as e:
                self.phase = SyncPhase.ERROR
                error = e if isinstance(e, SyncError) else SyncError(str(e))
                logger.error(f"Force {direction} failed: {error}", exc_info=e)
                message = (
                    f"Force {direction} did not complete: {error.message}. "
                    f"Local and remote bookmarks may be partially overwritten; "
                    f"run the force {direction} again."
                )
                await self.store.update_source_state(self.source.id, lastError=message)
                result = SyncResult(
                    SyncStatus.ERROR, self.source.id, action=f'force-{direction}',
                    error=message, error_code=error.code, retryable=error.retryable,
                )
            result.duration = time.monotonic() - started
            self.last_result = result
            return result

    async def _force_push(self) -> SyncResult:
        self.phase = SyncPhase.READING
        local = await self.browser.get_bookmarks()
        # reading first refreshes the sha/rev/version the write is checked against
        remote = await self._read_remote()

        self.phase = SyncPhase.WRITING
        data = BookmarkFile.create(
            _without_ids(local),
            self.tombstone_manager.get_all(),
            created_at=remote.metadata.created_at if remote else None,
        )
        await self.source.write(data)

        local_checksum = checksum(local)
        if self.is_cloud:
            await self.source.update_sync_state(local_checksum, self.source.version)
        await self._finish(local, local_checksum)

        return SyncResult(
            SyncStatus.SUCCESS, self.source.id, action='force-push', pushed=True,
            bookmark_count=len(local), checksum=local_checksum,
        )

    async def _force_pull(self) -> SyncResult:
        self.phase = SyncPhase.READING
        remote = await self._read_remote()
        if remote is None:
            raise NotFoundError(f"No bookmarks stored in {self.source.name} to pull")
        local = await self.browser.get_bookmarks()

        self.phase = SyncPhase.WRITING
        target = _normalized(remote.bookmarks)
        changes = await self.apply_local(local, target)

        target_checksum = checksum(target)
        if self.is_cloud:
            await self.source.update_sync_state(target_checksum, self.source.version)
        await self._finish(target, target_checksum)

        result = SyncResult(
            SyncStatus.SUCCESS, self.source.id, action='force-pull',
            bookmark_count=len(target), checksum=target_checksum,
        )
        return result.apply_changes(changes)
