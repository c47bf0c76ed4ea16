"""
sync/tombstone.py - Deletion tracking with tombstones
Decides which remote deletions may be replayed on this device
"""

import json
import os
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Tombstone:
    """
    Deletion marker for sync propagation
    deleted_at is epoch milliseconds
    """
    url: str
    deleted_at: int
    deleted_by: Optional[str] = None  # device id, when known

    def to_dict(self) -> dict:
        data = {'url': self.url, 'deletedAt': self.deleted_at}
        if self.deleted_by:
            data['deletedBy'] = self.deleted_by
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Tombstone':
        return cls(
            url=data['url'],
            deleted_at=int(data['deletedAt']),
            deleted_by=data.get('deletedBy'),
        )


def filter_tombstones_to_apply(cloud_tombstones: Optional[Iterable[Tombstone]],
                               local_tombstones: Optional[Iterable[Tombstone]],
                               last_sync_time: Optional[int]) -> List[Tombstone]:
    """
    Select the cloud tombstones that may delete local bookmarks.

    A device that has never synced applies nothing. Otherwise a tombstone is
    applied when this device deleted the same URL itself, or when the
    deletion happened after our last sync. Anything older is stale: the
    local bookmark was already reconciled against that deletion, so
    replaying it would destroy data. Discarded tombstones are logged.
    """
    cloud_tombstones = list(cloud_tombstones or [])
    if not cloud_tombstones:
        return []

    if last_sync_time is None:
        logger.info(
            f"No previous sync on this device, ignoring {len(cloud_tombstones)} cloud tombstones"
        )
        return []

    local_urls = {t.url for t in local_tombstones or []}
    to_apply = []

    for tombstone in cloud_tombstones:
        if tombstone.url in local_urls:
            to_apply.append(tombstone)
        elif tombstone.deleted_at > last_sync_time:
            to_apply.append(tombstone)
        else:
            logger.info(
                f"Skipping stale tombstone for {tombstone.url} "
                f"(deletedAt={tombstone.deleted_at}, lastSync={last_sync_time})"
            )

    return to_apply


def merge_tombstones(*groups: Iterable[Tombstone]) -> List[Tombstone]:
    """Union of tombstone lists keeping the newest deletion per URL"""
    merged: Dict[str, Tombstone] = {}
    for group in groups:
        for tombstone in group or []:
            existing = merged.get(tombstone.url)
            if existing is None or tombstone.deleted_at > existing.deleted_at:
                merged[tombstone.url] = tombstone
    return sorted(merged.values(), key=lambda t: (t.deleted_at, t.url))


def prune_tombstones(tombstones: Iterable[Tombstone], max_age_days: int,
                     now: Optional[int] = None) -> List[Tombstone]:
    """Drop tombstones older than the retention window"""
    cutoff = (now if now is not None else now_ms()) - max_age_days * DAY_MS
    return [t for t in tombstones if t.deleted_at >= cutoff]


class TombstoneManager:
    """
    Persists this device's tombstones
    Deletions made locally are remembered until they age out
    """

    def __init__(self, metadata_dir: Path, identity: Optional[str] = None):
        self.metadata_dir = Path(metadata_dir)
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        self.identity = identity

        self.tombstone_file = self.metadata_dir / "tombstones.json"
        self.tombstones: Dict[str, Tombstone] = self._load_tombstones()

    def _load_tombstones(self) -> Dict[str, Tombstone]:
        """Load tombstones from disk"""
        if not self.tombstone_file.exists():
            return {}

        try:
            with open(self.tombstone_file, 'r') as f:
                data = json.load(f)
            return {t['url']: Tombstone.from_dict(t) for t in data}
        except (OSError, ValueError, KeyError, TypeError) as e:
            # A corrupt file only loses deletion history, never bookmarks
            logger.error(f"Failed to load tombstones: {e}")
            return {}

    def _save_tombstones(self):
        """Save tombstones to disk"""
        data = [t.to_dict() for t in self.get_all()]
        tmp_file = self.tombstone_file.with_suffix('.tmp')
        with open(tmp_file, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_file, self.tombstone_file)

    def mark_deleted(self, url: str, deleted_at: Optional[int] = None) -> Tombstone:
        """Record (or refresh) a deletion of url"""
        tombstone = Tombstone(
            url=url,
            deleted_at=deleted_at if deleted_at is not None else now_ms(),
            deleted_by=self.identity,
        )

        self.tombstones[url] = tombstone
        self._save_tombstones()

        logger.info(f"Created tombstone for {url}")
        return tombstone

    def is_deleted(self, url: str) -> bool:
        return url in self.tombstones

    def get_tombstone(self, url: str) -> Optional[Tombstone]:
        return self.tombstones.get(url)

    def get_all(self) -> List[Tombstone]:
        return sorted(self.tombstones.values(), key=lambda t: (t.deleted_at, t.url))

    def replace_all(self, tombstones: Iterable[Tombstone]):
        """Replace the stored set after a sync cycle merged it"""
        self.tombstones = {t.url: t for t in tombstones}
        self._save_tombstones()

    def remove_tombstone(self, url: str):
        """Forget a deletion (the bookmark was added again)"""
        if url in self.tombstones:
            del self.tombstones[url]
            self._save_tombstones()
            logger.debug(f"Removed tombstone for {url}")

    def clear(self):
        self.tombstones = {}
        self._save_tombstones()

    def cleanup_old_tombstones(self, max_age_days: int = 30) -> int:
        """
        Remove tombstones past the retention window
        Keeps the tombstone list from growing unbounded
        """
        kept = prune_tombstones(self.tombstones.values(), max_age_days)
        removed = len(self.tombstones) - len(kept)

        if removed:
            self.tombstones = {t.url: t for t in kept}
            self._save_tombstones()
            logger.info(f"Cleaned up {removed} old tombstones")

        return removed

    def get_statistics(self) -> dict:
        if not self.tombstones:
            return {'count': 0}

        current = now_ms()
        ages = [current - t.deleted_at for t in self.tombstones.values()]

        return {
            'count': len(self.tombstones),
            'oldest_age_hours': max(ages) / 3_600_000,
            'newest_age_hours': min(ages) / 3_600_000,
        }


class DeletionTracker:
    """
    Detects bookmarks deleted since the last sync
    Works with TombstoneManager to create and clear tombstones
    """

    def __init__(self, tombstone_manager: TombstoneManager):
        self.tombstone_manager = tombstone_manager

    def detect_changes(self, previous_urls: Iterable[str],
                       current_urls: Iterable[str]) -> Dict[str, List[str]]:
        """
        Compare the URL snapshot taken at the end of the last sync with the
        current local URLs. Vanished URLs get a tombstone; URLs that came
        back lose theirs.
        """
        previous: Set[str] = set(previous_urls or [])
        current: Set[str] = set(current_urls or [])

        deleted = sorted(previous - current)
        for url in deleted:
            if not self.tombstone_manager.is_deleted(url):
                self.tombstone_manager.mark_deleted(url)

        restored = sorted(
            url for url in current - previous
            if self.tombstone_manager.is_deleted(url)
        )
        for url in restored:
            self.tombstone_manager.remove_tombstone(url)

        if deleted or restored:
            logger.info(f"Detected {len(deleted)} local deletions, {len(restored)} re-added")

        return {'deleted': deleted, 'restored': restored}
