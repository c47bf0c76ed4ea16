"""
sync/history.py - Saved versions of the cloud bookmark set

Every write to the cloud row also stores a snapshot under the row's new
version number. Snapshots can be listed, compared and restored.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field, replace
import logging

from .merge import index_by_key
from .models import Bookmark, BookmarkFile
from .tombstone import Tombstone, now_ms

logger = logging.getLogger(__name__)

DEFAULT_VERSION_RETENTION = 30


@dataclass
class VersionDiff:
    """What changed between two bookmark sets, by (url, folder_path)"""
    added: List[Bookmark] = field(default_factory=list)
    removed: List[Bookmark] = field(default_factory=list)
    modified: List[Tuple[Bookmark, Bookmark]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            'added': len(self.added),
            'removed': len(self.removed),
            'modified': len(self.modified),
        }


def diff_bookmarks(old: Iterable[Bookmark], new: Iterable[Bookmark]) -> VersionDiff:
    old_index = index_by_key(old)
    new_index = index_by_key(new)

    diff = VersionDiff()
    for key, bookmark in new_index.items():
        previous = old_index.get(key)
        if previous is None:
            diff.added.append(bookmark)
        elif (previous.title or '') != (bookmark.title or ''):
            diff.modified.append((previous, bookmark))
    diff.removed = [b for key, b in old_index.items() if key not in new_index]
    return diff


def count_folders(bookmarks: Iterable[Bookmark]) -> int:
    """Distinct folders below the roots that hold at least one bookmark"""
    folders = set()
    for bookmark in bookmarks:
        segments = [s for s in bookmark.folder_path.split('/') if s]
        for depth in range(2, len(segments) + 1):
            folders.add('/'.join(segments[:depth]))
    return len(folders)


def restore_snapshot(snapshot: BookmarkFile, current_tombstones: List[Tombstone]) -> BookmarkFile:
    """
    Build the file written by a rollback.
    Restored bookmarks that a current tombstone would suppress are stamped
    as added now, and those tombstones are dropped, so devices that
    already applied the deletion take the bookmark back.
    """
    deleted_at = {t.url: t.deleted_at for t in current_tombstones}
    stamp = now_ms()

    bookmarks = []
    for bookmark in snapshot.bookmarks:
        if bookmark.url in deleted_at and bookmark.added_ms <= deleted_at[bookmark.url]:
            bookmark = replace(bookmark, date_added=stamp)
        bookmarks.append(bookmark.with_id(None))

    restored_urls = {b.url for b in bookmarks}
    tombstones = [t for t in current_tombstones if t.url not in restored_urls]
    return BookmarkFile.create(bookmarks, tombstones, created_at=snapshot.metadata.created_at)


@dataclass
class BookmarkVersion:
    """One saved version; data is only loaded for a single-version fetch"""
    version: int
    checksum: str = ''
    bookmark_count: int = 0
    folder_count: int = 0
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    change_summary: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    data: Optional[BookmarkFile] = field(default=None, repr=False)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'BookmarkVersion':
        data = None
        if row.get('bookmark_data') is not None:
            data = BookmarkFile.from_dict({
                'metadata': {'createdAt': row.get('created_at'), 'checksum': row.get('checksum')},
                'bookmarks': row['bookmark_data'],
                'tombstones': row.get('tombstones') or [],
            })
        return cls(
            version=int(row['version']),
            checksum=row.get('checksum') or '',
            bookmark_count=int(row.get('bookmark_count') or 0),
            folder_count=int(row.get('folder_count') or 0),
            device_id=row.get('device_id'),
            device_name=row.get('device_name'),
            change_summary=row.get('change_summary') or {},
            created_at=row.get('created_at'),
            data=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'checksum': self.checksum,
            'bookmarkCount': self.bookmark_count,
            'folderCount': self.folder_count,
            'deviceName': self.device_name,
            'changeSummary': self.change_summary,
            'createdAt': self.created_at,
        }
