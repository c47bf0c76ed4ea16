from .checksum import checksum, has_content_changed, EMPTY_CHECKSUM
from .models import Bookmark, BookmarkFile, FileMetadata, SyncState, Device
from .tombstone import (
    Tombstone, TombstoneManager, DeletionTracker,
    filter_tombstones_to_apply, merge_tombstones,
)
from .merge import ConflictStrategy, MergeResult, merge_bookmarks
from .conflict import CloudConflictResolver, CloudSyncOutcome, Resolution, SyncAction, decide_action

__all__ = [
    'checksum',
    'has_content_changed',
    'EMPTY_CHECKSUM',
    'Bookmark',
    'BookmarkFile',
    'FileMetadata',
    'SyncState',
    'Device',
    'Tombstone',
    'TombstoneManager',
    'DeletionTracker',
    'filter_tombstones_to_apply',
    'merge_tombstones',
    'ConflictStrategy',
    'MergeResult',
    'merge_bookmarks',
    'CloudConflictResolver',
    'CloudSyncOutcome',
    'Resolution',
    'SyncAction',
    'decide_action',
]
