"""
sync/merge.py - Merge policies between a local and a remote bookmark set
All functions are pure; the engine decides what to write.
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
import logging

from .models import Bookmark
from .tombstone import Tombstone

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class ConflictStrategy(Enum):
    """How diverging snapshots are reconciled"""
    NEWEST_WINS = "newest-wins"
    MERGE = "merge"
    MANUAL = "manual"


@dataclass
class BookmarkConflict:
    """Same identity on both sides with different content"""
    key: Key
    local: Bookmark
    remote: Bookmark


@dataclass
class MergeResult:
    bookmarks: List[Bookmark] = field(default_factory=list)
    conflicts: List[BookmarkConflict] = field(default_factory=list)
    added_from_remote: int = 0
    replaced_by_remote: int = 0


def index_by_key(bookmarks: Iterable[Bookmark]) -> Dict[Key, Bookmark]:
    """First occurrence of each (url, folder_path) wins, order preserved"""
    index: Dict[Key, Bookmark] = {}
    for bookmark in bookmarks:
        index.setdefault(bookmark.key, bookmark)
    return index


def _differs(a: Bookmark, b: Bookmark) -> bool:
    return (a.title or '') != (b.title or '')


def find_conflicts(local: Iterable[Bookmark], remote: Iterable[Bookmark]) -> List[BookmarkConflict]:
    local_index = index_by_key(local)
    conflicts = []
    for key, remote_bookmark in index_by_key(remote).items():
        local_bookmark = local_index.get(key)
        if local_bookmark is not None and _differs(local_bookmark, remote_bookmark):
            conflicts.append(BookmarkConflict(key, local_bookmark, remote_bookmark))
    return conflicts


def _union(local: Iterable[Bookmark], remote: Iterable[Bookmark], prefer_remote) -> MergeResult:
    local_index = index_by_key(local)
    remote_index = index_by_key(remote)
    result = MergeResult()

    for key, local_bookmark in local_index.items():
        remote_bookmark = remote_index.get(key)
        if remote_bookmark is not None and _differs(local_bookmark, remote_bookmark):
            result.conflicts.append(BookmarkConflict(key, local_bookmark, remote_bookmark))
            if prefer_remote(local_bookmark, remote_bookmark):
                # Keep the device-local id so the browser entry is updated in place
                result.bookmarks.append(remote_bookmark.with_id(local_bookmark.id))
                result.replaced_by_remote += 1
                continue
        result.bookmarks.append(local_bookmark)

    for key, remote_bookmark in remote_index.items():
        if key not in local_index:
            result.bookmarks.append(remote_bookmark.with_id(None))
            result.added_from_remote += 1

    return result


def merge_union(local: Iterable[Bookmark], remote: Iterable[Bookmark]) -> MergeResult:
    """
    Union keyed by (url, folder_path).
    On divergent content the entry with the later dateAdded wins; ties keep local.
    """
    return _union(local, remote, lambda l, r: r.added_ms > l.added_ms)


def merge_newest_wins(local: Iterable[Bookmark], remote: Iterable[Bookmark],
                      local_is_newer: bool) -> MergeResult:
    """
    Divergent entries take the newer side's content wholesale.
    Entries present on only one side are kept.
    """
    return _union(local, remote, lambda l, r: not local_is_newer)


def merge_bookmarks(local: Iterable[Bookmark], remote: Iterable[Bookmark],
                    strategy: ConflictStrategy, local_is_newer: bool = True) -> MergeResult:
    if strategy is ConflictStrategy.MERGE:
        result = merge_union(local, remote)
    elif strategy is ConflictStrategy.NEWEST_WINS:
        result = merge_newest_wins(local, remote, local_is_newer)
    else:
        raise ValueError(f"{strategy.value} resolution cannot be merged automatically")

    logger.debug(
        f"Merged with {strategy.value}: {len(result.bookmarks)} bookmarks, "
        f"{result.added_from_remote} from remote, {len(result.conflicts)} conflicts"
    )
    return result


def drop_superseded(bookmarks: Iterable[Bookmark],
                    tombstones: Iterable[Tombstone]) -> List[Bookmark]:
    """
    Remove bookmarks deleted after they were added.
    A bookmark added again after its deletion outlives the tombstone.
    """
    deleted_at: Dict[str, int] = {}
    for tombstone in tombstones:
        deleted_at[tombstone.url] = max(tombstone.deleted_at, deleted_at.get(tombstone.url, 0))

    kept = []
    for bookmark in bookmarks:
        when: Optional[int] = deleted_at.get(bookmark.url)
        if when is not None and bookmark.added_ms <= when:
            continue
        kept.append(bookmark)
    return kept
