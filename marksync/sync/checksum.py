"""
sync/checksum.py - Canonical, order-independent bookmark checksum
"""

import hashlib
import json
from typing import Iterable, Optional


def bookmark_key(bookmark) -> str:
    """
    Canonical key for one bookmark: a JSON array of url, title and folder path.
    dateAdded and id are left out because browsers reassign them on create.
    """
    return json.dumps(
        [bookmark.url, bookmark.title or '', bookmark.folder_path or ''],
        ensure_ascii=False,
        separators=(',', ':'),
    )


def checksum(bookmarks: Iterable) -> str:
    """SHA-256 hex of the sorted canonical keys joined by newlines"""
    keys = sorted(bookmark_key(b) for b in bookmarks)
    return hashlib.sha256('\n'.join(keys).encode('utf-8')).hexdigest()


EMPTY_CHECKSUM = hashlib.sha256(b'').hexdigest()


def has_content_changed(first: Optional[str], second: Optional[str]) -> bool:
    if not first or not second:
        return True
    return first != second
