"""
browser/chromium.py - Chromium-family "Bookmarks" JSON file

Chrome, Chromium, Edge and Brave keep bookmarks in a JSON document with
three roots. Timestamps are microseconds since 1601-01-01 as strings.
The browser rewrites this file while running, so sync it while the
browser is closed.
"""

import json
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging

import aiofiles

from ..errors import SyncError, ValidationError
from .tree import BookmarkTreeNode, BrowserBookmarks

logger = logging.getLogger(__name__)

# Microseconds between 1601-01-01 and 1970-01-01
WEBKIT_EPOCH_DIFF = 11644473600000000

ROOT_KEYS = ('bookmark_bar', 'other', 'synced')
ROOT_NAMES = {
    'bookmark_bar': 'Bookmarks bar',
    'other': 'Other bookmarks',
    'synced': 'Mobile bookmarks',
}


def webkit_to_epoch_ms(value: Any) -> Optional[int]:
    try:
        micros = int(value)
    except (TypeError, ValueError):
        return None
    if micros <= 0:
        return None
    return (micros - WEBKIT_EPOCH_DIFF) // 1000


def epoch_ms_to_webkit(value: Optional[float] = None) -> str:
    ms = value if value is not None else time.time() * 1000
    return str(int(ms * 1000) + WEBKIT_EPOCH_DIFF)


def _empty_document() -> Dict[str, Any]:
    now = epoch_ms_to_webkit()
    roots = {}
    for index, key in enumerate(ROOT_KEYS, start=1):
        roots[key] = {
            'children': [],
            'date_added': now,
            'date_modified': '0',
            'guid': str(uuid.uuid4()),
            'id': str(index),
            'name': ROOT_NAMES[key],
            'type': 'folder',
        }
    return {'roots': roots, 'version': 1}


class ChromiumBookmarks(BrowserBookmarks):
    """BrowserBookmarks backed by a Chromium profile's Bookmarks file"""

    name = "chrome"

    def __init__(self, path: Path, create_missing: bool = False):
        self.path = Path(path).expanduser()
        self.create_missing = create_missing
        self._document: Optional[Dict[str, Any]] = None

    async def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            if not self.create_missing:
                raise SyncError(f"Browser bookmarks file not found: {self.path}")
            self._document = _empty_document()
            return self._document

        async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
            text = await f.read()

        try:
            document = json.loads(text)
        except ValueError as e:
            raise ValidationError(f"Corrupt bookmarks file {self.path}: {e}") from e

        if not isinstance(document.get('roots'), dict):
            raise ValidationError(f"Bookmarks file {self.path} has no roots")

        self._document = document
        return document

    async def _save(self):
        document = self._document
        # Chrome recomputes the checksum; a stale one would flag the file as corrupt
        document.pop('checksum', None)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + '.marksync.tmp')
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(document, indent=3, ensure_ascii=False))
        os.replace(tmp_path, self.path)

    async def _document_for_write(self) -> Dict[str, Any]:
        if self._document is None:
            await self._load()
        return self._document

    def _roots(self, document) -> List[Dict[str, Any]]:
        return [document['roots'][key] for key in ROOT_KEYS if key in document['roots']]

    def _walk(self, document) -> Iterator[Tuple[Dict[str, Any], Optional[Dict[str, Any]]]]:
        stack = [(root, None) for root in reversed(self._roots(document))]
        while stack:
            node, parent = stack.pop()
            yield node, parent
            for child in reversed(node.get('children', [])):
                stack.append((child, node))

    def _find(self, document, node_id: str) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        for node, parent in self._walk(document):
            if node.get('id') == node_id:
                return node, parent
        raise SyncError(f"No bookmark node with id {node_id}")

    def _next_id(self, document) -> str:
        highest = 0
        for node, _ in self._walk(document):
            try:
                highest = max(highest, int(node.get('id', 0)))
            except ValueError:
                continue
        return str(highest + 1)

    def _to_node(self, raw: Dict[str, Any], parent_id: Optional[str] = None) -> BookmarkTreeNode:
        node = BookmarkTreeNode(
            id=str(raw.get('id')),
            title=raw.get('name', ''),
            url=raw.get('url') if raw.get('type') == 'url' else None,
            date_added=webkit_to_epoch_ms(raw.get('date_added')),
            parent_id=parent_id,
        )
        if raw.get('type') != 'url':
            node.children = [self._to_node(c, node.id) for c in raw.get('children', [])]
        return node

    async def get_tree(self) -> List[BookmarkTreeNode]:
        document = await self._load()
        return [self._to_node(root) for root in self._roots(document)]

    async def create(self, parent_id: str, title: str, url: Optional[str] = None,
                     date_added: Optional[int] = None) -> BookmarkTreeNode:
        document = await self._document_for_write()
        parent, _ = self._find(document, parent_id)
        if parent.get('type') == 'url':
            raise SyncError(f"Cannot add children to bookmark {parent_id}")

        now = epoch_ms_to_webkit()
        raw = {
            'date_added': epoch_ms_to_webkit(date_added) if date_added else now,
            'guid': str(uuid.uuid4()),
            'id': self._next_id(document),
            'name': title,
        }
        if url is None:
            raw.update({'children': [], 'date_modified': now, 'type': 'folder'})
        else:
            raw.update({'type': 'url', 'url': url})

        parent.setdefault('children', []).append(raw)
        parent['date_modified'] = now
        await self._save()
        return self._to_node(raw, parent_id)

    async def update(self, node_id: str, title: Optional[str] = None,
                     url: Optional[str] = None) -> BookmarkTreeNode:
        document = await self._document_for_write()
        raw, parent = self._find(document, node_id)
        if title is not None:
            raw['name'] = title
        if url is not None and raw.get('type') == 'url':
            raw['url'] = url
        await self._save()
        return self._to_node(raw, parent.get('id') if parent else None)

    async def remove(self, node_id: str):
        document = await self._document_for_write()
        raw, parent = self._find(document, node_id)
        if parent is None:
            raise SyncError(f"Cannot remove root folder {node_id}")
        parent['children'] = [c for c in parent.get('children', []) if c is not raw]
        parent['date_modified'] = epoch_ms_to_webkit()
        await self._save()

    async def last_modified(self) -> Optional[int]:
        if not self.path.exists():
            return None
        return int(self.path.stat().st_mtime * 1000)
