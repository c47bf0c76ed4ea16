"""Pytest configuration and fixtures"""

import copy
import json
import tempfile
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from marksync.browser.tree import BookmarkTreeNode, BrowserBookmarks, flatten_tree
from marksync.client.store import SettingsStore
from marksync.config import SourceConfig
from marksync.errors import SyncError
from marksync.sources.cloud import CloudDatabaseSource
from marksync.sources.local_file import LocalFileSource
from marksync.sync.engine import SyncEngine
from marksync.sync.tombstone import TombstoneManager


class MemoryBrowser(BrowserBookmarks):
    """In-memory browser with the three Chromium roots"""

    name = "memory"

    def __init__(self):
        self.roots = [
            BookmarkTreeNode(id='1', title='Bookmarks bar'),
            BookmarkTreeNode(id='2', title='Other bookmarks'),
            BookmarkTreeNode(id='3', title='Mobile bookmarks'),
        ]
        self._next_id = 100
        self.fail_on_create_after: Optional[int] = None
        self.calls: List[str] = []

    def _nodes(self):
        stack = list(self.roots)
        while stack:
            node = stack.pop()
            yield node
            stack.extend(node.children)

    def _find(self, node_id):
        for node in self._nodes():
            if node.id == node_id:
                return node
        raise SyncError(f"no node {node_id}")

    def _parent_of(self, node_id):
        for node in self._nodes():
            if any(c.id == node_id for c in node.children):
                return node
        raise SyncError(f"no parent for {node_id}")

    def add(self, folder_path: str, title: str, url: str, date_added: Optional[int] = None) -> str:
        """Test helper: create folders as needed and add a bookmark"""
        segments = folder_path.split('/')
        root_titles = {'Bookmarks Bar': '1', 'Other Bookmarks': '2', 'Mobile Bookmarks': '3'}
        node = self._find(root_titles[segments[0]])
        for segment in segments[1:]:
            match = next((c for c in node.children if c.is_folder and c.title == segment), None)
            if match is None:
                match = self._new_node(node, segment)
            node = match
        return self._new_node(node, title, url, date_added).id

    def _new_node(self, parent, title, url=None, date_added=None):
        self._next_id += 1
        node = BookmarkTreeNode(id=str(self._next_id), title=title, url=url,
                                date_added=date_added, parent_id=parent.id)
        parent.children.append(node)
        return node

    def delete_url(self, url: str):
        for node in list(self._nodes()):
            if node.url == url:
                self._parent_of(node.id).children.remove(node)

    def bookmarks(self):
        return flatten_tree(self.roots)

    async def get_tree(self):
        return copy.deepcopy(self.roots)

    async def create(self, parent_id, title, url=None, date_added=None):
        self.calls.append('create')
        if self.fail_on_create_after is not None:
            if self.fail_on_create_after == 0:
                raise SyncError("browser refused to create bookmark")
            self.fail_on_create_after -= 1
        node = self._new_node(self._find(parent_id), title, url, date_added)
        return copy.deepcopy(node)

    async def update(self, node_id, title=None, url=None):
        self.calls.append('update')
        node = self._find(node_id)
        if title is not None:
            node.title = title
        if url is not None:
            node.url = url
        return copy.deepcopy(node)

    async def remove(self, node_id):
        self.calls.append('remove')
        parent = self._parent_of(node_id)
        parent.children = [c for c in parent.children if c.id != node_id]


class FakePostgrest:
    """
    Just enough PostgREST for the cloud source: eq and lte filters,
    ordering and paging, inserts, upserts with on_conflict, conditional
    PATCH and DELETE.
    """

    def __init__(self):
        self.tables: Dict[str, List[dict]] = {
            'cloud_bookmarks': [],
            'devices': [],
            'sync_state': [],
            'bookmark_versions': [],
        }
        self.requests: List[httpx.Request] = []

    def _filters(self, request):
        params = dict(parse_qsl(request.url.query.decode()))
        filters = {
            k: v for k, v in params.items()
            if k not in ('select', 'order', 'on_conflict', 'limit', 'offset')
        }
        return params, filters

    @staticmethod
    def _matches(row, filters):
        for key, condition in filters.items():
            op, _, value = condition.partition('.')
            if op == 'eq' and str(row.get(key)) != value:
                return False
            if op == 'lte' and not (row.get(key) is not None and row[key] <= int(value)):
                return False
        return True

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit('/', 1)[-1]
        rows = self.tables[table]
        params, filters = self._filters(request)
        prefer = request.headers.get('prefer', '')
        body = json.loads(request.content) if request.content else None

        if request.method == 'GET':
            found = [r for r in rows if self._matches(r, filters)]
            if 'order' in params:
                column, _, direction = params['order'].partition('.')
                found.sort(key=lambda r: r.get(column) or 0, reverse=direction == 'desc')
            offset = int(params.get('offset', 0))
            limit = int(params['limit']) if 'limit' in params else None
            found = found[offset:offset + limit if limit is not None else None]
            return httpx.Response(200, json=copy.deepcopy(found))

        if request.method == 'POST':
            if 'on_conflict' in params:
                keys = params['on_conflict'].split(',')
                existing = next((r for r in rows if all(r.get(k) == body.get(k) for k in keys)), None)
                if existing is not None:
                    existing.update(body)
                else:
                    rows.append(dict(body))
            else:
                if table == 'cloud_bookmarks' and any(r['user_id'] == body['user_id'] for r in rows):
                    return httpx.Response(409, json={'message': 'duplicate key'})
                rows.append(dict(body))
            if 'return=representation' in prefer:
                return httpx.Response(201, json=[body])
            return httpx.Response(201)

        if request.method == 'PATCH':
            updated = []
            for row in rows:
                if self._matches(row, filters):
                    row.update(body)
                    updated.append(row)
            if 'return=representation' in prefer:
                return httpx.Response(200, json=updated)
            return httpx.Response(204)

        if request.method == 'DELETE':
            self.tables[table] = [r for r in rows if not self._matches(r, filters)]
            return httpx.Response(204)

        return httpx.Response(405)


class TickingClock:
    """Epoch-ms clock that advances one second per reading"""

    def __init__(self):
        self.value = int(time.time() * 1000)

    def __call__(self) -> int:
        self.value += 1000
        return self.value


@pytest.fixture
def clock(monkeypatch):
    """Strictly increasing sync and deletion times"""
    ticking = TickingClock()
    monkeypatch.setattr('marksync.sync.engine.now_ms', ticking)
    monkeypatch.setattr('marksync.sync.tombstone.now_ms', ticking)
    return ticking


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def remote_file(temp_dir):
    """Path of a bookmark file shared by several simulated devices"""
    return temp_dir / "remote" / "bookmarks.json"


@pytest.fixture
def memory_browser():
    return MemoryBrowser()


@pytest.fixture
def postgrest():
    return FakePostgrest()


@pytest.fixture
def make_cloud_source(postgrest):
    """Cloud source for one device, talking to the shared fake server"""

    def factory(device: str = 'laptop') -> CloudDatabaseSource:
        source = CloudDatabaseSource(
            SourceConfig(id='cloud', type='cloud', api_url='https://db.example.test',
                         api_key='anon', user_id='user-1'),
            client=httpx.AsyncClient(transport=httpx.MockTransport(postgrest.handler)),
            base_delay=0,
        )
        source.set_device(f"device-{device}", device, 'chrome')
        return source

    return factory


@pytest.fixture
def make_device(temp_dir, remote_file, make_cloud_source):
    """
    Build (browser, engine) pairs that act as separate devices against
    the same remote. kind is 'file' or 'cloud'.
    """

    def factory(name: str, kind: str = 'file', strategy: str = 'newest-wins',
                browser: Optional[MemoryBrowser] = None):
        data_dir = temp_dir / name
        data_dir.mkdir(parents=True, exist_ok=True)
        browser = browser or MemoryBrowser()

        if kind == 'cloud':
            source = make_cloud_source(name)
        else:
            source = LocalFileSource(SourceConfig(id='file', type='local-file', path=str(remote_file)))

        engine = SyncEngine(
            source, browser, SettingsStore(data_dir / "settings.json"),
            TombstoneManager(data_dir, identity=name),
            strategy=strategy,
        )
        return browser, engine

    return factory
