"""Test the Chromium bookmarks file and tree helpers"""

import json

import pytest

from marksync.browser.chromium import (
    WEBKIT_EPOCH_DIFF, ChromiumBookmarks, epoch_ms_to_webkit, webkit_to_epoch_ms,
)
from marksync.browser.tree import (
    BOOKMARKS_BAR, OTHER_BOOKMARKS, FolderResolver, canonical_root_name, normalize_folder_path,
)
from marksync.errors import SyncError, ValidationError

ADDED = str(1700000000000 * 1000 + WEBKIT_EPOCH_DIFF)


def chrome_document():
    return {
        'checksum': 'stale',
        'version': 1,
        'roots': {
            'bookmark_bar': {
                'id': '1', 'name': 'Bookmarks bar', 'type': 'folder', 'date_added': ADDED,
                'children': [
                    {'id': '4', 'name': 'Python', 'type': 'url', 'url': 'https://python.org',
                     'date_added': ADDED},
                    {'id': '5', 'name': 'Dev', 'type': 'folder', 'date_added': ADDED, 'children': [
                        {'id': '6', 'name': 'PyPI', 'type': 'url', 'url': 'https://pypi.org',
                         'date_added': ADDED},
                    ]},
                ],
            },
            'other': {'id': '2', 'name': 'Other bookmarks', 'type': 'folder', 'children': []},
            'synced': {'id': '3', 'name': 'Mobile bookmarks', 'type': 'folder', 'children': []},
        },
    }


@pytest.fixture
def bookmarks_file(temp_dir):
    path = temp_dir / "Bookmarks"
    path.write_text(json.dumps(chrome_document()))
    return path


class TestChromiumBookmarks:
    """Test reading and editing the Bookmarks file"""

    @pytest.mark.asyncio
    async def test_flattens_with_folder_paths(self, bookmarks_file):
        bookmarks = await ChromiumBookmarks(bookmarks_file).get_bookmarks()

        assert [(b.url, b.folder_path) for b in bookmarks] == [
            ('https://python.org', 'Bookmarks Bar'),
            ('https://pypi.org', 'Bookmarks Bar/Dev'),
        ]
        assert bookmarks[0].date_added == 1700000000000
        assert bookmarks[0].id == '4'

    @pytest.mark.asyncio
    async def test_create_update_remove(self, bookmarks_file):
        browser = ChromiumBookmarks(bookmarks_file)
        await browser.get_tree()

        node = await browser.create('2', 'Example', 'https://example.com')
        assert node.id == '7'
        await browser.update(node.id, title='Renamed')

        document = json.loads(bookmarks_file.read_text())
        assert 'checksum' not in document
        other = document['roots']['other']['children']
        assert other[0]['name'] == 'Renamed'
        assert other[0]['type'] == 'url'
        assert other[0]['guid']

        await browser.remove(node.id)
        document = json.loads(bookmarks_file.read_text())
        assert document['roots']['other']['children'] == []

    @pytest.mark.asyncio
    async def test_create_keeps_date_added(self, bookmarks_file):
        browser = ChromiumBookmarks(bookmarks_file)
        node = await browser.create('2', 'Old', 'https://old.test', date_added=1600000000000)

        assert node.date_added == 1600000000000
        document = json.loads(bookmarks_file.read_text())
        raw = document['roots']['other']['children'][-1]
        assert webkit_to_epoch_ms(raw['date_added']) == 1600000000000

    @pytest.mark.asyncio
    async def test_create_folder(self, bookmarks_file):
        browser = ChromiumBookmarks(bookmarks_file)
        folder = await browser.create('1', 'Reading')
        assert folder.is_folder
        document = json.loads(bookmarks_file.read_text())
        assert document['roots']['bookmark_bar']['children'][-1]['type'] == 'folder'

    @pytest.mark.asyncio
    async def test_cannot_remove_root(self, bookmarks_file):
        browser = ChromiumBookmarks(bookmarks_file)
        with pytest.raises(SyncError):
            await browser.remove('1')

    @pytest.mark.asyncio
    async def test_missing_file(self, temp_dir):
        with pytest.raises(SyncError):
            await ChromiumBookmarks(temp_dir / "Bookmarks").get_tree()

        browser = ChromiumBookmarks(temp_dir / "Bookmarks", create_missing=True)
        roots = await browser.get_tree()
        assert [r.title for r in roots] == ['Bookmarks bar', 'Other bookmarks', 'Mobile bookmarks']

    @pytest.mark.asyncio
    async def test_corrupt_file(self, temp_dir):
        path = temp_dir / "Bookmarks"
        path.write_text("{")
        with pytest.raises(ValidationError):
            await ChromiumBookmarks(path).get_tree()

    @pytest.mark.asyncio
    async def test_folder_resolver_creates_once(self, bookmarks_file):
        browser = ChromiumBookmarks(bookmarks_file)
        resolver = FolderResolver(browser, await browser.get_tree())

        existing = await resolver.ensure('Bookmarks Bar/Dev')
        assert existing == '5'

        created = await resolver.ensure('Bookmarks Bar/Dev/Docs')
        assert await resolver.ensure('Bookmarks Bar/Dev/Docs') == created
        assert resolver.created == [created]

    @pytest.mark.asyncio
    async def test_last_modified(self, bookmarks_file):
        modified = await ChromiumBookmarks(bookmarks_file).last_modified()
        assert modified == int(bookmarks_file.stat().st_mtime * 1000)


class TestTimestamps:

    def test_webkit_conversion(self):
        assert webkit_to_epoch_ms(ADDED) == 1700000000000
        assert webkit_to_epoch_ms(epoch_ms_to_webkit(1234)) == 1234
        assert webkit_to_epoch_ms('0') is None
        assert webkit_to_epoch_ms(None) is None


class TestFolderPaths:

    def test_root_aliases(self):
        assert canonical_root_name('Bookmarks Toolbar') == BOOKMARKS_BAR
        assert canonical_root_name('Other bookmarks') == OTHER_BOOKMARKS
        assert canonical_root_name('Synced') == 'Mobile Bookmarks'
        assert canonical_root_name('Work') is None

    @pytest.mark.parametrize("path, expected", [
        ('', 'Other Bookmarks'),
        ('Bookmarks Toolbar/News', 'Bookmarks Bar/News'),
        ('Work/Projects', 'Other Bookmarks/Work/Projects'),
        ('Bookmarks Bar//Dev/', 'Bookmarks Bar/Dev'),
    ])
    def test_normalize(self, path, expected):
        assert normalize_folder_path(path) == expected
