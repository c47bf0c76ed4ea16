"""Test merge policies and the bookmark file envelope"""

import pytest

from marksync.errors import ValidationError
from marksync.sync.merge import (
    ConflictStrategy, drop_superseded, find_conflicts, index_by_key,
    merge_bookmarks, merge_newest_wins, merge_union,
)
from marksync.sync.models import Bookmark, BookmarkFile, to_epoch_ms
from marksync.sync.tombstone import Tombstone


def bm(url, title='', folder='Bookmarks Bar', added=None, id=None):
    return Bookmark(url=url, title=title, folder_path=folder, date_added=added, id=id)


class TestMergeUnion:
    """Test union merge keyed by url and folder path"""

    def test_one_sided_entries_kept(self):
        result = merge_union([bm("https://a.test", id="1")], [bm("https://b.test", id="99")])
        assert [b.url for b in result.bookmarks] == ["https://a.test", "https://b.test"]
        assert result.added_from_remote == 1
        # remote ids belong to another browser
        assert result.bookmarks[1].id is None
        assert result.bookmarks[0].id == "1"

    def test_newer_date_added_wins(self):
        local = [bm("https://a.test", "Old", added=1000, id="7")]
        remote = [bm("https://a.test", "New", added=2000)]
        result = merge_union(local, remote)
        assert result.bookmarks == [bm("https://a.test", "New", added=2000, id="7")]
        assert result.replaced_by_remote == 1
        assert len(result.conflicts) == 1

    def test_tie_keeps_local(self):
        local = [bm("https://a.test", "Local", added=1000)]
        remote = [bm("https://a.test", "Remote", added=1000)]
        assert merge_union(local, remote).bookmarks[0].title == "Local"

    def test_same_url_in_two_folders_is_two_bookmarks(self):
        local = [bm("https://a.test", folder="Bookmarks Bar")]
        remote = [bm("https://a.test", folder="Other Bookmarks")]
        assert len(merge_union(local, remote).bookmarks) == 2

    def test_duplicates_collapse_to_first(self):
        index = index_by_key([bm("https://a.test", "First"), bm("https://a.test", "Second")])
        assert list(index.values())[0].title == "First"


class TestNewestWins:

    def test_remote_newer_takes_remote_content(self):
        local = [bm("https://a.test", "Local", id="1")]
        remote = [bm("https://a.test", "Remote")]
        result = merge_newest_wins(local, remote, local_is_newer=False)
        assert result.bookmarks == [bm("https://a.test", "Remote", id="1")]

    def test_local_newer_keeps_local_content(self):
        local = [bm("https://a.test", "Local")]
        remote = [bm("https://a.test", "Remote"), bm("https://b.test")]
        result = merge_newest_wins(local, remote, local_is_newer=True)
        assert [b.title for b in result.bookmarks] == ["Local", ""]

    def test_merge_bookmarks_dispatch(self):
        local = [bm("https://a.test", "Local", added=1)]
        remote = [bm("https://a.test", "Remote", added=2)]
        assert merge_bookmarks(local, remote, ConflictStrategy.MERGE).bookmarks[0].title == "Remote"
        assert merge_bookmarks(local, remote, ConflictStrategy.NEWEST_WINS,
                               local_is_newer=True).bookmarks[0].title == "Local"

    def test_manual_cannot_merge(self):
        with pytest.raises(ValueError):
            merge_bookmarks([], [], ConflictStrategy.MANUAL)

    def test_find_conflicts(self):
        conflicts = find_conflicts([bm("https://a.test", "x")], [bm("https://a.test", "y")])
        assert len(conflicts) == 1
        assert conflicts[0].key == ("https://a.test", "Bookmarks Bar")


class TestDropSuperseded:

    def test_deleted_after_added_is_dropped(self):
        bookmarks = [bm("https://a.test", added=1000), bm("https://b.test", added=1000)]
        kept = drop_superseded(bookmarks, [Tombstone("https://a.test", 2000)])
        assert [b.url for b in kept] == ["https://b.test"]

    def test_readded_after_deletion_survives(self):
        bookmarks = [bm("https://a.test", added=3000)]
        assert drop_superseded(bookmarks, [Tombstone("https://a.test", 2000)]) == bookmarks

    def test_unknown_date_added_is_dropped(self):
        assert drop_superseded([bm("https://a.test")], [Tombstone("https://a.test", 1)]) == []


class TestBookmarkFile:
    """Test the JSON envelope"""

    def test_round_trip_preserves_fields(self):
        data = BookmarkFile.create(
            [bm("https://a.test", "A", added=1700000000000)],
            [Tombstone("https://gone.test", 5, "laptop")],
        ).stamp()
        parsed = BookmarkFile.from_json(data.to_json())

        assert parsed.bookmarks == data.bookmarks
        assert parsed.tombstones == data.tombstones
        assert parsed.metadata.checksum == data.metadata.checksum
        assert parsed.to_dict()['metadata']['source'] == 'marksync'

    def test_camel_case_keys(self):
        data = BookmarkFile.create([bm("https://a.test", "A", added=5)]).to_dict()
        assert data['bookmarks'][0] == {
            'url': "https://a.test", 'title': "A", 'folderPath': "Bookmarks Bar", 'dateAdded': 5,
        }
        assert set(data) == {'version', 'metadata', 'bookmarks', 'tombstones'}

    def test_content_checksum_falls_back_to_computed(self):
        data = BookmarkFile.create([bm("https://a.test")])
        assert data.metadata.checksum is None
        assert data.content_checksum == data.stamp().metadata.checksum

    def test_missing_tombstones_accepted(self):
        parsed = BookmarkFile.from_dict({'bookmarks': [{'url': "https://a.test"}]})
        assert parsed.tombstones == []
        assert parsed.bookmarks[0].folder_path == ''

    @pytest.mark.parametrize("payload", [
        "not json",
        "[]",
        '{"bookmarks": {}}',
        '{"bookmarks": [{"title": "no url"}]}',
        '{"bookmarks": [], "tombstones": [{"url": "x"}]}',
    ])
    def test_malformed_input_rejected(self, payload):
        with pytest.raises(ValidationError):
            BookmarkFile.from_json(payload)

    def test_epoch_conversion(self):
        assert to_epoch_ms(1700000000000) == 1700000000000
        assert to_epoch_ms("1700000000000") == 1700000000000
        assert to_epoch_ms("2023-11-14T22:13:20.000Z") == 1700000000000
        assert to_epoch_ms(None) == 0
        assert to_epoch_ms("yesterday") == 0
