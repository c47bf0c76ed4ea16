"""Test tombstone filtering, merging and persistence"""

import json

from marksync.sync.tombstone import (
    DAY_MS, DeletionTracker, Tombstone, TombstoneManager,
    filter_tombstones_to_apply, merge_tombstones, now_ms, prune_tombstones,
)


class TestFilterTombstones:
    """Test which cloud deletions may be replayed locally"""

    def test_never_synced_applies_nothing(self):
        cloud = [Tombstone("https://a.test", 5000)]
        assert filter_tombstones_to_apply(cloud, [], None) == []

    def test_empty_cloud_list(self):
        assert filter_tombstones_to_apply([], [Tombstone("https://a.test", 1)], 100) == []
        assert filter_tombstones_to_apply(None, None, 100) == []

    def test_newer_than_last_sync_applied(self):
        cloud = [Tombstone("https://a.test", 2000)]
        assert filter_tombstones_to_apply(cloud, [], 1000) == cloud

    def test_stale_tombstone_skipped(self):
        """A deletion older than our last sync was already reconciled"""
        cloud = [Tombstone("https://a.test", 500)]
        assert filter_tombstones_to_apply(cloud, [], 1000) == []

    def test_equal_to_last_sync_skipped(self):
        cloud = [Tombstone("https://a.test", 1000)]
        assert filter_tombstones_to_apply(cloud, [], 1000) == []

    def test_own_deletion_always_applied(self):
        cloud = [Tombstone("https://a.test", 500)]
        local = [Tombstone("https://a.test", 400)]
        assert filter_tombstones_to_apply(cloud, local, 1000) == cloud

    def test_mixed(self):
        keep_new = Tombstone("https://new.test", 3000)
        keep_own = Tombstone("https://own.test", 10)
        stale = Tombstone("https://stale.test", 10)
        result = filter_tombstones_to_apply(
            [keep_new, keep_own, stale], [Tombstone("https://own.test", 5)], 2000,
        )
        assert result == [keep_new, keep_own]


class TestMergeAndPrune:

    def test_merge_keeps_newest_per_url(self):
        merged = merge_tombstones(
            [Tombstone("https://a.test", 100), Tombstone("https://b.test", 50)],
            [Tombstone("https://a.test", 300, "laptop")],
        )
        assert merged == [Tombstone("https://b.test", 50), Tombstone("https://a.test", 300, "laptop")]

    def test_merge_handles_empty_groups(self):
        assert merge_tombstones([], None) == []

    def test_prune_drops_expired(self):
        now = 100 * DAY_MS
        fresh = Tombstone("https://fresh.test", now - 2 * DAY_MS)
        old = Tombstone("https://old.test", now - 31 * DAY_MS)
        assert prune_tombstones([fresh, old], 30, now=now) == [fresh]

    def test_serialization(self):
        tombstone = Tombstone("https://a.test", 1700000000000, "device-1")
        data = tombstone.to_dict()
        assert data == {'url': "https://a.test", 'deletedAt': 1700000000000, 'deletedBy': "device-1"}
        assert Tombstone.from_dict(data) == tombstone
        assert 'deletedBy' not in Tombstone("https://a.test", 1).to_dict()


class TestTombstoneManager:
    """Test tombstone persistence"""

    def test_mark_and_reload(self, temp_dir):
        manager = TombstoneManager(temp_dir, identity="device-1")
        tombstone = manager.mark_deleted("https://a.test")

        assert manager.is_deleted("https://a.test")
        assert tombstone.deleted_by == "device-1"

        reloaded = TombstoneManager(temp_dir)
        assert reloaded.get_tombstone("https://a.test") == tombstone

    def test_file_is_json_list(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        manager.mark_deleted("https://a.test", deleted_at=123)
        data = json.loads((temp_dir / "tombstones.json").read_text())
        assert data == [{'url': "https://a.test", 'deletedAt': 123}]

    def test_corrupt_file_starts_empty(self, temp_dir):
        (temp_dir / "tombstones.json").write_text("{not json")
        manager = TombstoneManager(temp_dir)
        assert manager.get_all() == []

    def test_remove_and_clear(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        manager.mark_deleted("https://a.test")
        manager.mark_deleted("https://b.test")

        manager.remove_tombstone("https://a.test")
        assert not manager.is_deleted("https://a.test")

        manager.clear()
        assert manager.get_all() == []

    def test_replace_all(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        manager.mark_deleted("https://a.test")
        manager.replace_all([Tombstone("https://b.test", 5)])
        assert [t.url for t in TombstoneManager(temp_dir).get_all()] == ["https://b.test"]

    def test_cleanup_old_tombstones(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        manager.mark_deleted("https://old.test", deleted_at=now_ms() - 40 * DAY_MS)
        manager.mark_deleted("https://new.test")

        assert manager.cleanup_old_tombstones(30) == 1
        assert [t.url for t in manager.get_all()] == ["https://new.test"]

    def test_statistics(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        assert manager.get_statistics() == {'count': 0}

        manager.mark_deleted("https://a.test", deleted_at=now_ms() - 2 * 3_600_000)
        stats = manager.get_statistics()
        assert stats['count'] == 1
        assert stats['oldest_age_hours'] >= 2


class TestDeletionTracker:

    def test_detects_deleted_and_restored(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        tracker = DeletionTracker(manager)

        changes = tracker.detect_changes(["https://a.test", "https://b.test"], ["https://b.test"])
        assert changes == {'deleted': ["https://a.test"], 'restored': []}
        assert manager.is_deleted("https://a.test")

        changes = tracker.detect_changes(["https://b.test"], ["https://a.test", "https://b.test"])
        assert changes == {'deleted': [], 'restored': ["https://a.test"]}
        assert not manager.is_deleted("https://a.test")

    def test_existing_tombstone_not_refreshed(self, temp_dir):
        manager = TombstoneManager(temp_dir)
        manager.mark_deleted("https://a.test", deleted_at=42)
        DeletionTracker(manager).detect_changes(["https://a.test"], [])
        assert manager.get_tombstone("https://a.test").deleted_at == 42
