"""
Tests for the document store: writes, field transforms, batches, listeners,
dispatchers and the cross-store change feed.
"""
import sqlite3
import threading
import time
from unittest.mock import patch

import pytest

from boardsync.errors import AlreadyExists, NotFound, TransientNetworkError
from boardsync.store import (
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    QuerySnapshot,
    is_document_path,
    join_path,
    parent_collection,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Paths
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPaths:

    def test_document_vs_collection(self):
        assert is_document_path("boards/u1")
        assert not is_document_path("boards/u1/columns")

    def test_parent_collection(self):
        assert parent_collection("boards/u1/tasks/task-1") == ("boards/u1/tasks", "task-1")

    def test_join_path_strips_slashes(self):
        assert join_path("/boards/u1/columns/", "column-1") == "boards/u1/columns/column-1"

    def test_invalid_paths(self):
        with pytest.raises(ValueError):
            parent_collection("boards")
        with pytest.raises(ValueError):
            is_document_path("boards//u1")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reads and writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestWrites:

    def test_get_absent_is_not_an_error(self, store):
        snap = store.get("boards/u1")
        assert not snap.exists
        assert snap.to_dict() is None
        assert snap.id == "u1"

    def test_merge_keeps_other_fields(self, store):
        store.set("users/u1", {"firstName": "Ada", "theme": "light"})
        store.set("users/u1", {"theme": "dark"}, merge=True)
        assert store.get("users/u1").data == {"firstName": "Ada", "theme": "dark"}

    def test_set_without_merge_replaces(self, store):
        store.set("users/u1", {"firstName": "Ada", "theme": "light"})
        store.set("users/u1", {"theme": "dark"})
        assert store.get("users/u1").data == {"theme": "dark"}

    def test_revision_increments_per_write(self, store):
        store.set("boards/u1", {"columnOrder": []}, merge=True)
        store.set("boards/u1", {"columnOrder": ["column-1"]}, merge=True)
        snap = store.get("boards/u1")
        assert snap.revision == 2
        assert snap.update_time

    def test_create_refuses_existing(self, store):
        store.create("boards/u1/tasks/task-1", {"content": "first"})
        with pytest.raises(AlreadyExists):
            store.create("boards/u1/tasks/task-1", {"content": "second"})
        assert store.get("boards/u1/tasks/task-1").data == {"content": "first"}

    def test_update_requires_existing(self, store):
        with pytest.raises(NotFound):
            store.update("boards/u1", {"columnOrder": []})
        assert not store.get("boards/u1").exists

    def test_delete_missing_is_noop_unless_must_exist(self, store):
        store.delete("boards/u1/tasks/task-9")
        with pytest.raises(NotFound):
            store.delete("boards/u1/tasks/task-9", must_exist=True)

    def test_list_collection_only_direct_children(self, store):
        store.set("boards/u1", {"columnOrder": []})
        store.set("boards/u1/columns/column-2", {"title": "B"})
        store.set("boards/u1/columns/column-1", {"title": "A"})
        store.set("boards/u2/columns/column-1", {"title": "other user"})
        snap = store.list("boards/u1/columns")
        assert [d.id for d in snap] == ["column-1", "column-2"]
        assert snap.to_dict()["column-1"] == {"title": "A"}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Field transforms
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestArrayTransforms:

    def test_union_is_idempotent(self, store):
        store.set("boards/u1", {"columnOrder": []})
        store.update("boards/u1", {"columnOrder": ArrayUnion("column-1")})
        store.update("boards/u1", {"columnOrder": ArrayUnion("column-1")})
        assert store.get("boards/u1").data["columnOrder"] == ["column-1"]

    def test_union_appends_in_order(self, store):
        store.set("boards/u1", {"columnOrder": ["column-1"]})
        store.update("boards/u1", {"columnOrder": ArrayUnion("column-2", "column-1", "column-3")})
        assert store.get("boards/u1").data["columnOrder"] == ["column-1", "column-2", "column-3"]

    def test_remove_absent_value_is_noop(self, store):
        store.set("boards/u1", {"columnOrder": ["column-1", "column-2"]})
        store.update("boards/u1", {"columnOrder": ArrayRemove("column-9")})
        assert store.get("boards/u1").data["columnOrder"] == ["column-1", "column-2"]

    def test_remove_value(self, store):
        store.set("boards/u1", {"columnOrder": ["column-1", "column-2"]})
        store.update("boards/u1", {"columnOrder": ArrayRemove("column-1")})
        assert store.get("boards/u1").data["columnOrder"] == ["column-2"]

    def test_union_on_missing_field_creates_list(self, store):
        store.set("boards/u1/columns/column-1", {"title": "A"})
        store.set("boards/u1/columns/column-1", {"taskIds": ArrayUnion("task-1")}, merge=True)
        assert store.get("boards/u1/columns/column-1").data == {"title": "A", "taskIds": ["task-1"]}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Batches
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBatch:

    def test_batch_deletes_together(self, store):
        for n in (1, 2, 3):
            store.set(f"boards/u1/tasks/task-{n}", {"content": str(n)})
        batch = store.batch()
        batch.delete("boards/u1/tasks/task-1").delete("boards/u1/tasks/task-2")
        changed = batch.commit()
        assert changed == ["boards/u1/tasks/task-1", "boards/u1/tasks/task-2"]
        assert [d.id for d in store.list("boards/u1/tasks")] == ["task-3"]

    def test_failed_batch_applies_nothing(self, store):
        store.set("boards/u1/tasks/task-1", {"content": "keep me"})
        batch = store.batch()
        batch.delete("boards/u1/tasks/task-1")
        batch.update("boards/u1/columns/missing", {"title": "x"})
        with pytest.raises(NotFound):
            batch.commit()
        assert store.get("boards/u1/tasks/task-1").exists

    def test_later_writes_see_earlier_ones(self, store):
        batch = store.batch()
        batch.create("boards/u1", {"columnOrder": []})
        batch.update("boards/u1", {"columnOrder": ArrayUnion("column-1")})
        batch.commit()
        assert store.get("boards/u1").data["columnOrder"] == ["column-1"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Listeners
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestListeners:

    def test_document_listener_fires_immediately_and_on_change(self, store):
        seen = []
        store.subscribe("boards/u1", seen.append)
        store.set("boards/u1", {"columnOrder": []})
        assert [s.exists for s in seen] == [False, True]
        assert seen[1].data == {"columnOrder": []}

    def test_collection_listener_gets_one_snapshot_per_batch(self, store):
        seen = []
        store.subscribe("boards/u1/tasks", seen.append)
        batch = store.batch()
        batch.set("boards/u1/tasks/task-1", {"content": "a"})
        batch.set("boards/u1/tasks/task-2", {"content": "b"})
        batch.commit()
        assert len(seen) == 2
        assert isinstance(seen[1], QuerySnapshot)
        assert set(seen[1].to_dict()) == {"task-1", "task-2"}

    def test_unrelated_writes_do_not_notify(self, store):
        seen = []
        store.subscribe("boards/u1/columns", seen.append)
        store.set("boards/u1/tasks/task-1", {"content": "a"})
        store.set("boards/u2/columns/column-1", {"title": "other"})
        assert len(seen) == 1

    def test_cancel_stops_delivery(self, store):
        seen = []
        cancel = store.subscribe("boards/u1", seen.append)
        cancel()
        cancel()  # second call is a no-op
        store.set("boards/u1", {"columnOrder": []})
        assert len(seen) == 1
        assert store.listener_count == 0

    def test_failing_listener_does_not_block_others(self, store):
        seen = []

        def broken(snapshot):
            raise RuntimeError("boom")

        store.subscribe("boards/u1", broken)
        store.subscribe("boards/u1", seen.append)
        store.set("boards/u1", {"columnOrder": []})
        assert len(seen) == 2

    def test_missing_delete_does_not_notify(self, store):
        seen = []
        store.subscribe("boards/u1/tasks", seen.append)
        store.delete("boards/u1/tasks/task-1")
        assert len(seen) == 1


class TestQueuedDispatcher:

    def test_deliveries_wait_for_drain(self, queued_store, dispatcher):
        seen = []
        queued_store.subscribe("boards/u1", seen.append)
        queued_store.set("boards/u1", {"columnOrder": []})
        assert seen == []
        assert dispatcher.pending == 2
        assert dispatcher.drain() == 2
        assert [s.exists for s in seen] == [False, True]

    def test_snapshot_captured_at_commit_time(self, queued_store, dispatcher):
        seen = []
        queued_store.subscribe("boards/u1", seen.append)
        queued_store.set("boards/u1", {"columnOrder": ["column-1"]})
        queued_store.set("boards/u1", {"columnOrder": ["column-2"]})
        dispatcher.drain()
        assert [s.data for s in seen] == [
            None,
            {"columnOrder": ["column-1"]},
            {"columnOrder": ["column-2"]},
        ]

    def test_cancelled_listener_skips_queued_snapshots(self, queued_store, dispatcher):
        seen = []
        cancel = queued_store.subscribe("boards/u1", seen.append)
        queued_store.set("boards/u1", {"columnOrder": []})
        cancel()
        dispatcher.drain()
        assert seen == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Change feed and errors
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestChangeFeed:

    def test_other_store_sees_changes_after_pull(self, db_path):
        writer = DocumentStore(db_path)
        reader = DocumentStore(db_path)
        seen = []
        reader.subscribe("boards/u1/columns", seen.append)

        writer.set("boards/u1/columns/column-1", {"title": "Todo"})
        assert len(seen) == 1  # not delivered until pulled

        assert reader.pull_changes() == 1
        assert len(seen) == 2
        assert seen[1].to_dict() == {"column-1": {"title": "Todo"}}

    def test_own_changes_are_not_redelivered(self, db_path):
        store = DocumentStore(db_path)
        seen = []
        store.subscribe("boards/u1", seen.append)
        store.set("boards/u1", {"columnOrder": []})
        assert store.pull_changes() == 0
        assert len(seen) == 2

    def test_history_before_construction_is_skipped(self, db_path):
        DocumentStore(db_path).set("boards/u1", {"columnOrder": []})
        late = DocumentStore(db_path)
        assert late.pull_changes() == 0


class TestTransientErrors:

    def test_locked_database_maps_to_transient_error(self, store):
        with patch("boardsync.store._connect", side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(TransientNetworkError):
                store.get("boards/u1")
            with pytest.raises(TransientNetworkError):
                store.set("boards/u1", {"columnOrder": []})

    def test_subscribe_failure_leaves_no_listener(self, store):
        with patch("boardsync.store._connect", side_effect=sqlite3.OperationalError("unable to open database file")):
            with pytest.raises(TransientNetworkError):
                store.subscribe("boards/u1", lambda s: None)
        assert store.listener_count == 0


class TestConcurrentDelivery:

    def test_snapshots_arrive_in_commit_order_across_threads(self, store):
        """A writer that stalls between reading and delivering its snapshot must not overwrite a newer one."""
        seen = []
        store.subscribe("boards/u1", seen.append)

        stalled = threading.Event()
        release = threading.Event()
        read_snapshot = store.snapshot

        def slow_snapshot(path):
            snap = read_snapshot(path)
            if threading.current_thread().name == "first-writer" and not stalled.is_set():
                stalled.set()
                release.wait(5)
            return snap

        store.snapshot = slow_snapshot
        first = threading.Thread(
            target=store.set, args=("boards/u1", {"columnOrder": ["column-1"]}), name="first-writer"
        )
        second = threading.Thread(
            target=store.set, args=("boards/u1", {"columnOrder": ["column-1", "column-2"]})
        )
        first.start()
        assert stalled.wait(5)
        second.start()

        # let the second commit land before the first writer resumes
        deadline = time.monotonic() + 5
        while store.get("boards/u1").revision < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        first.join(5)
        second.join(5)

        assert seen[-1].data == store.get("boards/u1").data == {"columnOrder": ["column-1", "column-2"]}
        assert [s.revision for s in seen] == sorted(s.revision for s in seen)


class TestChangeFeedPruning:

    def _feed_rows(self, db_path):
        conn = sqlite3.connect(db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM changes").fetchone()[0]
        finally:
            conn.close()

    def test_rows_seen_by_every_reader_are_pruned(self, db_path):
        writer = DocumentStore(db_path)
        reader = DocumentStore(db_path)
        for n in (1, 2, 3):
            writer.set(f"boards/u1/tasks/task-{n}", {"content": str(n)})

        reader.pull_changes()
        assert self._feed_rows(db_path) == 3  # writer has not caught up yet
        writer.pull_changes()
        assert self._feed_rows(db_path) == 0

    def test_pruning_keeps_rows_a_slow_reader_still_needs(self, db_path):
        writer = DocumentStore(db_path)
        fast = DocumentStore(db_path)
        slow = DocumentStore(db_path)
        seen = []
        slow.subscribe("boards/u1/columns", seen.append)

        writer.set("boards/u1/columns/column-1", {"title": "Todo"})
        writer.pull_changes()
        fast.pull_changes()

        assert slow.pull_changes() == 1
        assert seen[-1].to_dict() == {"column-1": {"title": "Todo"}}

    def test_idle_reader_stops_pinning_the_feed(self, db_path):
        writer = DocumentStore(db_path, change_retention=60)
        idle = DocumentStore(db_path)
        writer.set("boards/u1", {"columnOrder": []})
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("UPDATE readers SET seen_at = seen_at - 3600 WHERE origin = ?", (idle.origin,))
            conn.commit()
        finally:
            conn.close()

        writer.pull_changes()
        assert self._feed_rows(db_path) == 0

    def test_closed_store_is_no_longer_a_reader(self, db_path):
        writer = DocumentStore(db_path)
        gone = DocumentStore(db_path)
        gone.subscribe("boards/u1", lambda s: None)
        gone.close()
        assert gone.listener_count == 0
        writer.set("boards/u1", {"columnOrder": []})
        writer.pull_changes()
        assert self._feed_rows(db_path) == 0
