import os
import threading

import pytest

from pos_terminal.app.db import DuplicateSale, LocalStore
from pos_terminal.app.errors import StaleRecord, StoreCorrupted


def test_versioned_put_detects_lost_updates(store):
    with store.transaction() as tx:
        rec = tx.put("held_orders", "h1", {"n": 1}, None)
    assert rec.version == 1

    with store.transaction() as tx:
        tx.put("held_orders", "h1", {"n": 2}, 1)

    with pytest.raises(StaleRecord):
        with store.transaction() as tx:
            tx.put("held_orders", "h1", {"n": 3}, 1)

    with pytest.raises(StaleRecord):
        with store.transaction() as tx:
            tx.put("held_orders", "h1", {"n": 4}, None)

    rec = store.get("held_orders", "h1")
    assert rec.version == 2
    assert rec.body == {"n": 2}


def test_failed_transaction_rolls_back_every_write(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.upsert("settings", "a", {"value": 1})
            tx.append_pending("k1", {"x": 1})
            raise RuntimeError("boom")
    assert store.get("settings", "a") is None
    assert store.count_pending() == 0


def test_nested_transaction_joins_the_outer_one(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as outer:
            outer.upsert("settings", "outer", {"value": 1})
            with store.transaction() as inner:
                assert inner is outer
                inner.upsert("settings", "inner", {"value": 2})
            raise RuntimeError("abort")
    assert store.get("settings", "outer") is None
    assert store.get("settings", "inner") is None


def test_unknown_collection_is_rejected(store):
    with pytest.raises(ValueError):
        store.get("nope", "k")


def test_queue_is_fifo_and_rejects_duplicate_keys(store):
    with store.transaction() as tx:
        s1 = tx.append_pending("k1", {"n": 1})
        s2 = tx.append_pending("k2", {"n": 2})
    assert s2 > s1

    with pytest.raises(DuplicateSale):
        with store.transaction() as tx:
            tx.append_pending("k1", {"n": 3})

    with store.transaction() as tx:
        head = tx.peek_pending()
        assert head.idempotency_key == "k1"
        tx.record_pending_failure(head.seq, "ledger down")
    with store.transaction() as tx:
        head = tx.peek_pending()
        assert head.attempt_count == 1
        assert head.last_error == "ledger down"
        tx.ack_pending(head, "sale-1", "S00001", keep=10)
        assert [q.idempotency_key for q in tx.list_pending()] == ["k2"]
        synced = tx.list_synced()
    assert synced[0]["sale_id"] == "sale-1"
    assert synced[0]["n"] == 1


def test_synced_history_is_trimmed(store):
    with store.transaction() as tx:
        for i in range(5):
            tx.append_pending(f"k{i}", {"i": i})
    for i in range(5):
        with store.transaction() as tx:
            tx.ack_pending(tx.peek_pending(), f"sale-{i}", None, keep=2)
    with store.transaction() as tx:
        synced = tx.list_synced()
    assert [s["i"] for s in synced] == [4, 3]


def test_data_survives_reopen(tmp_path):
    path = str(tmp_path / "pos.sqlite")
    first = LocalStore(path).open()
    with first.transaction() as tx:
        tx.append_pending("k1", {"n": 1})
        tx.upsert("cart", "active", {"items": []})
    second = LocalStore(path).open()
    assert second.count_pending() == 1
    assert second.get("cart", "active").body == {"items": []}


def test_unreadable_record_halts_the_store(store):
    with store.transaction() as tx:
        tx.conn.execute(
            "INSERT INTO held_orders (key, version, body, updated_at) VALUES ('bad', 1, '{not json', 'x')"
        )
    with pytest.raises(StoreCorrupted):
        store.get("held_orders", "bad")
    assert store.halted
    assert os.path.exists(store.fault_marker_path)

    # The halt survives a restart until an operator clears it.
    reopened = LocalStore(store.path).open()
    assert reopened.halted

    with reopened.transaction() as tx:
        tx.delete("held_orders", "bad")
    reopened.clear_fault()
    assert not reopened.halted
    assert not os.path.exists(reopened.fault_marker_path)


def test_garbage_file_fails_open(tmp_path):
    path = tmp_path / "pos.sqlite"
    path.write_bytes(b"this is not a sqlite database at all" * 200)
    store = LocalStore(str(path))
    with pytest.raises(StoreCorrupted):
        store.open()
    assert store.halted


def test_concurrent_writers_are_serialized(store):
    with store.transaction() as tx:
        tx.upsert("settings", "counter", {"value": 0})

    def bump():
        for _ in range(20):
            with store.transaction() as tx:
                rec = tx.get("settings", "counter")
                tx.put("settings", "counter", {"value": rec.body["value"] + 1}, rec.version)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_setting("counter") == 80
