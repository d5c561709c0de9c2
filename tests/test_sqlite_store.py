"""Tests for the SQLite entity store."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from case_automation.core.config import StorageSettings
from case_automation.core.interfaces import EntityNotFoundError, NonceAlreadyUsedError
from case_automation.storage import SqliteEntityStore


def test_create_get_update_delete(store) -> None:
    created = store.create("Task", {"title": "Draft response", "priority": "high"})
    assert created["id"]
    assert created["created_date"]

    fetched = store.get("Task", created["id"])
    assert fetched["title"] == "Draft response"

    updated = store.update("Task", created["id"], {"status": "done"})
    assert updated["status"] == "done"
    assert updated["title"] == "Draft response"

    store.delete("Task", created["id"])
    assert store.get("Task", created["id"]) is None
    with pytest.raises(EntityNotFoundError):
        store.delete("Task", created["id"])


def test_entities_are_namespaced(store) -> None:
    store.create("Task", {"id": "shared"})
    store.create("Activity", {"id": "shared"})
    store.delete("Task", "shared")
    assert store.get("Activity", "shared") is not None


def test_duplicate_ids_are_rejected(store) -> None:
    store.create("Task", {"id": "t-1"})
    with pytest.raises(ValueError):
        store.create("Task", {"id": "t-1"})


def test_filter_and_list_ordering(store) -> None:
    store.create("Task", {"title": "b", "rank": 2, "manual_override": True})
    store.create("Task", {"title": "a", "rank": 1, "manual_override": False})
    store.create("Task", {"title": "c", "rank": 3, "manual_override": True})

    overridden = store.filter("Task", {"manual_override": True})
    assert sorted(t["title"] for t in overridden) == ["b", "c"]

    assert [t["title"] for t in store.list("Task", order_by="rank")] == ["a", "b", "c"]
    assert [t["title"] for t in store.list("Task", order_by="-rank", limit=2)] == ["c", "b"]
    with pytest.raises(ValueError):
        store.list("Task", order_by="rank; DROP TABLE entities")


def test_update_with_missing_record(store) -> None:
    with pytest.raises(EntityNotFoundError):
        store.update_with("MailRule", "nope", lambda current: current)


def test_update_with_rolls_back_on_error(store) -> None:
    rule = store.create("MailRule", {"name": "Office actions", "counter": 1})

    def explode(current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update_with("MailRule", rule["id"], explode)
    assert store.get("MailRule", rule["id"])["counter"] == 1
    store.update("MailRule", rule["id"], {"counter": 2})
    assert store.get("MailRule", rule["id"])["counter"] == 2


def test_concurrent_update_with_keeps_every_increment(tmp_path: Path) -> None:
    settings = StorageSettings(db_path=tmp_path / "concurrent.db")
    store = SqliteEntityStore(settings)
    rule = store.create("MailRule", {"counter": 0})

    def bump() -> None:
        for _ in range(25):
            store.update_with(
                "MailRule", rule["id"], lambda r: {**r, "counter": r["counter"] + 1}
            )

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("MailRule", rule["id"])["counter"] == 100
    store.close()


def test_claim_nonce_rejects_replay(tmp_path: Path) -> None:
    db_path = tmp_path / "nonces.db"
    with SqliteEntityStore(StorageSettings(db_path=db_path)) as store:
        store.claim_nonce("batch-1", "hash-1", used_meta={"ip": "10.0.0.1"})
        with pytest.raises(NonceAlreadyUsedError):
            store.claim_nonce("batch-1", "hash-1")
        store.claim_nonce("batch-1", "hash-2")

    with sqlite3.connect(db_path) as conn:
        rows = conn.execute(
            "SELECT nonce_hash, used_meta FROM approval_nonces ORDER BY nonce_hash"
        ).fetchall()
    assert [row[0] for row in rows] == ["hash-1", "hash-2"]
    assert "10.0.0.1" in rows[0][1]


def test_migrations_are_idempotent(tmp_path: Path) -> None:
    settings = StorageSettings(db_path=tmp_path / "again.db")
    SqliteEntityStore(settings).close()
    with SqliteEntityStore(settings) as store:
        store.create("Task", {"title": "still works"})
        assert len(store.list("Task")) == 1
