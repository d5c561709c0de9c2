"""SQLite-backed entity store implementation."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import serialize_datetime, utc_now
from ..core.interfaces import (
    EntityNotFoundError,
    EntityStore,
    NonceAlreadyUsedError,
    Record,
)

LOGGER = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SqliteEntityStore(EntityStore):
    """Persist entity records as JSON documents in SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the store and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._apply_migrations()
        self._ensure_indexes()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteEntityStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # EntityStore API ---------------------------------------------------------
    def create(self, entity: str, data: Mapping[str, Any]) -> Record:
        """Insert a new record, assigning an id when the caller did not."""
        record = dict(data)
        record_id = str(record.get("id") or uuid.uuid4())
        now = serialize_datetime(utc_now())
        record["id"] = record_id
        record.setdefault("created_date", now)
        record["updated_date"] = now

        try:
            with self._lock, self._connection:
                self._connection.execute(
                    """
                    INSERT INTO entities (entity, id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (entity, record_id, _dump(record), now, now),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"{entity} {record_id} already exists") from exc

        LOGGER.debug("Created %s %s", entity, record_id)
        return record

    def get(self, entity: str, record_id: str) -> Record | None:
        """Return the stored record or ``None``."""
        cur = self._connection.execute(
            "SELECT data FROM entities WHERE entity = ? AND id = ?",
            (entity, record_id),
        )
        row = cur.fetchone()
        if row is None:
            return None
        return json.loads(row["data"])

    def update(self, entity: str, record_id: str, changes: Mapping[str, Any]) -> Record:
        """Merge ``changes`` into the stored record."""

        def merge(current: Record) -> Record:
            return {**current, **changes}

        return self.update_with(entity, record_id, merge)

    def update_with(
        self, entity: str, record_id: str, mutate: Callable[[Record], Record]
    ) -> Record:
        """Read, mutate and write a record inside one immediate transaction."""
        with self._lock:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
                row = self._connection.execute(
                    "SELECT data FROM entities WHERE entity = ? AND id = ?",
                    (entity, record_id),
                ).fetchone()
                if row is None:
                    raise EntityNotFoundError(entity, record_id)
                updated = dict(mutate(json.loads(row["data"])))
                now = serialize_datetime(utc_now())
                updated["id"] = record_id
                updated["updated_date"] = now
                self._connection.execute(
                    "UPDATE entities SET data = ?, updated_at = ? WHERE entity = ? AND id = ?",
                    (_dump(updated), now, entity, record_id),
                )
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise
        LOGGER.debug("Updated %s %s", entity, record_id)
        return updated

    def delete(self, entity: str, record_id: str) -> None:
        """Delete a record, raising when it does not exist."""
        with self._lock, self._connection:
            cursor = self._connection.execute(
                "DELETE FROM entities WHERE entity = ? AND id = ?",
                (entity, record_id),
            )
        if cursor.rowcount == 0:
            raise EntityNotFoundError(entity, record_id)
        LOGGER.debug("Deleted %s %s", entity, record_id)

    def filter(self, entity: str, criteria: Mapping[str, Any]) -> list[Record]:
        """Return records whose fields equal every supplied criterion."""
        return [
            record
            for record in self._load_all(entity)
            if all(record.get(key) == value for key, value in criteria.items())
        ]

    def list(
        self, entity: str, *, order_by: str | None = None, limit: int | None = None
    ) -> list[Record]:
        """Return records for ``entity``; ``order_by='-field'`` sorts descending."""
        query = "SELECT data FROM entities WHERE entity = ?"
        params: list[Any] = [entity]
        if order_by:
            descending = order_by.startswith("-")
            field_name = order_by.lstrip("-")
            if not _FIELD_NAME.match(field_name):
                raise ValueError(f"Invalid order_by field: {order_by}")
            query += " ORDER BY json_extract(data, ?)"
            query += " DESC" if descending else " ASC"
            params.append(f"$.{field_name}")
        else:
            query += " ORDER BY created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cur = self._connection.execute(query, params)
        return [json.loads(row["data"]) for row in cur.fetchall()]

    def claim_nonce(
        self,
        batch_id: str,
        nonce_hash: str,
        *,
        expires_at: datetime | None = None,
        used_meta: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a spent nonce hash; the primary key rejects replays."""
        try:
            with self._lock, self._connection:
                self._connection.execute(
                    """
                    INSERT INTO approval_nonces (
                        nonce_hash, batch_id, expires_at, used_at, used_meta
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        nonce_hash,
                        batch_id,
                        serialize_datetime(expires_at),
                        serialize_datetime(utc_now()),
                        _dump(dict(used_meta or {})),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            LOGGER.warning("Nonce replay detected for batch %s", batch_id)
            raise NonceAlreadyUsedError(
                f"Approval nonce already used for batch {batch_id}"
            ) from exc

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _load_all(self, entity: str) -> list[Record]:
        cur = self._connection.execute(
            "SELECT data FROM entities WHERE entity = ? ORDER BY created_at ASC",
            (entity,),
        )
        return [json.loads(row["data"]) for row in cur.fetchall()]

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)

    def _ensure_indexes(self) -> None:
        """Create supporting indexes that may be missing from older schemas."""
        index_statements = (
            "CREATE INDEX IF NOT EXISTS idx_entities_entity_created ON entities(entity, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_approval_nonces_batch ON approval_nonces(batch_id)",
        )
        with self._connection:
            for statement in index_statements:
                self._connection.execute(statement)


def _dump(value: Mapping[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


__all__ = ["SqliteEntityStore"]
