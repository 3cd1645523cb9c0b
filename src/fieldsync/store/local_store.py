"""SQLite-backed versioned document store for offline records.

Records are plain dicts persisted per table (object store) and looked up by
primary key or by equality on indexed fields. The store persists across
restarts and upgrades older database files in place.
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import orjson

from fieldsync.exceptions import SchemaVersionError, StorageError
from fieldsync.store.schema import DB_VERSION, MIGRATIONS, TABLES, TableSpec

logger = logging.getLogger(__name__)


class LocalStore:
    """Persistent key/document store with secondary indexes.

    Every operation wraps ``sqlite3.Error`` in ``StorageError`` so callers
    can treat quota or corruption problems as recoverable.

    Example:
        store = LocalStore(Path("/tmp/offline.db"))
        store.put("sync_queue", {"id": "q1", "status": "pending", ...})
        store.query("sync_queue", status="pending")
    """

    def __init__(self, db_path: Path, target_version: int = DB_VERSION) -> None:
        """Open (and if needed create or upgrade) the database.

        Args:
            db_path: Path to the SQLite database file
            target_version: Schema version to migrate to. Only tests should
                pass anything other than the default.
        """
        self.db_path = db_path
        self._tx_depth = 0

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot open local store {db_path}: {e}") from e

        self._conn.row_factory = sqlite3.Row
        self._migrate(target_version)

    @property
    def version(self) -> int:
        """Schema version recorded in the database file."""
        with self._errors("read schema version"):
            return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def _migrate(self, target_version: int) -> None:
        """Apply every migration between the stored and target versions."""
        current = self.version
        if current > DB_VERSION:
            raise SchemaVersionError(
                f"Database version {current} is newer than supported version {DB_VERSION}"
            )

        for version, migration in MIGRATIONS:
            if version <= current or version > target_version:
                continue
            try:
                self._conn.execute("BEGIN")
                migration(self._conn)
                self._conn.execute(f"PRAGMA user_version = {int(version)}")
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Migration to version {version} failed: {e}") from e
            logger.info("Local store upgraded: from=%d, to=%d", current, version)
            current = version

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.ProgrammingError as e:
            raise StorageError(f"Failed to {action}: {e}") from e
        except sqlite3.Error as e:
            if self._tx_depth == 0 and self._conn.in_transaction:
                self._conn.rollback()
            raise StorageError(f"Failed to {action}: {e}") from e

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    @staticmethod
    def _spec(table: str) -> TableSpec:
        try:
            return TABLES[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    def _where(self, spec: TableSpec, filters: dict[str, Any]) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []
        for field, value in filters.items():
            if field not in spec.indexes:
                raise ValueError(f"{field!r} is not an indexed field of {spec.name}")
            if value is None:
                clauses.append(f"{field} IS NULL")
            else:
                clauses.append(f"{field} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @contextmanager
    def transaction(self) -> Iterator["LocalStore"]:
        """Group several writes so they commit or roll back together."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            with self._errors("commit transaction"):
                self._conn.commit()

    def put(self, table: str, record: dict[str, Any]) -> None:
        """Insert or overwrite a record by its primary key.

        Overwriting keeps the record's original insertion position.
        """
        spec = self._spec(table)
        key = record.get(spec.key_field)
        if key is None:
            raise ValueError(f"Record for {table} is missing key field {spec.key_field!r}")

        columns = ["key", "doc", *spec.indexes]
        values = [str(key), orjson.dumps(record), *(record.get(f) for f in spec.indexes)]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])

        with self._errors(f"write {table}/{key}"):
            self._conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(key) DO UPDATE SET {updates}",
                values,
            )
            self._commit()

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Return the record stored under ``key``, or None when absent."""
        self._spec(table)
        with self._errors(f"read {table}/{key}"):
            row = self._conn.execute(
                f"SELECT doc FROM {table} WHERE key = ?", (str(key),)
            ).fetchone()
        return orjson.loads(row["doc"]) if row else None

    def query(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        """Return records whose indexed fields equal ``filters``.

        Results come back in insertion order. With no filters every record
        of the table is returned.
        """
        spec = self._spec(table)
        where, params = self._where(spec, filters)
        with self._errors(f"query {table}"):
            rows = self._conn.execute(
                f"SELECT doc FROM {table}{where} ORDER BY rowid", params
            ).fetchall()
        return [orjson.loads(row["doc"]) for row in rows]

    def count(self, table: str, **filters: Any) -> int:
        """Count matching records without loading their documents."""
        spec = self._spec(table)
        where, params = self._where(spec, filters)
        with self._errors(f"count {table}"):
            return self._conn.execute(
                f"SELECT COUNT(*) FROM {table}{where}", params
            ).fetchone()[0]

    def delete(self, table: str, key: str) -> None:
        """Remove a record. Missing keys are ignored."""
        self._spec(table)
        with self._errors(f"delete {table}/{key}"):
            self._conn.execute(f"DELETE FROM {table} WHERE key = ?", (str(key),))
            self._commit()

    def clear(self, table: str) -> None:
        """Remove every record from a table."""
        self._spec(table)
        with self._errors(f"clear {table}"):
            self._conn.execute(f"DELETE FROM {table}")
            self._commit()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> "LocalStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
