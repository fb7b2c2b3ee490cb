"""
Per-shard batch executors.

An executor buffers records for one shard and sends the buffer to that
shard's connection as a single transaction. Executors never open or close
connections themselves; the writer owns them.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import psycopg
from loguru import logger
from psycopg.rows import dict_row

from . import sql as q
from .errors import ExecutionError, InitializationError, WriteError, map_db_error
from .models import Record, RowKind, RowSchema

UPSERT_KINDS = (RowKind.INSERT, RowKind.UPDATE_AFTER)


class BatchExecutor(Protocol):
    """Accumulates records for one shard and executes them as one unit."""

    def prepare(self, connection: Any) -> None: ...

    def add_to_batch(self, record: Record) -> None: ...

    def execute_batch(self) -> None: ...

    def close(self) -> None: ...


def probe_lightweight_delete(connection: Any) -> bool:
    """Ask the server whether lightweight DELETE is enabled for this connection."""
    setting = q.LIGHTWEIGHT_DELETE_SETTING
    try:
        with connection.cursor(row_factory=dict_row) as cur:
            cur.execute(q.show_settings_like(setting))
            for row in cur.fetchall():
                if str(row.get("name", "")).lower() == setting:
                    return _as_bool(row.get("value"))
        return False
    except psycopg.Error as e:
        raise InitializationError(f"Capability probe for {setting!r} failed: {e}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class ExecutorOptions:
    """Construction-time parameters shared by every executor of one writer."""

    table: str
    table_engine: str
    schema: RowSchema
    primary_keys: Tuple[str, ...] = ()
    order_by_keys: Tuple[str, ...] = ()
    support_upsert: bool = False
    allow_lightweight_delete: bool = False
    server_lightweight_delete: bool = False

    @property
    def lightweight_delete(self) -> bool:
        return self.allow_lightweight_delete and self.server_lightweight_delete


class _BaseExecutor:
    def __init__(self, options: ExecutorOptions):
        self._opts = options
        self._conn: Any = None
        self._closed = False

    # --------------------------- lifecycle

    def prepare(self, connection: Any) -> None:
        if self._closed:
            raise InitializationError("Executor already closed")
        try:
            self._compile()
        except Exception as e:
            raise InitializationError(
                f"Failed to prepare statements for {self._opts.table}: {e}"
            ) from e
        self._conn = connection

    def close(self) -> None:
        """Drop buffered rows and detach from the connection; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._clear()
        self._conn = None

    @property
    def pending_rows(self) -> int:
        return 0

    # --------------------------- batching

    def add_to_batch(self, record: Record) -> None:
        if self._closed:
            raise WriteError("Executor is closed")
        self._buffer(record, self._row(record))

    def execute_batch(self) -> None:
        if self._conn is None:
            raise ExecutionError("Executor is not prepared")
        if not self.pending_rows:
            self._clear()
            return
        with self._transaction() as cur:
            self._execute(cur)
        self._clear()

    # --------------------------- internals

    @contextmanager
    def _transaction(self):
        try:
            with self._conn.cursor() as cur:
                yield cur
            self._conn.commit()
        except Exception as e:
            try:
                self._conn.rollback()
            except Exception as rb:
                logger.warning(f"Rollback failed on {self._opts.table}: {type(rb).__name__}: {rb}")
            raise map_db_error(e) from e

    def _row(self, record: Record) -> dict:
        if not isinstance(record, Record):
            raise WriteError(f"Expected Record, got {type(record).__name__}")
        if len(record.values) != len(self._opts.schema):
            raise WriteError(
                f"Record has {len(record.values)} values, "
                f"schema expects {len(self._opts.schema)}"
            )
        return self._opts.schema.as_dict(record)

    def _compile(self) -> None:
        self._insert_sql = q.insert_statement(self._opts.table, self._opts.schema.fields)

    def _buffer(self, record: Record, row: dict) -> None:
        raise NotImplementedError

    def _execute(self, cur) -> None:
        raise NotImplementedError

    def _clear(self) -> None:
        raise NotImplementedError


class InsertBatchExecutor(_BaseExecutor):
    """Append-only executor for tables without primary keys."""

    def __init__(self, options: ExecutorOptions):
        super().__init__(options)
        self._rows: List[dict] = []

    @property
    def pending_rows(self) -> int:
        return len(self._rows)

    def _buffer(self, record: Record, row: dict) -> None:
        if record.kind not in UPSERT_KINDS:
            # no key to address the row by
            logger.debug(f"Skipping {record.kind.name} row for keyless table {self._opts.table}")
            return
        self._rows.append(row)

    def _execute(self, cur) -> None:
        cur.executemany(self._insert_sql, self._rows)
        logger.debug(f"Inserted {len(self._rows)} rows into {self._opts.table}")

    def _clear(self) -> None:
        self._rows.clear()


class KeyedBatchExecutor(_BaseExecutor):
    """
    Executor for tables with primary keys.

    Buffered rows are reduced by key (last change wins), then applied as
    deletes followed by inserts and/or mutations depending on the engine and
    upsert setting.
    """

    def __init__(self, options: ExecutorOptions):
        super().__init__(options)
        self._changes: Dict[Tuple[Any, ...], Tuple[RowKind, dict]] = {}

    @property
    def pending_rows(self) -> int:
        return len(self._changes)

    def _compile(self) -> None:
        super()._compile()
        o = self._opts
        keys = list(o.primary_keys)
        skip = set(keys) | set(o.order_by_keys)
        self._update_cols = [c for c in o.schema.fields if c not in skip]
        self._delete_sql = q.delete_statement(o.table, keys, lightweight=o.lightweight_delete)
        self._update_sql: Optional[Any] = (
            q.update_statement(o.table, self._update_cols, keys) if self._update_cols else None
        )
        self._insert_as_upsert = o.support_upsert and q.is_replacing_engine(o.table_engine)
        self._delete_then_insert = o.support_upsert and not self._insert_as_upsert

    def _buffer(self, record: Record, row: dict) -> None:
        key = tuple(row[k] for k in self._opts.primary_keys)
        if any(v is None for v in key):
            raise WriteError(f"Primary key {list(self._opts.primary_keys)} has null value(s)")
        kind = record.kind
        if kind is RowKind.UPDATE_BEFORE:
            kind = RowKind.DELETE
        # re-insert so the reduced buffer keeps arrival order of the last change
        self._changes.pop(key, None)
        self._changes[key] = (kind, row)

    def _key_params(self, row: dict) -> dict:
        return {k: row[k] for k in self._opts.primary_keys}

    def _execute(self, cur) -> None:
        deletes, inserts, updates = [], [], []
        for kind, row in self._changes.values():
            if kind is RowKind.DELETE:
                deletes.append(self._key_params(row))
            elif self._insert_as_upsert or (kind is RowKind.INSERT and not self._delete_then_insert):
                inserts.append(row)
            elif self._delete_then_insert:
                deletes.append(self._key_params(row))
                inserts.append(row)
            elif self._update_sql is not None:
                updates.append(row)

        if deletes:
            cur.executemany(self._delete_sql, deletes)
        if inserts:
            cur.executemany(self._insert_sql, inserts)
        if updates:
            cur.executemany(self._update_sql, updates)
        logger.debug(
            f"Applied batch to {self._opts.table}: "
            f"deletes={len(deletes)} inserts={len(inserts)} updates={len(updates)}"
        )

    def _clear(self) -> None:
        self._changes.clear()


def build_executor(options: ExecutorOptions) -> BatchExecutor:
    if options.primary_keys:
        return KeyedBatchExecutor(options)
    return InsertBatchExecutor(options)
