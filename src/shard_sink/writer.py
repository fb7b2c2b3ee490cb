"""
Sharded batch sink writer.

Routes each record to its shard, accumulates per-shard batches and flushes
them when the bulk size is reached, when the interval timer fires (for the
shard written last), and on close (for every shard).
"""

from __future__ import annotations

from enum import Enum
from time import monotonic
from typing import Any, Callable, Dict, Optional, Sequence

import psycopg
from loguru import logger

from .config import SinkSettings
from .errors import (
    CloseError,
    ConfigurationError,
    FlushError,
    InitializationError,
    WriteError,
    WriterClosedError,
)
from .executor import ExecutorOptions, build_executor, probe_lightweight_delete
from .metrics import metrics_registry as m
from .models import Record, RowSchema, Shard
from .router import ShardRouter
from .state import CurrentBatchCell, ShardArena, ShardBatchState
from .timer import FlushTimer


class WriterState(str, Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    ACTIVE = "active"
    CLOSED = "closed"


class SinkWriter:
    """
    Batched, sharded writer with size/interval flushing.

    Usage:
        router = ShardRouter(metadata)
        with SinkWriter(router, schema, bulk_size=20_000, batch_interval_ms=1000) as w:
            for record in records:
                w.write(record)
        # every shard flushed and released on exit

    Delivery is at-least-once: ``prepare_commit`` returns no commit info and
    there is no cross-shard coordination.
    """

    def __init__(
        self,
        router: ShardRouter,
        schema: RowSchema,
        *,
        bulk_size: int,
        batch_interval_ms: int,
        primary_keys: Sequence[str] = (),
        support_upsert: bool = False,
        allow_experimental_lightweight_delete: bool = False,
        connection_properties: Optional[Dict[str, Any]] = None,
        connect: Optional[Callable[..., Any]] = None,
        probe: Callable[[Any], bool] = probe_lightweight_delete,
        executor_factory: Callable[[ExecutorOptions], Any] = build_executor,
    ):
        self._state = WriterState.CREATED
        if bulk_size <= 0:
            raise ConfigurationError("bulk_size must be > 0")
        if batch_interval_ms <= 0:
            raise ConfigurationError("batch_interval_ms must be > 0")

        self._router = router
        self._schema = schema
        self._bulk_size = bulk_size
        self._interval_ms = batch_interval_ms
        self._primary_keys = tuple(primary_keys)
        self._support_upsert = support_upsert
        self._allow_lwd = allow_experimental_lightweight_delete
        self._props = dict(connection_properties or {})
        self._connect = connect
        self._probe = probe
        self._executor_factory = executor_factory

        # schema checks happen once, never per record
        self._key_index = router.check_schema(schema)
        order_by = router.order_by_keys or []
        for name in (*self._primary_keys, *order_by):
            schema.index_of(name)
        self._order_by = tuple(order_by)

        self._cell = CurrentBatchCell()
        self._arena = ShardArena()
        self._timer: Optional[FlushTimer] = None
        self._started = False
        self._timer_error: Optional[FlushError] = None

        self._init_arena()
        self._state = WriterState.INITIALIZED
        logger.info(
            f"SinkWriter initialized: table={router.shard_table} shards={len(self._arena)} "
            f"bulk_size={bulk_size} interval_ms={batch_interval_ms}"
        )

    @classmethod
    def from_settings(cls, settings: SinkSettings, **kwargs: Any) -> "SinkWriter":
        router = ShardRouter(settings.to_metadata())
        return cls(
            router,
            settings.to_schema(),
            bulk_size=settings.bulk_size,
            batch_interval_ms=settings.batch_interval_ms,
            primary_keys=settings.primary_keys,
            support_upsert=settings.support_upsert,
            allow_experimental_lightweight_delete=settings.allow_experimental_lightweight_delete,
            connection_properties=settings.connection_properties,
            **kwargs,
        )

    # ---------- context management ----------

    def __enter__(self) -> "SinkWriter":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ---------- introspection ----------

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def router(self) -> ShardRouter:
        return self._router

    def pending(self) -> Dict[int, int]:
        """Pending record count per shard id."""
        return self._arena.pending()

    def shard_state(self, shard_id: int) -> ShardBatchState:
        return self._arena.get(shard_id)

    # ---------- initialization ----------

    def _open_connection(self, shard: Shard) -> Any:
        connect = self._connect or psycopg.connect
        return connect(shard.dsn, **self._props)

    def _init_arena(self) -> None:
        try:
            for _weight, shard in self._router.shards():
                self._arena.add(self._init_shard(shard))
        except InitializationError:
            for state in self._arena:
                self._release(state)
            raise

    def _init_shard(self, shard: Shard) -> ShardBatchState:
        try:
            conn = self._open_connection(shard)
        except Exception as e:
            raise InitializationError(
                f"Cannot connect to shard {shard.shard_id} ({shard.dsn}): {e}"
            ) from e

        try:
            server_lwd = self._probe(conn)
            executor = self._executor_factory(
                ExecutorOptions(
                    table=self._router.shard_table,
                    table_engine=self._router.shard_table_engine,
                    schema=self._schema,
                    primary_keys=self._primary_keys,
                    order_by_keys=self._order_by,
                    support_upsert=self._support_upsert,
                    allow_lightweight_delete=self._allow_lwd,
                    server_lightweight_delete=server_lwd,
                )
            )
            executor.prepare(conn)
        except Exception as e:
            self._close_connection(conn, shard.shard_id)
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(
                f"Prepare statement error on shard {shard.shard_id}: {e}"
            ) from e

        logger.debug(
            f"Shard {shard.shard_id} ready (lightweight_delete: server={server_lwd} "
            f"option={self._allow_lwd})"
        )
        return ShardBatchState(shard=shard, connection=conn, executor=executor)

    # ---------- lifecycle ----------

    def start(self) -> None:
        """Start the interval timer; no-op once started."""

        def _start() -> None:
            if self._state is WriterState.CLOSED:
                raise WriterClosedError("SinkWriter is closed")
            if self._started:
                return
            self._timer = FlushTimer(
                self._interval_ms, self.flush_current, on_error=self._on_timer_error
            )
            self._timer.start()
            self._started = True
            self._state = WriterState.ACTIVE
            logger.info(f"SinkWriter active (flush every {self._interval_ms}ms)")

        self._cell.locked(_start)

    def write(self, record: Record) -> None:
        if self._state is WriterState.CLOSED:
            raise WriterClosedError("SinkWriter is closed")
        self._raise_timer_error()

        key = self._routing_key(record)
        state = self._arena.get(self._router.route(key).shard_id)
        sid = str(state.shard_id)

        def _append(_current: Optional[ShardBatchState]) -> None:
            state.executor.add_to_batch(record)
            state.pending += 1
            m.records_total.labels(shard=sid).inc()
            m.pending_rows.labels(shard=sid).set(state.pending)
            self._cell.set(state)
            self.start()
            if state.pending >= self._bulk_size:
                self._flush(state, trigger="size")

        self._cell.with_locked_current_batch(_append)

    def prepare_commit(self) -> None:
        """No two-phase commit: nothing to hand to the pipeline's committer."""
        return None

    def abort_prepare(self) -> None:
        pass

    def close(self) -> None:
        """Flush every shard, then release every connection. Safe to call twice."""
        if self._state is WriterState.CLOSED:
            return

        errors: list[Exception] = []
        try:
            if self._timer is not None:
                self._timer.stop()
            # the shard the timer failed on is flushed again below
            self._timer_error = None

            for state in self._arena:
                flushed = True
                try:
                    self._cell.locked(lambda: self._flush(state, trigger="close"))
                except FlushError as e:
                    flushed = False
                    errors.append(e)
                    logger.error(f"Close flush failed on shard {state.shard_id}: {e}")

                release_errors = self._release(state)
                if release_errors and not flushed:
                    errors.extend(release_errors)
        finally:
            self._state = WriterState.CLOSED

        if errors:
            raise CloseError(errors)
        logger.info(f"SinkWriter closed ({len(self._arena)} shards)")

    # ---------- flushing ----------

    def flush(self, shard_id: Optional[int] = None) -> bool:
        """Flush one shard (default: the last written). Returns True if a batch ran."""
        if shard_id is None:
            return self._cell.with_locked_current_batch(lambda s: self._flush(s, trigger="manual"))
        state = self._arena.get(shard_id)
        return self._cell.locked(lambda: self._flush(state, trigger="manual"))

    def flush_current(self) -> bool:
        """Timer entry point: flush the shard written last."""
        return self._cell.with_locked_current_batch(lambda s: self._flush(s, trigger="interval"))

    def _flush(self, state: Optional[ShardBatchState], *, trigger: str) -> bool:
        # caller holds the cell lock
        if state is None or state.executor is None or state.pending == 0:
            return False

        sid = str(state.shard_id)
        t0 = monotonic()
        try:
            state.executor.execute_batch()
        except Exception as e:
            m.flush_total.labels(shard=sid, trigger=trigger, outcome="error").inc()
            raise FlushError(
                f"Execute batch failed on shard {state.shard_id} "
                f"({state.pending} pending): {type(e).__name__}: {e}",
                shard_id=state.shard_id,
            ) from e

        elapsed_ms = (monotonic() - t0) * 1000.0
        logger.debug(
            f"Flushed {state.pending} records to shard {state.shard_id} "
            f"({trigger}, {elapsed_ms:.1f}ms)"
        )
        state.pending = 0
        m.flush_total.labels(shard=sid, trigger=trigger, outcome="ok").inc()
        m.flush_latency_ms.labels(shard=sid).observe(elapsed_ms)
        m.pending_rows.labels(shard=sid).set(0)
        return True

    # ---------- internals ----------

    def _routing_key(self, record: Record) -> Any:
        if not isinstance(record, Record):
            raise WriteError(f"Expected Record, got {type(record).__name__}")
        if self._key_index is None:
            return None
        try:
            return record.field(self._key_index)
        except IndexError:
            raise WriteError(
                f"Record has {len(record.values)} values, shard key index is {self._key_index}"
            ) from None

    def _on_timer_error(self, exc: Exception) -> None:
        logger.error(f"Interval flush failed, timer stopped: {type(exc).__name__}: {exc}")
        if not isinstance(exc, FlushError):
            exc = FlushError(f"Interval flush failed: {exc}")
        self._timer_error = exc

    def _raise_timer_error(self) -> None:
        err, self._timer_error = self._timer_error, None
        if err is not None:
            raise err

    def _release(self, state: ShardBatchState) -> list[Exception]:
        """Close executor and connection; failures are logged and returned."""
        errors: list[Exception] = []
        if state.closed:
            return errors
        try:
            state.executor.close()
        except Exception as e:
            logger.warning(f"Failed to close executor of shard {state.shard_id}: {e}")
            errors.append(e)
        err = self._close_connection(state.connection, state.shard_id)
        if err is not None:
            errors.append(err)
        state.closed = True
        return errors

    @staticmethod
    def _close_connection(conn: Any, shard_id: int) -> Optional[Exception]:
        try:
            conn.close()
        except Exception as e:
            logger.warning(f"Failed to close connection of shard {shard_id}: {e}")
            return e
        return None
