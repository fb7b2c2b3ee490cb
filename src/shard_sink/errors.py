"""
Custom exceptions for the sharded batch sink.

Provides a structured taxonomy so a pipeline can tell configuration mistakes
(fatal at startup) from per-record and per-batch failures (caller decides).
"""

from __future__ import annotations

from typing import Optional, Sequence


class ShardSinkError(Exception):
    """Base error for the shard sink."""

    pass


class ConfigurationError(ShardSinkError):
    """Bad shard key field, malformed sharding config or settings."""

    pass


class InitializationError(ShardSinkError):
    """A shard's connection or statement could not be prepared."""

    pass


class WriteError(ShardSinkError):
    """Record is incompatible with the target schema."""

    pass


class ExecutionError(ShardSinkError):
    """Destination rejected or failed to execute a batch."""

    pass


class RetryableError(ExecutionError):
    """Temporary errors; a caller-level retry may succeed."""

    pass


class ConstraintViolation(ExecutionError):
    """Destination constraint violations."""

    pass


class TimeoutExceeded(ExecutionError):
    """Query or connection timeout errors."""

    pass


class FlushError(ShardSinkError):
    """A shard's pending batch could not be flushed."""

    def __init__(self, message: str, shard_id: Optional[int] = None):
        super().__init__(message)
        self.shard_id = shard_id


class CloseError(ShardSinkError):
    """One or more shards failed to flush or release during close."""

    def __init__(self, errors: Sequence[Exception]):
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} shard(s) failed during close: {summary}")


class WriterClosedError(ShardSinkError):
    """Operation attempted on a closed writer."""

    pass


def map_db_error(e: Exception) -> ExecutionError:
    import psycopg
    import psycopg.errors as E

    if isinstance(e, ExecutionError):
        return e
    if isinstance(e, E.QueryCanceled):
        return TimeoutExceeded(str(e))
    if isinstance(e, (E.SerializationFailure, E.DeadlockDetected, psycopg.OperationalError)):
        return RetryableError(str(e))
    if isinstance(e, (E.UniqueViolation, E.CheckViolation, E.ForeignKeyViolation)):
        return ConstraintViolation(str(e))
    return ExecutionError(str(e))
