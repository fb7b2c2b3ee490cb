"""
Sharded Batch Sink

Writes a stream of records, in per-shard batches, to a horizontally sharded
analytical store. Batches flush on size, on a background interval, and on
close.

Usage:
    from shard_sink import SinkWriter, ShardRouter, ShardMetadata, Shard, Record, RowSchema

    shard = Shard(shard_id=1, host="ch-1", table="events")
    router = ShardRouter(ShardMetadata(table="events", default_shard=shard))
    schema = RowSchema.of(["id", "name"])
    with SinkWriter(router, schema, bulk_size=1000, batch_interval_ms=1000) as w:
        w.write(Record((1, "a")))
"""

from .config import SinkSettings, get_settings, load_settings
from .errors import (
    CloseError,
    ConfigurationError,
    ExecutionError,
    FlushError,
    InitializationError,
    ShardSinkError,
    WriteError,
    WriterClosedError,
)
from .executor import (
    BatchExecutor,
    ExecutorOptions,
    InsertBatchExecutor,
    KeyedBatchExecutor,
    build_executor,
    probe_lightweight_delete,
)
from .models import Record, RowKind, RowSchema, Shard, ShardMetadata
from .router import ShardRouter
from .state import CurrentBatchCell, ShardArena, ShardBatchState
from .writer import SinkWriter, WriterState

__version__ = "1.0.0"
__all__ = [
    "SinkWriter",
    "WriterState",
    "ShardRouter",
    "Shard",
    "ShardMetadata",
    "Record",
    "RowKind",
    "RowSchema",
    "BatchExecutor",
    "ExecutorOptions",
    "InsertBatchExecutor",
    "KeyedBatchExecutor",
    "build_executor",
    "probe_lightweight_delete",
    "ShardBatchState",
    "ShardArena",
    "CurrentBatchCell",
    "SinkSettings",
    "get_settings",
    "load_settings",
    "ShardSinkError",
    "ConfigurationError",
    "InitializationError",
    "WriteError",
    "ExecutionError",
    "FlushError",
    "CloseError",
    "WriterClosedError",
]
