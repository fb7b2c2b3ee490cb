"""
Pytest configuration and fixtures for shard-sink.

Provides in-memory fakes for shard connections and batch executors so the
writer can be exercised without a running cluster.
"""

import time

import pytest

from shard_sink.errors import ExecutionError, WriteError
from shard_sink.models import Record, RowSchema, Shard, ShardMetadata


class FakeConnection:
    """Connection stand-in that records close() calls."""

    def __init__(self, dsn: str, fail_close: bool = False):
        self.dsn = dsn
        self.closed = False
        self.fail_close = fail_close

    def close(self):
        if self.fail_close:
            raise OSError(f"socket already gone ({self.dsn})")
        self.closed = True


class FakeExecutor:
    """BatchExecutor that keeps every executed batch in memory."""

    def __init__(self, options):
        self.options = options
        self.conn = None
        self.batch = []
        self.executed = []
        self.fail = False
        self.closed = False

    def prepare(self, connection):
        self.conn = connection

    def add_to_batch(self, record):
        if not isinstance(record, Record) or len(record.values) != len(self.options.schema):
            raise WriteError("record does not match schema")
        self.batch.append(record)

    def execute_batch(self):
        if self.fail:
            raise ExecutionError("destination rejected batch")
        self.executed.append(list(self.batch))
        self.batch.clear()

    def close(self):
        self.closed = True


class Harness:
    """Hands out fake connections/executors and indexes them by shard dsn."""

    def __init__(self):
        self.connections = {}
        self.executors = []
        self.probe_calls = []
        self.fail_connect = set()
        self.fail_close = set()

    def connect(self, dsn, **props):
        if dsn in self.fail_connect:
            raise ConnectionRefusedError(f"cannot reach {dsn}")
        conn = FakeConnection(dsn, fail_close=dsn in self.fail_close)
        self.connections[dsn] = conn
        return conn

    def probe(self, conn):
        self.probe_calls.append(conn.dsn)
        return False

    def executor_factory(self, options):
        ex = FakeExecutor(options)
        self.executors.append(ex)
        return ex

    def executor(self, shard_id: int) -> FakeExecutor:
        for ex in self.executors:
            if ex.conn is not None and ex.conn.dsn == f"shard-{shard_id}":
                return ex
        raise KeyError(shard_id)

    def writer_kwargs(self):
        return {
            "connect": self.connect,
            "probe": self.probe,
            "executor_factory": self.executor_factory,
        }


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def schema():
    return RowSchema.of(["id", "name", "amount"])


def make_shard(shard_id: int, weight: int = 1) -> Shard:
    return Shard(shard_id=shard_id, weight=weight, dsn=f"shard-{shard_id}", table="events")


def make_metadata(n_shards: int = 1, shard_key=None, **kwargs) -> ShardMetadata:
    shards = [make_shard(i) for i in range(1, n_shards + 1)]
    return ShardMetadata(
        table="events",
        default_shard=shards[0],
        shards=shards,
        split_mode=n_shards > 1,
        shard_key=shard_key,
        **kwargs,
    )


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def metadata_factory():
    return make_metadata


@pytest.fixture
def waiter():
    return wait_until
