"""
Example usage of the shard sink.

Writes a few change records to a two-shard cluster, routed by ``user_id``.
Needs two reachable shards speaking the PostgreSQL wire protocol.
"""

from loguru import logger

from shard_sink import Record, RowKind, RowSchema, Shard, ShardMetadata, ShardRouter, SinkWriter


def main():
    shards = [
        Shard(shard_id=1, host="ch-1", database="analytics", table="events_local"),
        Shard(shard_id=2, host="ch-2", database="analytics", table="events_local", weight=2),
    ]
    metadata = ShardMetadata(
        table="events_local",
        table_engine="ReplacingMergeTree",
        database="analytics",
        shard_key="user_id",
        sorting_key="user_id, ts",
        split_mode=True,
        default_shard=shards[0],
        shards=shards,
    )
    schema = RowSchema.of(["event_id", "user_id", "ts", "action"])

    with SinkWriter(
        ShardRouter(metadata),
        schema,
        bulk_size=500,
        batch_interval_ms=2000,
        primary_keys=["event_id"],
        support_upsert=True,
    ) as writer:
        for i in range(2_000):
            writer.write(Record((i, i % 37, "2025-01-01 00:00:00", "click")))
        writer.write(Record((7, 7, "2025-01-01 00:00:00", "click"), RowKind.DELETE))
        logger.info(f"Pending before close: {writer.pending()}")

    logger.success("All shards flushed and closed")


if __name__ == "__main__":
    main()
