from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pydantic_settings import BaseSettings

from .errors import ConfigurationError
from .models import RowSchema, Shard, ShardMetadata


def split_keys(value: Optional[str]) -> Tuple[str, ...]:
    """'a, b,,c' -> ('a', 'b', 'c')"""
    if not value:
        return ()
    return tuple(k.strip() for k in value.split(",") if k.strip())


class SinkSettings(BaseSettings):
    # destination
    host: str = "localhost"
    port: int = 9005
    database: str = "default"
    table: str
    table_engine: str = "MergeTree"
    columns: str  # comma-separated row schema, in record order
    connection_properties: Dict[str, Any] = {}

    # topology / routing
    split_mode: bool = False
    shards: List[Dict[str, Any]] = []  # JSON list of shard objects
    shard_key: Optional[str] = None
    sorting_key: Optional[str] = None

    # write semantics
    primary_key: Optional[str] = None  # comma-separated
    support_upsert: bool = False
    allow_experimental_lightweight_delete: bool = False

    # batching
    bulk_size: int = 20_000
    batch_interval_ms: int = 1_000

    @property
    def primary_keys(self) -> Tuple[str, ...]:
        return split_keys(self.primary_key)

    def to_schema(self) -> RowSchema:
        return RowSchema.of(split_keys(self.columns))

    def to_metadata(self) -> ShardMetadata:
        base = {"table": self.table, "table_engine": self.table_engine, "database": self.database}
        try:
            shards = [Shard(**{**base, **spec}) for spec in self.shards]
            default = (
                shards[0]
                if shards
                else Shard(shard_id=1, host=self.host, port=self.port, **base)
            )
            return ShardMetadata(
                table=self.table,
                table_engine=self.table_engine,
                database=self.database,
                shard_key=self.shard_key,
                sorting_key=self.sorting_key,
                split_mode=self.split_mode,
                default_shard=default,
                shards=shards,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid shard configuration: {e}") from e

    class Config:
        env_prefix = "SHARD_SINK_"
        env_file = ".env"
        case_sensitive = False


def load_settings(**overrides: Any) -> SinkSettings:
    """Build settings from env/.env plus explicit overrides."""
    try:
        settings = SinkSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sink settings: {e}") from e
    if settings.bulk_size <= 0:
        raise ConfigurationError("bulk_size must be > 0")
    if settings.batch_interval_ms <= 0:
        raise ConfigurationError("batch_interval_ms must be > 0")
    return settings


@lru_cache()
def get_settings() -> SinkSettings:
    return load_settings()
