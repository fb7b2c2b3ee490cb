"""
Data models for the sharded batch sink.

Shard topology is described with pydantic models (validated once at startup);
records on the hot path are plain frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .errors import ConfigurationError


class Shard(BaseModel):
    """One partition of the destination cluster, addressed by its own connection."""

    model_config = ConfigDict(frozen=True)

    shard_id: int
    weight: int = 1
    host: str = "localhost"
    port: int = 9005  # PostgreSQL wire interface
    database: str = "default"
    dsn: Optional[str] = None
    table: str
    table_engine: str = "MergeTree"

    @field_validator("weight")
    @classmethod
    def _positive_weight(cls, v):
        if v <= 0:
            raise ValueError("Shard weight must be positive")
        return v

    @model_validator(mode="after")
    def _derive_dsn(self):
        if not self.dsn:
            # frozen model: bypass __setattr__ once during validation
            object.__setattr__(
                self, "dsn", f"host={self.host} port={self.port} dbname={self.database}"
            )
        return self


class ShardMetadata(BaseModel):
    """Cluster layout plus the sharding policy applied on top of it."""

    model_config = ConfigDict(frozen=True)

    table: str
    table_engine: str = "MergeTree"
    database: str = "default"
    shard_key: Optional[str] = None
    sorting_key: Optional[str] = None
    split_mode: bool = False
    default_shard: Shard
    shards: List[Shard] = []

    @field_validator("shard_key", "sorting_key")
    @classmethod
    def _blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v


class RowKind(str, Enum):
    """Change kind carried by every record."""

    INSERT = "+I"
    UPDATE_BEFORE = "-U"
    UPDATE_AFTER = "+U"
    DELETE = "-D"

    @classmethod
    def parse(cls, value: Any) -> "RowKind":
        if isinstance(value, RowKind):
            return value
        for kind in cls:
            if value in (kind.value, kind.name, kind.name.lower()):
                return kind
        raise ValueError(f"Unknown row kind: {value!r}")


@dataclass(frozen=True)
class Record:
    """One row of the stream. Read-only to the sink."""

    values: Tuple[Any, ...]
    kind: RowKind = RowKind.INSERT

    def field(self, index: int) -> Any:
        return self.values[index]


@dataclass(frozen=True)
class RowSchema:
    """Ordered field names of the records written to the destination."""

    fields: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, names: Sequence[str]) -> "RowSchema":
        return cls(tuple(names))

    def __len__(self) -> int:
        return len(self.fields)

    def index_of(self, name: str) -> int:
        try:
            return self.fields.index(name)
        except ValueError:
            raise ConfigurationError(
                f"Field {name!r} not found in row schema {list(self.fields)}"
            ) from None

    def as_dict(self, record: Record) -> dict:
        return dict(zip(self.fields, record.values))
