"""
Shard routing: maps a routing key to one destination shard.

The weight table is built once from the shard metadata; routing is a pure
function of the key for the lifetime of the router.
"""

from __future__ import annotations

import hashlib
from bisect import bisect_right
from typing import Any, List, Optional, Tuple

from loguru import logger

from .errors import ConfigurationError
from .models import RowSchema, Shard, ShardMetadata


def stable_hash(value: Any) -> int:
    """63-bit digest of ``str(value)``; identical across processes and runs."""
    digest = hashlib.blake2b(str(value).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


class ShardRouter:
    """
    Deterministic key -> Shard mapping.

    Usage:
        router = ShardRouter(metadata)
        shard = router.route(record.field(key_index))
    """

    def __init__(self, metadata: ShardMetadata):
        self._metadata = metadata
        self._default = metadata.default_shard

        shards = sorted(metadata.shards, key=lambda s: s.shard_id) if metadata.split_mode else []
        if metadata.split_mode and not shards:
            raise ConfigurationError("split_mode requires at least one shard")

        seen: set[int] = set()
        for s in shards:
            if s.shard_id in seen:
                raise ConfigurationError(f"Duplicate shard id {s.shard_id}")
            seen.add(s.shard_id)

        self._shards: List[Shard] = shards or [self._default]

        # cumulative upper bounds: shard i owns [bounds[i-1], bounds[i])
        self._bounds: List[int] = []
        total = 0
        for s in self._shards:
            total += s.weight
            self._bounds.append(total)
        self._total_weight = total

        logger.debug(
            f"ShardRouter built: shards={[s.shard_id for s in self._shards]} "
            f"total_weight={total} shard_key={self.shard_key!r} split_mode={metadata.split_mode}"
        )

    # ---------- metadata ----------

    @property
    def shard_key(self) -> Optional[str]:
        return self._metadata.shard_key

    @property
    def sorting_key(self) -> Optional[str]:
        return self._metadata.sorting_key

    @property
    def order_by_keys(self) -> Optional[List[str]]:
        if not self.sorting_key:
            return None
        keys = [k.strip() for k in self.sorting_key.split(",") if k.strip()]
        return keys or None

    @property
    def shard_table(self) -> str:
        return self._metadata.table

    @property
    def shard_table_engine(self) -> str:
        return self._metadata.table_engine

    @property
    def total_weight(self) -> int:
        return self._total_weight

    @property
    def keyed(self) -> bool:
        """True when records are spread across shards by key."""
        return bool(self._metadata.split_mode and self.shard_key)

    def check_schema(self, schema: RowSchema) -> Optional[int]:
        """Resolve the shard key to a field index; None when routing is unkeyed."""
        if not self.shard_key:
            return None
        return schema.index_of(self.shard_key)

    # ---------- routing ----------

    def shards(self) -> List[Tuple[int, Shard]]:
        return [(s.weight, s) for s in self._shards]

    def route(self, key: Any = None) -> Shard:
        if not self.keyed or key is None:
            return self._shards[0]
        offset = stable_hash(key) % self._total_weight
        return self._shards[bisect_right(self._bounds, offset)]
