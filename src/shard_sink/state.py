"""
Per-shard mutable batch state and the lock-guarded "current batch" cell.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from .executor import BatchExecutor
from .models import Shard

R = TypeVar("R")


@dataclass
class ShardBatchState:
    """Connection, executor and pending count for one shard.

    ``pending`` counts records added since the executor's last successful
    flush; only the flush path resets it.
    """

    shard: Shard
    connection: Any
    executor: BatchExecutor
    pending: int = 0
    closed: bool = False

    @property
    def shard_id(self) -> int:
        return self.shard.shard_id


class ShardArena:
    """Owns every ShardBatchState, addressed by shard id."""

    def __init__(self) -> None:
        self._states: Dict[int, ShardBatchState] = {}

    def add(self, state: ShardBatchState) -> None:
        if state.shard_id in self._states:
            raise KeyError(f"Shard {state.shard_id} already registered")
        self._states[state.shard_id] = state

    def get(self, shard_id: int) -> ShardBatchState:
        return self._states[shard_id]

    def __contains__(self, shard_id: object) -> bool:
        return shard_id in self._states

    def __iter__(self) -> Iterator[ShardBatchState]:
        return iter(list(self._states.values()))

    def __len__(self) -> int:
        return len(self._states)

    def pending(self) -> Dict[int, int]:
        return {sid: s.pending for sid, s in self._states.items()}


class CurrentBatchCell:
    """
    The shard state most recently written to, shared with the flush timer.

    Every flush runs inside ``with_locked_current_batch`` (or ``locked``), so
    a timer flush and a threshold flush never overlap.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state: Optional[ShardBatchState] = None

    def set(self, state: ShardBatchState) -> None:
        with self._lock:
            self._state = state

    def peek(self) -> Optional[ShardBatchState]:
        return self._state

    def with_locked_current_batch(self, fn: Callable[[Optional[ShardBatchState]], R]) -> R:
        with self._lock:
            return fn(self._state)

    def locked(self, fn: Callable[[], R]) -> R:
        with self._lock:
            return fn()
