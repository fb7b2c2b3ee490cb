"""
Unit tests for FlushTimer and the per-shard state containers.
"""

import threading
import time

import pytest

from shard_sink.models import Shard
from shard_sink.state import CurrentBatchCell, ShardArena, ShardBatchState
from shard_sink.timer import FlushTimer


def _state(shard_id, pending=0):
    shard = Shard(shard_id=shard_id, dsn=f"shard-{shard_id}", table="events")
    return ShardBatchState(shard=shard, connection=object(), executor=object(), pending=pending)


class TestFlushTimer:
    def test_runs_repeatedly_until_stopped(self, waiter):
        ticks = []
        timer = FlushTimer(10, lambda: ticks.append(time.monotonic()))
        timer.start()
        assert waiter(lambda: len(ticks) >= 3)
        timer.stop()
        seen = len(ticks)
        time.sleep(0.05)
        assert len(ticks) == seen
        assert not timer.running

    def test_first_run_waits_one_interval(self):
        ticks = []
        timer = FlushTimer(200, lambda: ticks.append(1))
        timer.start()
        time.sleep(0.05)
        timer.stop()
        assert ticks == []

    def test_stop_waits_for_in_flight_run(self, waiter):
        entered = threading.Event()
        finished = []

        def slow():
            entered.set()
            time.sleep(0.1)
            finished.append(True)

        timer = FlushTimer(5, slow)
        timer.start()
        assert entered.wait(2)
        timer.stop()
        assert finished  # stop() returned only after the run completed

    def test_error_stops_schedule_and_is_reported(self, waiter):
        errors = []
        calls = []

        def boom():
            calls.append(1)
            raise RuntimeError("flush exploded")

        timer = FlushTimer(5, boom, on_error=errors.append)
        timer.start()
        assert waiter(lambda: errors)
        assert waiter(lambda: not timer.running)
        time.sleep(0.05)
        assert len(calls) == 1
        assert isinstance(errors[0], RuntimeError)
        timer.stop()

    def test_start_twice_keeps_one_thread(self):
        timer = FlushTimer(1000, lambda: None)
        timer.start()
        first = timer._thread
        timer.start()
        assert timer._thread is first
        timer.stop()

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            FlushTimer(0, lambda: None)


class TestShardArena:
    def test_lookup_by_shard_id(self):
        arena = ShardArena()
        a, b = _state(1, pending=2), _state(2)
        arena.add(a)
        arena.add(b)
        assert arena.get(1) is a
        assert 2 in arena and 3 not in arena
        assert len(arena) == 2
        assert arena.pending() == {1: 2, 2: 0}
        assert [s.shard_id for s in arena] == [1, 2]

    def test_duplicate_shard_rejected(self):
        arena = ShardArena()
        arena.add(_state(1))
        with pytest.raises(KeyError):
            arena.add(_state(1))


class TestCurrentBatchCell:
    def test_holds_last_set_state(self):
        cell = CurrentBatchCell()
        assert cell.with_locked_current_batch(lambda s: s) is None
        a, b = _state(1), _state(2)
        cell.set(a)
        cell.set(b)
        assert cell.peek() is b
        assert cell.with_locked_current_batch(lambda s: s.shard_id) == 2

    def test_critical_sections_are_exclusive(self):
        cell = CurrentBatchCell()
        cell.set(_state(1))
        inside = []
        overlaps = []

        def section(_state):
            inside.append(1)
            if len(inside) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            inside.pop()

        threads = [
            threading.Thread(target=cell.with_locked_current_batch, args=(section,))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []

    def test_lock_is_reentrant(self):
        cell = CurrentBatchCell()
        s = _state(1)
        assert cell.locked(lambda: cell.with_locked_current_batch(lambda cur: cell.set(s))) is None
        assert cell.peek() is s
