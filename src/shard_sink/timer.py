from __future__ import annotations

import threading
from typing import Callable, Optional

from loguru import logger


class FlushTimer:
    """
    Cancellable fixed-delay repeating task on a daemon thread.

    The first run happens one interval after ``start()``; each following run
    waits a full interval after the previous one finished. An exception from
    the task is handed to ``on_error`` and stops the schedule.
    """

    def __init__(
        self,
        interval_ms: int,
        task: Callable[[], None],
        *,
        on_error: Optional[Callable[[Exception], None]] = None,
        name: str = "shard-sink-interval",
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._interval = interval_ms / 1000.0
        self._task = task
        self._on_error = on_error
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()
        logger.debug(f"{self._name} started (every {self._interval:.3f}s)")

    def stop(self) -> None:
        """Cancel future runs and wait for an in-flight run to finish."""
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join()
            logger.debug(f"{self._name} stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._task()
            except Exception as exc:
                if self._on_error is not None:
                    self._on_error(exc)
                else:
                    logger.error(f"{self._name} task failed: {type(exc).__name__}: {exc}")
                return
