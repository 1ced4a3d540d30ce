"""Epoch ticker for cooperative guest interruption.

wasmtime checks the engine epoch at function entries and loop back-edges of
guest code and traps once it passes the store's deadline. The
InterruptionClock is the only thing that advances that epoch: a daemon
thread ticks every ``tick_interval`` while at least one run holds a
reference to it.
"""

from __future__ import annotations

import math
import threading
import time
from typing import Any

from wasm_python_sandbox.core.logging import SandboxLogger


def deadline_ticks(timeout: float, tick_interval: float) -> int:
    """Number of epoch ticks that cover ``timeout`` seconds (at least 1)."""
    if timeout <= 0 or tick_interval <= 0:
        raise ValueError("timeout and tick_interval must be positive")
    return max(1, math.ceil(timeout / tick_interval))


class InterruptionClock:
    """Background ticker advancing one engine's epoch counter.

    The clock is reference-counted by in-flight executions: the first
    acquire() starts the ticker thread, the last release() stops it, so no
    thread outlives the runs that need it.

    Attributes:
        tick_interval: Seconds between ticks
        epoch: Number of ticks issued so far (monotonic, never reset)
    """

    def __init__(self, engine: Any, tick_interval: float, logger: SandboxLogger | None = None) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self._engine = engine
        self.tick_interval = tick_interval
        self.logger = logger or SandboxLogger()
        self._epoch = 0
        self._refs = 0
        self._lock = threading.Lock()
        self._stop: threading.Event | None = None
        self._thread: threading.Thread | None = None

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def running(self) -> bool:
        return self._thread is not None

    @property
    def active_references(self) -> int:
        return self._refs

    def deadline(self, timeout: float) -> int:
        """Absolute epoch at which a run started now must be interrupted."""
        return self._epoch + deadline_ticks(timeout, self.tick_interval)

    def acquire(self) -> None:
        """Register an in-flight run, starting the ticker if needed."""
        with self._lock:
            self._refs += 1
            if self._thread is None:
                self._start_locked()

    def release(self) -> None:
        """Unregister a run; the last release stops the ticker."""
        thread: threading.Thread | None = None
        with self._lock:
            if self._refs == 0:
                return
            self._refs -= 1
            if self._refs == 0:
                thread = self._stop_locked()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            self.logger.log_clock_stopped(self._epoch)

    def tick(self) -> int:
        """Advance the epoch by one. Only the ticker thread calls this."""
        self._engine.increment_epoch()
        self._epoch += 1
        return self._epoch

    def _start_locked(self) -> None:
        stop = threading.Event()
        thread = threading.Thread(
            target=self._run, args=(stop,), name="epoch-ticker", daemon=True
        )
        self._stop = stop
        self._thread = thread
        thread.start()
        self.logger.log_clock_started(self.tick_interval)

    def _stop_locked(self) -> threading.Thread | None:
        thread, stop = self._thread, self._stop
        self._thread = None
        self._stop = None
        if stop is not None:
            stop.set()
        return thread

    def _run(self, stop: threading.Event) -> None:
        # Ticks are scheduled from a fixed start so wait latency does not accumulate
        next_at = time.monotonic()
        while True:
            next_at += self.tick_interval
            if stop.wait(max(0.0, next_at - time.monotonic())):
                return
            self.tick()
