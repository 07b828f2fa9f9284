from __future__ import annotations

import logging
import threading
import time

from health_tap.builder import SnapshotBuilder
from health_tap.config import DEFAULT_INTERVAL_S
from health_tap.store import ModelStore


class RefreshScheduler:
    """Runs a refresh cycle every ``interval_s`` seconds on a background thread.

    Ticks follow a fixed grid measured from the start, not from the end of
    the last cycle. A tick that falls due while a cycle is still running is
    skipped rather than queued, so slow tools cannot pile up cycles.
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        store: ModelStore,
        interval_s: float = DEFAULT_INTERVAL_S,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive: {interval_s}")
        self.builder = builder
        self.store = store
        self.interval_s = interval_s
        self.logger = logging.getLogger(self.__class__.__name__)
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._cycle_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.cycles_run = 0
        self.cycles_skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        self.builder.reset()
        self._thread = threading.Thread(target=self._run, name="health-refresh", daemon=True)
        self._thread.start()
        self.logger.info("Refresh scheduler started; interval %ss.", self.interval_s)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop, killing any tool invocation still in flight."""
        self._stop.set()
        self._wake.set()
        self.builder.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self.logger.warning("Refresh thread did not exit within %ss.", timeout)
            else:
                self._thread = None
        self.logger.info("Refresh scheduler stopped.")

    def trigger(self) -> None:
        """Request an immediate refresh; ignored while a cycle is running."""
        if self._cycle_lock.locked():
            self.logger.debug("Refresh already in progress; ignoring trigger.")
            return
        self._wake.set()

    def run_once(self) -> bool:
        """Run a single cycle and publish it. Returns True if published."""
        if not self._cycle_lock.acquire(blocking=False):
            self.cycles_skipped += 1
            self.logger.debug("Refresh cycle still running; skipping.")
            return False
        try:
            snapshot = self.builder.build(self.store.current())
            if snapshot is None or self._stop.is_set():
                return False
            self.cycles_run += 1
            return self.store.publish(snapshot)
        except Exception:
            self.logger.exception("Refresh cycle failed; keeping previous snapshot.")
            return False
        finally:
            self._cycle_lock.release()

    def _run(self) -> None:
        next_tick = time.monotonic()
        while not self._stop.is_set():
            self.run_once()
            now = time.monotonic()
            next_tick += self.interval_s
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval_s) + 1
                self.cycles_skipped += missed
                self.logger.debug("Cycle overran; skipping %d tick(s).", missed)
                next_tick += missed * self.interval_s
            self._wake.wait(next_tick - now)
            if self._wake.is_set():
                self._wake.clear()
                # A manual trigger restarts the period from now.
                next_tick = time.monotonic()
