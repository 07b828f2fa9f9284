from __future__ import annotations

import logging
import threading
from typing import Callable

from health_tap.models import HealthSnapshot

SnapshotListener = Callable[[HealthSnapshot], None]


class ModelStore:
    """Holds the latest published snapshot for the rest of the process.

    Snapshots are immutable, so publishing is a single reference swap.
    Readers never take the lock; the lock only serializes writers so that
    publication stays monotonic.
    """

    def __init__(self) -> None:
        self._snapshot = HealthSnapshot.initial()
        self._lock = threading.Lock()
        self._listeners: list[SnapshotListener] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def current(self) -> HealthSnapshot:
        return self._snapshot

    def publish(self, snapshot: HealthSnapshot) -> bool:
        with self._lock:
            if snapshot.sequence <= self._snapshot.sequence:
                self.logger.warning(
                    "Rejecting snapshot %s; %s already published.",
                    snapshot.sequence,
                    self._snapshot.sequence,
                )
                return False
            self._snapshot = snapshot
            listeners = list(self._listeners)
        self.logger.debug(
            "Published snapshot %s with %d devices and %d sensors.",
            snapshot.sequence,
            len(snapshot.devices),
            len(snapshot.sensors),
        )
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Snapshot listener %r failed.", listener)
        return True

    def subscribe(self, listener: SnapshotListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
