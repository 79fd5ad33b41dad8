from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterator


class KeyedLock:
    """One re-entrant lock per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._locks: dict[str, RLock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock:
            lk = self._locks.setdefault(key, RLock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lk:
                yield
        finally:
            with self._lock:
                self._users[key] -= 1
                if self._users[key] <= 0:
                    self._users.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


def backoff_delay(attempts: int, base_s: float, cap_s: float) -> float:
    """Capped exponential backoff: base, 2*base, 4*base, ... up to cap."""
    if attempts <= 0:
        return 0.0
    return min(cap_s, base_s * (2 ** (attempts - 1)))


class RuntimeState:
    """In-memory controller state: per-workload exclusion and probe failure windows."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.workload_locks = KeyedLock()
        self.missed_probes: dict[str, deque[float]] = {}  # instance_id -> timestamps of missed probes

    def mark_probe(self, instance_id: str, alive: bool, now: float, window_s: float) -> int:
        """Record one liveness observation.

        Returns the number of missed probes still inside the window
        (0 when the instance answered).
        """
        with self.lock:
            if alive:
                self.missed_probes.pop(instance_id, None)
                return 0
            misses = self.missed_probes.setdefault(instance_id, deque())
            misses.append(now)
            while misses and misses[0] <= now - window_s:
                misses.popleft()
            return len(misses)

    def forget(self, instance_id: str) -> None:
        with self.lock:
            self.missed_probes.pop(instance_id, None)
