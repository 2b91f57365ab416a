import threading
import time
from typing import Callable, Dict, Optional

from remote_runner.config import GUARD_EVICTION_HORIZON, config
from remote_runner.errors import DuplicateRequest
from remote_runner.models import ExecutionLock
from remote_runner.utils import log_error


class ExecutionGuard:
    """In-memory duplicate-submission lock keyed by logical run.

    A key is rejected while its entry is younger than ``ttl``. Accepted keys
    are (re)stamped and evicted after ``eviction_horizon`` seconds so the map
    cannot grow without bound. Every read and write happens under one lock.
    """

    def __init__(
        self,
        ttl: Optional[float] = None,
        eviction_horizon: float = GUARD_EVICTION_HORIZON,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = config.dedup_ttl() if ttl is None else ttl
        self.eviction_horizon = eviction_horizon
        self.clock = clock

        self.entries: Dict[str, ExecutionLock] = {}
        self.timers: Dict[str, threading.Timer] = {}
        self.lock = threading.Lock()
        self.closed = False

    def try_acquire(self, key: str) -> ExecutionLock:
        with self.lock:
            now = self.clock()
            existing = self.entries.get(key)
            if existing is not None:
                age = existing.age(now)
                if age < self.ttl:
                    # Rejection must not refresh the existing stamp or its timer.
                    log_error(f"duplicate execution rejected for {key} ({age:.2f}s old)")
                    raise DuplicateRequest(key, age)

            entry = ExecutionLock(key=key, acquired_at=now)
            self.entries[key] = entry
            self._schedule_eviction(entry)
            return entry

    def _schedule_eviction(self, entry: ExecutionLock) -> None:
        previous = self.timers.pop(entry.key, None)
        if previous is not None:
            previous.cancel()
        if self.closed:
            return
        timer = threading.Timer(self.eviction_horizon, self._evict, args=(entry,))
        timer.daemon = True
        self.timers[entry.key] = timer
        timer.start()

    def _evict(self, entry: ExecutionLock) -> None:
        with self.lock:
            if self.entries.get(entry.key) is entry:
                del self.entries[entry.key]
                self.timers.pop(entry.key, None)

    def is_locked(self, key: str) -> bool:
        with self.lock:
            entry = self.entries.get(key)
            return entry is not None and entry.age(self.clock()) < self.ttl

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)

    def close(self) -> None:
        with self.lock:
            self.closed = True
            timers = list(self.timers.values())
            self.timers.clear()
            self.entries.clear()
        for timer in timers:
            timer.cancel()
