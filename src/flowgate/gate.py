# gate.py
from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional


class ConcurrencyGate:
    """
    Counting gate with FIFO waiters.

    release() hands the permit straight to the oldest waiter when one is
    queued, so a late arrival can never overtake a thread that is already
    waiting.
    """

    def __init__(self, permits: int, name: str = "gate"):
        if permits < 1:
            raise ValueError(f"Gate {name!r} needs at least one permit, got {permits}")
        self.name = name
        self.capacity = permits
        self._permits = permits
        self._in_use = 0
        self._waiters: Deque[threading.Event] = deque()
        self._lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Block until a permit is available. Returns False only if `timeout` expires."""
        with self._lock:
            if self._permits > 0 and not self._waiters:
                self._permits -= 1
                self._in_use += 1
                return True
            waiter = threading.Event()
            self._waiters.append(waiter)

        if waiter.wait(timeout):
            return True

        with self._lock:
            # handed off between the timeout and taking the lock
            if waiter.is_set():
                return True
            self._waiters.remove(waiter)
            return False

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError(f"Gate {self.name!r} released more times than acquired")
            if self._waiters:
                # permit passes directly; in_use is unchanged
                self._waiters.popleft().set()
                return
            self._in_use -= 1
            self._permits += 1

    def __enter__(self) -> "ConcurrencyGate":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def available_permits(self) -> int:
        return self._permits

    @property
    def waiting_count(self) -> int:
        return len(self._waiters)

    @property
    def in_use(self) -> int:
        return self._in_use

    def __repr__(self) -> str:
        return (
            f"ConcurrencyGate(name={self.name!r}, in_use={self._in_use}/{self.capacity}, "
            f"waiting={len(self._waiters)})"
        )
