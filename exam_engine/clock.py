"""
Time source and countdown scheduling.

SystemClock backs countdowns with daemon threading.Timer objects. ManualClock
only moves when told to, which makes timeout behaviour testable without sleeping.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    def __init__(self, cancel_fn: Callable[[], None]):
        self._cancel_fn = cancel_fn
        self.cancelled = False

    def cancel(self):
        if not self.cancelled:
            self.cancelled = True
            self._cancel_fn()


class Clock:
    """Interface: current time plus one-shot scheduling."""

    def now(self) -> datetime:
        raise NotImplementedError

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time with threading.Timer countdowns."""

    def now(self) -> datetime:
        """
        Current UTC time, timezone-aware.

        Deadlines are persisted as absolute wall-clock times and re-armed by
        recover() in a new process, so this cannot be a monotonic clock.
        """
        return datetime.now(timezone.utc)

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay_seconds, 0.0), callback)
        timer.daemon = True
        timer.start()
        return TimerHandle(timer.cancel)


class _Pending:
    def __init__(self, due: datetime, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.handle: Optional[TimerHandle] = None


class ManualClock(Clock):
    """Deterministic clock for tests. Callbacks run inside advance()."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, 9, 0, 0)
        self._pending: List[_Pending] = []
        self._seq = 0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        with self._lock:
            self._seq += 1
            entry = _Pending(self._now + timedelta(seconds=max(delay_seconds, 0.0)), self._seq, callback)
            self._pending.append(entry)

        def cancel():
            with self._lock:
                if entry in self._pending:
                    self._pending.remove(entry)

        entry.handle = TimerHandle(cancel)
        return entry.handle

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def advance(self, seconds: float):
        """Move time forward and fire every callback that has come due, in order."""
        with self._lock:
            target = self._now + timedelta(seconds=seconds)

        while True:
            with self._lock:
                due = [p for p in self._pending if p.due <= target]
                if not due:
                    self._now = target
                    return
                entry = min(due, key=lambda p: (p.due, p.seq))
                self._pending.remove(entry)
                self._now = max(self._now, entry.due)
            entry.callback()
