"""Clocks and deadline timers used to drive the key decoder.

Two timer implementations share the same ``schedule``/``cancel``/``now``
surface:

* :class:`VirtualTimer` keeps its own notion of time and only fires callbacks
  when :meth:`VirtualTimer.advance_to` is called.  Tests and offline replays
  use it to step through keying sessions without sleeping.
* :class:`ThreadedTimer` runs callbacks from a single daemon worker thread
  once the wall clock passes their deadline.

Both fire callbacks in deadline order; callbacks sharing a deadline fire in
the order they were scheduled.  Scheduling an id that is already pending
replaces the earlier entry.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

LOGGER = logging.getLogger(__name__)

TimerCallback = Callable[[], None]


class Clock(Protocol):
    def now(self) -> int:
        """Return the current time in integer milliseconds."""


class Timer(Protocol):
    def now(self) -> int: ...

    def schedule(self, timer_id: str, deadline_ms: int, callback: TimerCallback) -> None: ...

    def cancel(self, timer_id: str) -> None: ...


class MonotonicClock:
    """Millisecond clock backed by :func:`time.monotonic`."""

    def now(self) -> int:
        return int(time.monotonic() * 1000)


@dataclass(order=True)
class _Entry:
    deadline: int
    sequence: int
    timer_id: str = field(compare=False)
    callback: TimerCallback = field(compare=False)


class _DeadlineQueue:
    """Heap of timer entries with replace-by-id and lazy cancellation."""

    def __init__(self) -> None:
        self._heap: List[_Entry] = []
        self._live: Dict[str, _Entry] = {}
        self._sequence = itertools.count()

    def push(self, timer_id: str, deadline: int, callback: TimerCallback) -> _Entry:
        entry = _Entry(int(deadline), next(self._sequence), timer_id, callback)
        self._live[timer_id] = entry
        heapq.heappush(self._heap, entry)
        return entry

    def remove(self, timer_id: str) -> bool:
        return self._live.pop(timer_id, None) is not None

    def clear(self) -> None:
        self._heap.clear()
        self._live.clear()

    def peek(self) -> Optional[_Entry]:
        while self._heap and self._live.get(self._heap[0].timer_id) is not self._heap[0]:
            heapq.heappop(self._heap)
        return self._heap[0] if self._heap else None

    def pop(self) -> _Entry:
        entry = self.peek()
        if entry is None:
            raise IndexError("pop from an empty deadline queue")
        heapq.heappop(self._heap)
        del self._live[entry.timer_id]
        return entry

    def pending(self) -> List[Tuple[str, int]]:
        return [(entry.timer_id, entry.deadline) for entry in sorted(self._live.values())]

    def __contains__(self, timer_id: str) -> bool:
        return timer_id in self._live

    def __len__(self) -> int:
        return len(self._live)


class VirtualTimer:
    """Deterministic timer whose clock only moves when told to."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now = int(start_ms)
        self._queue = _DeadlineQueue()

    def now(self) -> int:
        return self._now

    def schedule(self, timer_id: str, deadline_ms: int, callback: TimerCallback) -> None:
        self._queue.push(timer_id, deadline_ms, callback)

    def cancel(self, timer_id: str) -> None:
        self._queue.remove(timer_id)

    def is_pending(self, timer_id: str) -> bool:
        return timer_id in self._queue

    def pending(self) -> List[Tuple[str, int]]:
        """Return ``(timer_id, deadline)`` pairs in firing order."""

        return self._queue.pending()

    def next_deadline(self) -> Optional[int]:
        entry = self._queue.peek()
        return entry.deadline if entry is not None else None

    def advance_to(self, t_ms: int) -> int:
        """Move the clock to ``t_ms`` firing every callback due on the way.

        Returns the number of callbacks that ran.  Callbacks observe
        :meth:`now` equal to their own deadline (or the current time for
        deadlines already in the past) and may schedule further entries,
        which fire in the same call when they fall due before ``t_ms``.
        """

        target = int(t_ms)
        if target < self._now:
            raise ValueError(f"Cannot move virtual time backwards ({target} < {self._now})")
        fired = 0
        while True:
            entry = self._queue.peek()
            if entry is None or entry.deadline > target:
                break
            self._queue.pop()
            self._now = max(self._now, entry.deadline)
            entry.callback()
            fired += 1
        self._now = target
        return fired

    def advance(self, delta_ms: int) -> int:
        return self.advance_to(self._now + int(delta_ms))

    def run_until_idle(self) -> int:
        """Fire every pending callback, advancing time to the last deadline."""

        fired = 0
        while True:
            deadline = self.next_deadline()
            if deadline is None:
                return fired
            fired += self.advance_to(max(deadline, self._now))


class ThreadedTimer:
    """Fire callbacks from a background thread at real-time deadlines.

    ``clock`` must track wall time in milliseconds because the worker sleeps
    on real time between deadlines.  The worker thread is started lazily on
    the first :meth:`schedule` call.  Callbacks run without any timer lock
    held, so they may call back into :meth:`schedule` and :meth:`cancel`.
    """

    def __init__(self, clock: Optional[Clock] = None, *, name: str = "TelegraphKeyTimer") -> None:
        self._clock = clock or MonotonicClock()
        self._name = name
        self._condition = threading.Condition()
        self._queue = _DeadlineQueue()
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def now(self) -> int:
        return self._clock.now()

    def schedule(self, timer_id: str, deadline_ms: int, callback: TimerCallback) -> None:
        with self._condition:
            if self._closed:
                raise RuntimeError("Cannot schedule on a closed timer")
            self._queue.push(timer_id, deadline_ms, callback)
            self._ensure_worker()
            self._condition.notify()

    def cancel(self, timer_id: str) -> None:
        with self._condition:
            if self._queue.remove(timer_id):
                self._condition.notify()

    def is_pending(self, timer_id: str) -> bool:
        with self._condition:
            return timer_id in self._queue

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._queue.clear()
            self._condition.notify_all()
        worker = self._thread
        if worker is not None and worker.is_alive() and worker is not threading.current_thread():
            worker.join()
        self._thread = None

    def __enter__(self) -> "ThreadedTimer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_worker(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def _next_due(self) -> Optional[_Entry]:
        with self._condition:
            while not self._closed:
                entry = self._queue.peek()
                if entry is None:
                    self._condition.wait()
                    continue
                remaining = entry.deadline - self._clock.now()
                if remaining > 0:
                    self._condition.wait(remaining / 1000.0)
                    continue
                return self._queue.pop()
        return None

    def _run(self) -> None:
        while True:
            entry = self._next_due()
            if entry is None:
                return
            try:
                entry.callback()
            except Exception:  # pragma: no cover - callback isolation
                LOGGER.exception("Timer callback %s raised", entry.timer_id)


__all__ = [
    "Clock",
    "MonotonicClock",
    "ThreadedTimer",
    "Timer",
    "TimerCallback",
    "VirtualTimer",
]
