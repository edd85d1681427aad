#!/usr/bin/env python3
"""
Clock and timer scheduling for the text captcha widget

SystemClock drives real widgets with threading timers. ManualClock keeps
simulated time and fires due timers only when advanced, so lockouts and
challenge rotation can be exercised without real delays.
"""

import heapq
import itertools
import threading
import time
from typing import Callable, List, Optional, Tuple


class TimerHandle:
    """Cancellable handle returned by call_later / call_every"""

    def __init__(self, callback: Callable[[], None], interval_ms: Optional[float] = None):
        self.callback = callback
        self.interval_ms = interval_ms
        self.cancelled = False
        self._thread_timer = None

    @property
    def repeating(self) -> bool:
        return self.interval_ms is not None

    @property
    def active(self) -> bool:
        return not self.cancelled

    def cancel(self):
        self.cancelled = True
        if self._thread_timer is not None:
            self._thread_timer.cancel()


class _RepeatingThread(threading.Thread):
    def __init__(self, handle: TimerHandle):
        super().__init__(daemon=True)
        self.handle = handle
        self.stopped = threading.Event()

    def run(self):
        interval = self.handle.interval_ms / 1000.0
        while not self.stopped.wait(interval):
            if self.handle.cancelled:
                break
            self.handle.callback()

    def cancel(self):
        self.stopped.set()


class SystemClock:
    """Wall clock in milliseconds, timers on daemon threads"""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(callback)

        def fire():
            if not handle.cancelled:
                handle.cancelled = True
                callback()

        timer = threading.Timer(max(0.0, delay_ms) / 1000.0, fire)
        timer.daemon = True
        handle._thread_timer = timer
        timer.start()
        return handle

    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        handle = TimerHandle(callback, interval_ms)
        thread = _RepeatingThread(handle)
        handle._thread_timer = thread
        thread.start()
        return handle


class ManualClock:
    """Simulated clock; timers fire in deadline order during advance()"""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self.lock = threading.RLock()

    def now_ms(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(callback)
        self._push(self._now + max(0.0, delay_ms), handle)
        return handle

    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        handle = TimerHandle(callback, interval_ms)
        self._push(self._now + interval_ms, handle)
        return handle

    def _push(self, due: float, handle: TimerHandle):
        with self.lock:
            heapq.heappush(self._queue, (due, next(self._seq), handle))

    def pending(self) -> int:
        """Number of timers still armed"""
        with self.lock:
            return len([entry for entry in self._queue if entry[2].active])

    def advance(self, delta_ms: float) -> int:
        """Move time forward, firing every timer due on the way. Returns fire count."""
        if delta_ms < 0:
            raise ValueError("cannot move a clock backwards")

        target = self._now + delta_ms
        fired = 0
        while True:
            with self.lock:
                # Drop cancelled entries before looking at the head
                while self._queue and self._queue[0][2].cancelled:
                    heapq.heappop(self._queue)
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, handle = heapq.heappop(self._queue)
                self._now = max(self._now, due)
                if handle.repeating:
                    heapq.heappush(self._queue, (due + handle.interval_ms, next(self._seq), handle))
                else:
                    handle.cancelled = True

            handle.callback()
            fired += 1

        self._now = target
        return fired
