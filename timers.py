"""Keyed timers on the asyncio loop: one-shot, periodic and daily."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import asyncio
import inspect
import logging
import threading
import time

from ffmpeg_process import spawn_background_task


log = logging.getLogger(__name__)


@dataclass(slots=True)
class _Timer:
    handle: asyncio.TimerHandle
    due: float
    interval: float | None = None


class Scheduler:
    """Arm/cancel timers by key. Re-arming a key replaces the old timer.

    Callbacks may be plain functions or coroutine functions. Exceptions are
    logged, never propagated into the loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._timers: dict[Hashable, _Timer] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def _run(self, key: Hashable, callback: Callable[[], Any]) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                task = spawn_background_task(result)
                task.add_done_callback(lambda t: self._log_task_error(key, t))
        except Exception:
            log.exception("Timer %s failed", key)

    @staticmethod
    def _log_task_error(key: Hashable, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Timer %s failed: %r", key, exc, exc_info=exc)

    def _fire_once(self, key: Hashable, timer_ref: list[_Timer], callback: Callable[[], Any]) -> None:
        with self._lock:
            # Only drop the entry if it is still this timer (not re-armed)
            if self._timers.get(key) is timer_ref[0]:
                del self._timers[key]
        self._run(key, callback)

    def call_at(self, key: Hashable, when: float | datetime, callback: Callable[[], Any]) -> None:
        """Fire callback at wall-clock time `when`; immediately if already past."""
        due = when.timestamp() if isinstance(when, datetime) else float(when)
        loop = asyncio.get_running_loop()
        delay = max(0.0, due - self.now())
        ref: list[_Timer] = []
        handle = loop.call_later(delay, self._fire_once, key, ref, callback)
        timer = _Timer(handle=handle, due=due)
        ref.append(timer)
        self._replace(key, timer)

    def every(self, key: Hashable, interval: float, callback: Callable[[], Any]) -> None:
        """Fire callback every `interval` seconds, first run after one interval."""
        loop = asyncio.get_running_loop()

        def _tick() -> None:
            with self._lock:
                current = self._timers.get(key)
                if current is None or current.interval is None:
                    return
                current.due = self.now() + interval
                current.handle = loop.call_later(interval, _tick)
            self._run(key, callback)

        handle = loop.call_later(interval, _tick)
        self._replace(key, _Timer(handle=handle, due=self.now() + interval, interval=interval))

    def daily_at(self, key: Hashable, hour: int, minute: int, callback: Callable[[], Any]) -> None:
        """Fire callback every day at local hour:minute."""
        self._arm_daily(key, hour, minute, callback, datetime.fromtimestamp(self.now()))

    def _arm_daily(
        self, key: Hashable, hour: int, minute: int, callback: Callable[[], Any], after: datetime
    ) -> None:
        due = next_daily(after, hour, minute)

        def _fire() -> Any:
            # Next run is strictly after this due time, even on an early wakeup
            now = datetime.fromtimestamp(self.now())
            self._arm_daily(key, hour, minute, callback, max(due, now))
            return callback()

        self.call_at(key, due, _fire)

    def _replace(self, key: Hashable, timer: _Timer) -> None:
        with self._lock:
            old = self._timers.pop(key, None)
            self._timers[key] = timer
        if old is not None:
            old.handle.cancel()

    def cancel(self, key: Hashable) -> bool:
        """Disarm a timer. Returns True if one was pending."""
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.handle.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.handle.cancel()

    def is_armed(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._timers

    def due_at(self, key: Hashable) -> float | None:
        with self._lock:
            timer = self._timers.get(key)
            return timer.due if timer else None


def next_daily(now: datetime, hour: int, minute: int) -> datetime:
    """Next occurrence of hour:minute strictly after now."""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate
