"""
Single-slot timers for the accept countdown and the map follow cooldown.

Each concern owns exactly one outstanding timer. Starting it again cancels the
previous one, and a timer that was superseded never fires, even if its thread
was already running when it got cancelled.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], "threading.Timer"]


class SingleSlotTimer:
    def __init__(self, timer_factory: Optional[TimerFactory] = None):
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._timer = None
        self._generation = 0

    @property
    def active(self) -> bool:
        with self._lock:
            return self._timer is not None

    def start(self, delay: float, callback: Callable[[], None]) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1
            generation = self._generation
            timer = self._timer_factory(delay, lambda: self._fire(generation, callback))
            timer.daemon = True
            self._timer = timer
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int, callback: Callable[[], None]) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
            self._timer = None
        callback()


class AcceptCountdown:
    """
    Review window for a new or directed request.

    Expiry runs the same decline path as an explicit decline, at most once per
    started countdown. Accepting or declining first cancels it.
    """

    def __init__(
        self,
        on_expire: Callable[[int], None],
        window_seconds: Optional[float] = None,
        timer_factory: Optional[TimerFactory] = None,
    ):
        config = getattr(settings, "TOWING_CONFIG", {})
        self.window_seconds = window_seconds if window_seconds is not None else config.get("accept_window_seconds", 30)
        self._on_expire = on_expire
        self._timer = SingleSlotTimer(timer_factory)
        self.request_id: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._timer.active

    def start(self, request_id: int) -> None:
        self.request_id = request_id
        self._timer.start(self.window_seconds, lambda: self._expire(request_id))

    def stop(self) -> None:
        self._timer.cancel()

    def _expire(self, request_id: int) -> None:
        logger.info("Accept window expired for request %s, declining", request_id)
        self._on_expire(request_id)
