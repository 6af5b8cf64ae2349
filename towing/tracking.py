"""
Live tracking of a provider working a request.

Raw position fixes come in at the device sampling cadence. From them we derive
heading, a rolling speed estimate and the remaining distance/ETA to the current
target, decide which fixes are worth persisting upstream, and drive the
smoothed marker the map views render.
"""
from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from django.conf import settings

from .geo import bearing_degrees, distance_meters
from .models import Request
from .timers import SingleSlotTimer, TimerFactory

Status = Request.Status


def _config() -> Dict:
    return getattr(settings, "TOWING_CONFIG", {})


@dataclass(frozen=True)
class Fix:
    lat: float
    lng: float
    timestamp: float  # seconds


@dataclass(frozen=True)
class Estimate:
    heading: float
    speed_kmh: float
    remaining_m: Optional[float]
    eta_minutes: Optional[int]

    def as_dict(self) -> Dict:
        return {
            "heading": round(self.heading, 1),
            "speed_kmh": round(self.speed_kmh, 1),
            "remaining_m": round(self.remaining_m) if self.remaining_m is not None else None,
            "eta_minutes": self.eta_minutes,
        }


def target_for(request: Request) -> Optional[Tuple[float, float]]:
    """
    Destination while the vehicle is being towed, the pickup point before that.
    """
    if request.status == Status.EN_ROUTE:
        if request.has_destination:
            return request.destination_lat, request.destination_lng
        return None
    if request.status in (Status.DIRECTED, Status.IN_PROGRESS, Status.ON_SITE):
        return request.origin_lat, request.origin_lng
    return None


def eta_minutes(remaining_m: float, speed_kmh: float) -> int:
    minutes = (remaining_m / 1000) / speed_kmh * 60
    return max(1, int(math.ceil(minutes)))


class TrackingEstimator:
    def __init__(
        self,
        heading_noise_floor_m: Optional[float] = None,
        speed_window: Optional[int] = None,
        min_samples: Optional[int] = None,
        min_speed_kmh: Optional[float] = None,
        max_speed_kmh: Optional[float] = None,
        max_sample_gap_s: Optional[float] = None,
        fallback_speed_kmh: Optional[float] = None,
    ):
        config = _config()
        self.heading_noise_floor_m = heading_noise_floor_m if heading_noise_floor_m is not None else config.get("heading_noise_floor_m", 5.0)
        self.min_samples = min_samples if min_samples is not None else config.get("speed_min_samples", 3)
        self.min_speed_kmh = min_speed_kmh if min_speed_kmh is not None else config.get("speed_min_kmh", 1.0)
        self.max_speed_kmh = max_speed_kmh if max_speed_kmh is not None else config.get("speed_max_kmh", 200.0)
        self.max_sample_gap_s = max_sample_gap_s if max_sample_gap_s is not None else config.get("speed_max_gap_seconds", 60.0)
        self.fallback_speed_kmh = fallback_speed_kmh if fallback_speed_kmh is not None else config.get("fallback_speed_kmh", 40.0)
        self.samples: Deque[float] = deque(maxlen=speed_window if speed_window is not None else config.get("speed_window", 10))
        self.heading = 0.0
        self.previous: Optional[Fix] = None

    @property
    def speed_kmh(self) -> float:
        if len(self.samples) >= self.min_samples:
            return sum(self.samples) / len(self.samples)
        return self.fallback_speed_kmh

    def observe(self, fix: Fix) -> None:
        """Update heading and the speed window from a new fix."""
        previous = self.previous
        if previous is not None:
            moved = distance_meters(previous.lat, previous.lng, fix.lat, fix.lng)
            if moved > self.heading_noise_floor_m:
                self.heading = bearing_degrees(previous.lat, previous.lng, fix.lat, fix.lng)
                self._sample_speed(moved, fix.timestamp - previous.timestamp)
        self.previous = fix

    def _sample_speed(self, moved_m: float, elapsed_s: float) -> None:
        if elapsed_s <= 0 or elapsed_s >= self.max_sample_gap_s:
            return
        speed = (moved_m / 1000) / (elapsed_s / 3600)
        # GPS glitches show up as impossible speeds.
        if self.min_speed_kmh < speed < self.max_speed_kmh:
            self.samples.append(speed)

    def update(self, fix: Fix, request: Request) -> Estimate:
        self.observe(fix)
        target = target_for(request)
        if target is None:
            return Estimate(self.heading, self.speed_kmh, None, None)
        remaining = distance_meters(fix.lat, fix.lng, target[0], target[1])
        return Estimate(self.heading, self.speed_kmh, remaining, eta_minutes(remaining, self.speed_kmh))


class PositionThrottle:
    """
    Decides which fixes are persisted upstream.

    Send when nothing was sent yet, when the heartbeat interval elapsed, or when
    both the minimum interval and the minimum displacement were exceeded.
    """

    def __init__(
        self,
        min_interval_s: Optional[float] = None,
        max_interval_s: Optional[float] = None,
        min_distance_m: Optional[float] = None,
    ):
        config = _config()
        self.min_interval_s = min_interval_s if min_interval_s is not None else config.get("throttle_min_interval_seconds", 15.0)
        self.max_interval_s = max_interval_s if max_interval_s is not None else config.get("throttle_max_interval_seconds", 60.0)
        self.min_distance_m = min_distance_m if min_distance_m is not None else config.get("throttle_min_distance_m", 25.0)
        self.last_sent: Optional[Fix] = None

    def should_send(self, fix: Fix) -> bool:
        last = self.last_sent
        if last is None:
            return True
        elapsed = fix.timestamp - last.timestamp
        if elapsed >= self.max_interval_s:
            return True
        if elapsed >= self.min_interval_s:
            return distance_meters(last.lat, last.lng, fix.lat, fix.lng) >= self.min_distance_m
        return False

    def offer(self, fix: Fix) -> bool:
        """Record the fix as sent when it passes the gate."""
        if not self.should_send(fix):
            return False
        self.last_sent = fix
        return True


class FollowCooldown:
    """
    Map auto-follow policy: manual interaction suspends following, which
    resumes by itself once the cooldown ran out after the last interaction.
    """

    def __init__(
        self,
        cooldown_s: Optional[float] = None,
        timer_factory: Optional[TimerFactory] = None,
        on_resume: Optional[Callable[[], None]] = None,
    ):
        self.cooldown_s = cooldown_s if cooldown_s is not None else _config().get("follow_cooldown_seconds", 8.0)
        self.following = True
        self._timer = SingleSlotTimer(timer_factory)
        self._on_resume = on_resume

    def interaction_started(self) -> None:
        self.following = False
        self._timer.cancel()

    def interaction_ended(self) -> None:
        self.following = False
        self._timer.start(self.cooldown_s, self._resume)

    def recenter(self) -> None:
        self._timer.cancel()
        self.following = True

    def close(self) -> None:
        self._timer.cancel()

    def _resume(self) -> None:
        self.following = True
        if self._on_resume is not None:
            self._on_resume()


class MarkerSmoother:
    """
    Glides a marker between fixes over a fixed duration.

    The first fix is shown immediately. A fix arriving mid-animation retargets
    from wherever the marker currently is, so animations never queue or overlap.
    """

    def __init__(self, duration_s: Optional[float] = None):
        self.duration_s = duration_s if duration_s is not None else _config().get("marker_animation_seconds", 2.0)
        self._start: Optional[Tuple[float, float]] = None
        self._target: Optional[Tuple[float, float]] = None
        self._started_at = 0.0

    def push(self, lat: float, lng: float, now: float) -> None:
        if self._target is None:
            self._start = self._target = (lat, lng)
            self._started_at = now
            return
        self._start = self.position(now)
        self._target = (lat, lng)
        self._started_at = now

    def position(self, now: float) -> Optional[Tuple[float, float]]:
        if self._target is None:
            return None
        progress = self.progress(now)
        start_lat, start_lng = self._start
        target_lat, target_lng = self._target
        return (
            start_lat + (target_lat - start_lat) * progress,
            start_lng + (target_lng - start_lng) * progress,
        )

    def progress(self, now: float) -> float:
        if self._target is None or self.duration_s <= 0:
            return 1.0
        return min(max((now - self._started_at) / self.duration_s, 0.0), 1.0)

    def animating(self, now: float) -> bool:
        if self._target is None or self._start == self._target:
            return False
        return self.progress(now) < 1.0
