"""
Dispatch and matching.

Two modes share the same request table:

* directed dispatch: an operator pins a request to one provider
  (pendente -> direcionada), who then accepts or declines it;
* pool dispatch: unassigned pending requests are offered to online providers
  and the first conditional claim wins.

At most one provider can hold a request because every assignment is a
conditional update on (status, prestador_id). A claim that touches no row
lost the race and must be reported as "no longer available".
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from django.conf import settings
from django.db import DatabaseError, close_old_connections, connection

from . import lifecycle
from .geo import distance_meters
from .models import Provider, Request
from .signals import request_changed

logger = logging.getLogger(__name__)

Status = Request.Status

# Pending requests considered when ranking the pool by proximity.
POOL_CANDIDATES = 20


def assign(request_id: int, provider_id: int) -> lifecycle.TransitionResult:
    """Operator directs a pending, unassigned request to one provider."""
    lifecycle.fetch_request(request_id)
    if not Provider.objects.filter(pk=provider_id).exists():
        raise Provider.DoesNotExist(f"Provider {provider_id} not found")
    rows = lifecycle.transition(
        request_id,
        Status.PENDING,
        Status.DIRECTED,
        fields={"provider_id": provider_id},
        provider__isnull=True,
    )
    if rows:
        logger.info("Request %s directed to provider %s", request_id, provider_id)
    else:
        logger.warning("Request %s could not be directed to provider %s", request_id, provider_id)
    return lifecycle.refetch_result(rows, request_id)


def claim(request_id: int, provider_id: int) -> lifecycle.TransitionResult:
    """
    SET prestador_id = me, status = em_andamento
    WHERE id = X AND prestador_id IS NULL AND status = pendente
    """
    rows = lifecycle.transition(
        request_id,
        Status.PENDING,
        Status.IN_PROGRESS,
        fields={"provider_id": provider_id},
        provider__isnull=True,
    )
    if rows:
        logger.info("Provider %s claimed request %s from the pool", provider_id, request_id)
    else:
        logger.info("Provider %s lost the claim on request %s", provider_id, request_id)
    return lifecycle.refetch_result(rows, request_id)


def accept_directed(request_id: int, provider_id: int) -> lifecycle.TransitionResult:
    rows = lifecycle.transition(
        request_id,
        Status.DIRECTED,
        Status.IN_PROGRESS,
        provider_id=provider_id,
    )
    if rows:
        logger.info("Provider %s accepted directed request %s", provider_id, request_id)
    return lifecycle.refetch_result(rows, request_id)


def accept(request_id: int, provider_id: int) -> lifecycle.TransitionResult:
    """
    Accept an offer: a request directed to this provider first, else a pool claim.

    ``applied`` is False when the job is no longer available.
    """
    result = accept_directed(request_id, provider_id)
    if result.applied:
        return result
    if result.request is None:
        raise lifecycle.RequestNotFound(f"Request {request_id} not found")
    return claim(request_id, provider_id)


def decline(request_id: int, provider_id: int) -> lifecycle.TransitionResult:
    """
    Decline an offer.

    A directed request goes back to the pool with no provider. Declining a
    pool request changes nothing in the database.
    """
    request = lifecycle.fetch_request(request_id)
    if request.status != Status.DIRECTED:
        return lifecycle.TransitionResult(applied=False, request=request)

    rows = lifecycle.transition(
        request_id,
        Status.DIRECTED,
        Status.PENDING,
        fields={"provider_id": None},
        provider_id=provider_id,
    )
    if rows:
        logger.info("Provider %s declined directed request %s, back to the pool", provider_id, request_id)
    return lifecycle.refetch_result(rows, request_id)


def find_directed(provider_id: int) -> Optional[Request]:
    return (
        Request.objects.filter(
            status=Status.DIRECTED,
            provider_id=provider_id,
            created_at__gte=lifecycle.stale_cutoff(),
        )
        .order_by("created_at")
        .first()
    )


def find_open(provider: Provider, exclude: Iterable[int] = ()) -> Optional[Request]:
    """
    Nearest unassigned pending request for an online provider with a known position.
    """
    if not provider.is_online or provider.latitude is None or provider.longitude is None:
        return None
    candidates = list(
        Request.objects.filter(
            status=Status.PENDING,
            provider__isnull=True,
            created_at__gte=lifecycle.stale_cutoff(),
        )
        .exclude(pk__in=list(exclude))
        .order_by("created_at")[:POOL_CANDIDATES]
    )
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda item: distance_meters(provider.latitude, provider.longitude, item.origin_lat, item.origin_lng),
    )


@dataclass(frozen=True)
class Offer:
    kind: str  # "active", "directed" or "open"
    request_id: int
    status: str


class DispatchMonitor:
    """
    Keeps one provider session in sync with the request table.

    ``reconcile`` is the single routine behind both triggers: the change feed
    (fast, best effort) and an unconditional poll (safety net). It re-reads
    authoritative state every time, so running it redundantly is harmless.
    An offer is routed once per (request id, status) until ``resolve`` is
    called for it.
    """

    def __init__(
        self,
        provider_id: int,
        on_offer: Callable[[Offer], None],
        poll_interval: Optional[float] = None,
    ):
        config = getattr(settings, "TOWING_CONFIG", {})
        self.provider_id = provider_id
        self.on_offer = on_offer
        self.poll_interval = poll_interval if poll_interval is not None else config.get("poll_interval_seconds", 10)
        self.last_routed = None
        self.dismissed = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None
        self._subscribed = False

    def reconcile(self) -> Optional[Offer]:
        with self._lock:
            offer = self._next_offer()
            if offer is None:
                return None
            marker = (offer.request_id, offer.status)
            if marker == self.last_routed:
                return None
            self.last_routed = marker
        logger.info("Routing %s request %s to provider %s", offer.kind, offer.request_id, self.provider_id)
        try:
            self.on_offer(offer)
        except Exception:
            # Undelivered, so the next tick routes it again.
            with self._lock:
                if self.last_routed == marker:
                    self.last_routed = None
            raise
        return offer

    def _next_offer(self) -> Optional[Offer]:
        active = lifecycle.find_active_request(self.provider_id, "provider")
        if active is not None and active.status != Status.DIRECTED:
            return Offer("active", active.pk, active.status)

        directed = find_directed(self.provider_id)
        if directed is not None:
            return Offer("directed", directed.pk, directed.status)

        provider = Provider.objects.filter(pk=self.provider_id).first()
        if provider is None:
            return None
        pending = find_open(provider, exclude=self.dismissed)
        if pending is not None:
            return Offer("open", pending.pk, pending.status)
        return None

    def resolve(self, request_id: int, declined: bool = False) -> None:
        """Clear the routing marker once the provider decided on an offer."""
        with self._lock:
            if self.last_routed and self.last_routed[0] == request_id:
                self.last_routed = None
            if declined:
                self.dismissed.add(request_id)

    def handle_change(self, sender=None, request_id=None, status=None, **kwargs) -> None:
        # The payload is only a hint; reconcile re-reads the table.
        self.reconcile()

    def start(self) -> None:
        if not self._subscribed:
            request_changed.connect(self.handle_change, weak=False, dispatch_uid=self._dispatch_uid)
            self._subscribed = True
        if self._thread is None:
            self._stop.clear()
            self._thread = threading.Thread(target=self._poll_loop, name=f"dispatch-poll-{self.provider_id}", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        if self._subscribed:
            request_changed.disconnect(dispatch_uid=self._dispatch_uid)
            self._subscribed = False
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval)
            self._thread = None

    @property
    def _dispatch_uid(self) -> str:
        return f"dispatch-monitor-{id(self)}"

    def poll_once(self) -> Optional[Offer]:
        try:
            return self.reconcile()
        except DatabaseError:
            logger.exception("Dispatch poll failed for provider %s", self.provider_id)
        except Exception:
            logger.exception("Routing an offer to provider %s failed", self.provider_id)
        return None

    def _poll_loop(self) -> None:
        try:
            close_old_connections()
            self.poll_once()
            while not self._stop.wait(self.poll_interval):
                close_old_connections()
                self.poll_once()
        finally:
            # The thread owns its own connection.
            connection.close()
