"""
Application services used by the HTTP views: request creation, provider
presence, position and pricing, tracking snapshots, chat badges, problem
reports and ratings.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from django.core.exceptions import PermissionDenied
from django.db import IntegrityError, transaction
from django.utils import timezone as dj_timezone

from . import lifecycle
from .geo import decode_polyline, distance_meters, route_progress
from .models import Agency, Message, Provider, Rating, Request
from .quote import QuoteClient
from .signals import announce_request_change
from .tracking import Estimate, Fix, PositionThrottle, TrackingEstimator, eta_minutes, target_for

logger = logging.getLogger(__name__)

Status = Request.Status

PRICING_FIELDS = (
    "base_price", "price_per_km", "price_per_minute", "return_base_fee", "offers_skates", "skates_price",
)


class AlreadyRated(Exception):
    pass


def serialize_request(request: Request) -> Dict:
    return {
        "id": request.pk,
        "status": request.status,
        "client_id": request.client_id,
        "guest_name": request.guest_name,
        "provider_id": request.provider_id,
        "agency_id": request.agency_id,
        "origin": {"lat": request.origin_lat, "lng": request.origin_lng},
        "destination": (
            {"lat": request.destination_lat, "lng": request.destination_lng}
            if request.has_destination
            else None
        ),
        "pickup_address": request.pickup_address,
        "destination_address": request.destination_address,
        "distance_km": request.distance_km,
        "duration_seconds": request.duration_seconds,
        "eta_minutes": request.eta_minutes,
        "route_polyline": request.route_polyline,
        "amount": request.amount,
        "covered": request.is_covered,
        "toll_amount": request.toll_amount,
        "skates_amount": request.skates_amount,
        "final_amount": request.final_amount,
        "commission_amount": request.commission_amount,
        "problem_reported": request.problem_reported,
        "created_at": request.created_at.isoformat() if request.created_at else None,
    }


def create_request(
    quote_client: QuoteClient,
    origin_lat: float,
    origin_lng: float,
    destination_lat: float,
    destination_lng: float,
    client_id: Optional[str] = None,
    guest_name: str = "",
    agency_id: Optional[int] = None,
    pickup_address: str = "",
    destination_address: str = "",
) -> Request:
    """
    Quote the route and open a pending request.

    Agency-bound requests are covered by the agency and carry amount 0. Quote
    failures propagate, so a request is never created from a missing quote.
    """
    if client_id is None and not guest_name:
        raise ValueError("A guest request needs a guest name.")

    quote = quote_client.compute_quote(origin_lat, origin_lng, destination_lat, destination_lng)

    agency_id = agency_id or quote.agency_id
    if agency_id is not None and not Agency.objects.filter(pk=agency_id).exists():
        logger.warning("Quote referenced unknown agency %s, treating request as private", agency_id)
        agency_id = None

    request = Request.objects.create(
        client_id=client_id,
        guest_name=guest_name,
        agency_id=agency_id,
        origin_lat=origin_lat,
        origin_lng=origin_lng,
        destination_lat=destination_lat,
        destination_lng=destination_lng,
        pickup_address=pickup_address,
        destination_address=destination_address,
        distance_km=round(quote.distance_km, 2),
        duration_seconds=quote.duration_seconds or None,
        route_polyline=quote.polyline,
        eta_minutes=quote.eta_min,
        amount=Decimal("0") if agency_id else quote.amount,
        status=Status.PENDING,
    )
    logger.info(
        "Request %s created for %s (%.2f km, amount %s)",
        request.pk, client_id or f"guest {guest_name}", quote.distance_km, request.amount,
    )
    announce_request_change(request.pk, request.status)
    return request


def set_provider_online(provider_id: int, online: bool) -> int:
    status = "online" if online else "offline"
    rows = Provider.objects.filter(pk=provider_id).update(status=status)
    if rows:
        logger.info("Provider %s is now %s", provider_id, status)
    if not online:
        TRACKING_STATE.pop(provider_id, None)
    return rows


def record_provider_position(provider_id: int, lat: float, lng: float) -> int:
    """Only writer of provider coordinates."""
    return Provider.objects.filter(pk=provider_id).update(
        latitude=lat,
        longitude=lng,
        location_updated_at=dj_timezone.now(),
    )


def update_provider_pricing(provider_id: int, **fields) -> Dict:
    """
    Overwrite the provider's pricing table with the given fields and return
    the stored values.
    """
    unknown = set(fields) - set(PRICING_FIELDS)
    if unknown:
        raise ValueError(f"Unknown pricing fields: {', '.join(sorted(unknown))}")
    if fields:
        if not Provider.objects.filter(pk=provider_id).update(**fields):
            raise Provider.DoesNotExist(f"Provider {provider_id} not found")
        logger.info("Provider %s updated pricing: %s", provider_id, ", ".join(sorted(fields)))
    provider = Provider.objects.get(pk=provider_id)
    return serialize_pricing(provider)


def serialize_pricing(provider: Provider) -> Dict:
    return {
        "base_price": str(provider.base_price),
        "price_per_km": str(provider.price_per_km),
        "price_per_minute": str(provider.price_per_minute),
        "return_base_fee": str(provider.return_base_fee),
        "offers_skates": provider.offers_skates,
        "skates_price": str(provider.skates_price),
    }


class ProviderSession:
    """Per-provider estimator and upstream throttle."""

    def __init__(self):
        self.estimator = TrackingEstimator()
        self.throttle = PositionThrottle()
        self.last_estimate: Optional[Estimate] = None
        # (request id, status) the estimate was computed for.
        self.estimate_key: Optional[Tuple[int, str]] = None
        self.lock = threading.Lock()


TRACKING_STATE: Dict[int, ProviderSession] = {}


def _session(provider_id: int) -> ProviderSession:
    session = TRACKING_STATE.get(provider_id)
    if session is None:
        session = ProviderSession()
        TRACKING_STATE[provider_id] = session
    return session


def report_position(provider_id: int, fix: Fix) -> Dict:
    """
    Feed a device fix for a provider: update the estimate and persist the
    position when the throttle lets it through.
    """
    session = _session(provider_id)
    active = lifecycle.find_active_request(provider_id, "provider")
    with session.lock:
        if active is not None and active.status in lifecycle.WORKING_STATUSES:
            estimate = session.estimator.update(fix, active)
            session.last_estimate = estimate
            session.estimate_key = (active.pk, active.status)
        else:
            session.estimator.observe(fix)
            estimate = None
        send = session.throttle.offer(fix)

    if send:
        record_provider_position(provider_id, fix.lat, fix.lng)
    return {
        "persisted": send,
        "request_id": active.pk if active is not None else None,
        "estimate": estimate.as_dict() if estimate is not None else None,
    }


def get_tracking_snapshot(request_id: int, actor_id, role: str) -> Dict:
    """
    Provide a ready-to-use snapshot for client and provider map views.
    """
    request = lifecycle.fetch_request(request_id)
    if role == "client" and request.client_id != str(actor_id):
        raise PermissionDenied("Request belongs to another client.")
    if role == "provider" and request.provider_id != actor_id:
        raise PermissionDenied("Request is assigned to another provider.")

    points = decode_polyline(request.route_polyline)
    provider = request.provider
    provider_point = None
    progress = None
    estimate = None
    if provider is not None and provider.latitude is not None and provider.longitude is not None:
        provider_point = {
            "lat": round(provider.latitude, 6),
            "lng": round(provider.longitude, 6),
            "updated_at": provider.location_updated_at.isoformat() if provider.location_updated_at else None,
        }
        if request.status == Status.EN_ROUTE:
            progress = route_progress(points, provider.latitude, provider.longitude)
        estimate = _snapshot_estimate(request, provider)

    return {
        "request": serialize_request(request),
        "provider": provider_point,
        "route": [{"lat": round(lat, 6), "lng": round(lng, 6)} for lat, lng in points],
        "route_progress": progress,
        "estimate": estimate,
        "terminal": request.status in lifecycle.TERMINAL_STATUSES,
        "unread_messages": unread_count(request.pk, "prestador" if role == "client" else "cliente"),
        "generation_time": datetime.now(timezone.utc).isoformat(),
    }


def _snapshot_estimate(request: Request, provider: Provider) -> Optional[Dict]:
    target = target_for(request)
    if target is None or request.status not in lifecycle.WORKING_STATUSES:
        return None
    session = TRACKING_STATE.get(provider.pk)
    if (
        session is not None
        and session.last_estimate is not None
        and session.estimate_key == (request.pk, request.status)
    ):
        return session.last_estimate.as_dict()

    # Nothing computed for this leg yet: straight-line distance from the
    # latest known position to the current target.
    estimator = session.estimator if session is not None else TrackingEstimator()
    lat, lng = provider.latitude, provider.longitude
    if estimator.previous is not None:
        lat, lng = estimator.previous.lat, estimator.previous.lng
    remaining = distance_meters(lat, lng, target[0], target[1])
    return Estimate(estimator.heading, estimator.speed_kmh, remaining, eta_minutes(remaining, estimator.speed_kmh)).as_dict()


def list_open_requests(provider_id: int) -> List[Dict]:
    provider = Provider.objects.get(pk=provider_id)
    if not provider.is_online:
        return []
    queryset = Request.objects.filter(
        status=Status.PENDING,
        provider__isnull=True,
        created_at__gte=lifecycle.stale_cutoff(),
    ).order_by("created_at")
    return [serialize_request(item) for item in queryset]


def _finished_request_of(request_id: int, client_id: str, action: str) -> Request:
    request = lifecycle.fetch_request(request_id)
    if request.client_id != str(client_id):
        raise PermissionDenied(f"Only the requesting client can {action}.")
    if request.status != Status.FINALIZED:
        raise ValueError(f"Cannot {action} before the request is finalized.")
    return request


def _save_rating(request: Request, client_id: str, score: int, comment: str) -> Rating:
    if not 1 <= score <= 5:
        raise ValueError("Score must be between 1 and 5.")
    if Rating.objects.filter(request_id=request.pk).exists():
        raise AlreadyRated(f"Request {request.pk} was already rated.")
    try:
        with transaction.atomic():
            rating = Rating.objects.create(
                request=request,
                provider_id=request.provider_id,
                agency_id=request.agency_id,
                client_id=str(client_id),
                score=score,
                comment=comment,
            )
    except IntegrityError:
        raise AlreadyRated(f"Request {request.pk} was already rated.")
    logger.info("Request %s rated %s by %s", request.pk, score, client_id)
    return rating


def rate_request(request_id: int, client_id: str, score: int, comment: str = "") -> Rating:
    """One rating per finalized request, by the client who asked for it."""
    request = _finished_request_of(request_id, client_id, "rate the service")
    return _save_rating(request, client_id, score, (comment or "").strip())


def serialize_rating(rating: Rating) -> Dict:
    return {
        "id": rating.pk,
        "request_id": rating.request_id,
        "provider_id": rating.provider_id,
        "score": rating.score,
        "comment": rating.comment,
    }


def report_problem(
    request_id: int,
    client_id: str,
    problem_type: str,
    description: str = "",
    score: Optional[int] = None,
) -> Request:
    """
    Flag a problem on a finished trip. The status is left untouched.

    A score given along with the report is stored as the request's rating,
    with the problem type prefixed to the comment.
    """
    request = _finished_request_of(request_id, client_id, "report a problem")
    description = (description or "").strip()
    with transaction.atomic():
        Request.objects.filter(pk=request_id).update(
            problem_reported=True,
            problem_type=problem_type,
            problem_description=description,
            updated_at=dj_timezone.now(),
        )
        if score is not None:
            _save_rating(request, client_id, score, f"[PROBLEMA: {problem_type}] {description}".strip())
    logger.info("Problem '%s' reported on request %s", problem_type, request_id)
    request.refresh_from_db()
    return request


def unread_count(request_id: int, sender_role: str) -> int:
    """Unread messages sent by ``sender_role`` on a request."""
    return Message.objects.filter(request_id=request_id, sender_role=sender_role, read=False).count()


def mark_read(request_id: int, sender_role: str) -> int:
    return Message.objects.filter(request_id=request_id, sender_role=sender_role, read=False).update(read=True)
