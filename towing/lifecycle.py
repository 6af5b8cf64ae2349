"""
Trip lifecycle state machine.

Every status write is a conditional update keyed on the expected current
status (plus any ownership precondition). Zero affected rows is a normal
outcome meaning the transition no longer applies; callers get the freshly
re-fetched request back and must branch on it.

    pendente -> direcionada -> em_andamento -> no_local -> em_viagem -> finalizado
    pendente/direcionada -> cancelado

The two evidence moments (no_local -> em_viagem, em_viagem -> finalizado) are
only committed by a checklist submission.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.db import DatabaseError
from django.utils import timezone

from .models import Checklist, Request
from .signals import announce_request_change

logger = logging.getLogger(__name__)

Status = Request.Status
Phase = Checklist.Phase

TRANSITIONS = frozenset(
    {
        (Status.PENDING, Status.DIRECTED),
        (Status.PENDING, Status.IN_PROGRESS),
        (Status.DIRECTED, Status.IN_PROGRESS),
        (Status.DIRECTED, Status.PENDING),
        (Status.IN_PROGRESS, Status.ON_SITE),
        (Status.ON_SITE, Status.EN_ROUTE),
        (Status.EN_ROUTE, Status.FINALIZED),
        (Status.PENDING, Status.CANCELLED),
        (Status.DIRECTED, Status.CANCELLED),
    }
)

GATED_TRANSITIONS: Dict[tuple, str] = {
    (Status.ON_SITE, Status.EN_ROUTE): Phase.START,
    (Status.EN_ROUTE, Status.FINALIZED): Phase.END,
}
PHASE_TRANSITIONS = {phase: pair for pair, phase in GATED_TRANSITIONS.items()}

# Forward step a provider triggers from the active-request screen.
PROVIDER_STEPS = {
    Status.IN_PROGRESS: Status.ON_SITE,
    Status.ON_SITE: Status.EN_ROUTE,
    Status.EN_ROUTE: Status.FINALIZED,
}

TERMINAL_STATUSES = frozenset({Status.FINALIZED, Status.CANCELLED})
WORKING_STATUSES = frozenset({Status.IN_PROGRESS, Status.ON_SITE, Status.EN_ROUTE})
CANCELLABLE_STATUSES = frozenset({Status.PENDING, Status.DIRECTED})


class RequestNotFound(Exception):
    pass


class ChecklistIncomplete(Exception):
    def __init__(self, missing_photos: Sequence[str] = (), missing_items: Sequence[str] = ()):
        self.missing_photos = list(missing_photos)
        self.missing_items = list(missing_items)
        parts = []
        if self.missing_photos:
            parts.append("missing photos: " + ", ".join(self.missing_photos))
        if self.missing_items:
            parts.append("unchecked required items: " + ", ".join(self.missing_items))
        super().__init__("Checklist incomplete (" + "; ".join(parts) + ")")


class ChecklistStatusWriteError(Exception):
    """The checklist is stored but the status write failed; retry with resume_gated_transition."""

    def __init__(self, request_id: int, phase: str):
        super().__init__(
            f"Checklist '{phase}' for request {request_id} was saved, but the status update failed."
        )
        self.request_id = request_id
        self.phase = phase


@dataclass
class TransitionResult:
    applied: bool
    request: Optional[Request]
    gate: Optional[str] = None

    @property
    def status(self) -> Optional[str]:
        return self.request.status if self.request is not None else None


def _config() -> Dict:
    return getattr(settings, "TOWING_CONFIG", {})


def stale_cutoff():
    hours = _config().get("stale_request_hours", 24)
    return timezone.now() - timedelta(hours=hours)


def fetch_request(request_id: int) -> Request:
    try:
        return Request.objects.select_related("provider").get(pk=request_id)
    except Request.DoesNotExist:
        raise RequestNotFound(f"Request {request_id} not found")


def conditional_update(
    request_id: int,
    expected_status: Union[str, Iterable[str]],
    fields: Dict,
    **preconditions,
) -> int:
    """
    UPDATE ... WHERE id = :id AND status = :expected [AND preconditions].

    Returns the affected-row count.
    """
    if isinstance(expected_status, str):
        queryset = Request.objects.filter(pk=request_id, status=expected_status, **preconditions)
    else:
        queryset = Request.objects.filter(pk=request_id, status__in=list(expected_status), **preconditions)
    rows = queryset.update(updated_at=timezone.now(), **fields)
    if rows:
        announce_request_change(request_id, fields.get("status"))
    return rows


def transition(
    request_id: int,
    source: str,
    target: str,
    fields: Optional[Dict] = None,
    **preconditions,
) -> int:
    if (source, target) not in TRANSITIONS:
        logger.warning("Rejected out-of-order transition %s -> %s for request %s", source, target, request_id)
        return 0
    if (source, target) in GATED_TRANSITIONS:
        logger.warning(
            "Transition %s -> %s for request %s needs a '%s' checklist submission",
            source, target, request_id, GATED_TRANSITIONS[(source, target)],
        )
        return 0
    values = dict(fields or {})
    values["status"] = target
    return conditional_update(request_id, source, values, **preconditions)


def refetch_result(rows: int, request_id: int, gate: Optional[str] = None) -> TransitionResult:
    request = Request.objects.select_related("provider").filter(pk=request_id).first()
    return TransitionResult(applied=bool(rows), request=request, gate=gate)


def advance(request_id: int, provider_id: int) -> TransitionResult:
    """
    Move an assigned request one step forward on behalf of its provider.

    Gated steps are not written here; the result carries the checklist phase
    the provider has to submit instead.
    """
    request = fetch_request(request_id)
    if request.provider_id != provider_id:
        raise PermissionDenied("Request is not assigned to this provider.")

    target = PROVIDER_STEPS.get(request.status)
    if target is None:
        return TransitionResult(applied=False, request=request)

    gate = GATED_TRANSITIONS.get((request.status, target))
    if gate is not None:
        logger.info("Request %s reached the '%s' checklist gate", request_id, gate)
        return TransitionResult(applied=False, request=request, gate=gate)

    rows = transition(request_id, request.status, target, provider_id=provider_id)
    if rows:
        logger.info("Request %s advanced %s -> %s", request_id, request.status, target)
    else:
        logger.warning("Request %s changed before %s -> %s could apply", request_id, request.status, target)
    return refetch_result(rows, request_id)


def cancel(request_id: int, actor_id: str, role: str) -> TransitionResult:
    request = fetch_request(request_id)
    if role == "client":
        if request.client_id is None or request.client_id != str(actor_id):
            raise PermissionDenied("Only the requesting client can cancel this request.")
    elif role != "operator":
        raise PermissionDenied("Providers cannot cancel requests.")

    rows = conditional_update(request_id, CANCELLABLE_STATUSES, {"status": Status.CANCELLED})
    if rows:
        logger.info("Request %s cancelled by %s %s", request_id, role, actor_id)
    else:
        logger.warning("Request %s can no longer be cancelled (status %s)", request_id, request.status)
    return refetch_result(rows, request_id)


def find_active_request(actor_id, role: str) -> Optional[Request]:
    """
    Most recent unfinished request of a client or provider inside the staleness window.

    Older rows are never resumed automatically, whatever their status.
    """
    queryset = Request.objects.filter(created_at__gte=stale_cutoff()).exclude(status__in=TERMINAL_STATUSES)
    if role == "provider":
        queryset = queryset.filter(provider_id=actor_id).exclude(status=Status.PENDING)
    elif role == "client":
        queryset = queryset.filter(client_id=str(actor_id))
    else:
        return None
    return queryset.select_related("provider").order_by("-created_at").first()


# Checklist gate -------------------------------------------------------------

def default_checklist_items(phase: str) -> List[Dict]:
    templates = _config().get("checklist_items", {}).get(phase, [])
    return [
        {"name": item["name"], "required": bool(item.get("required", False)), "checked": False}
        for item in templates
    ]


def merge_checklist_items(phase: str, items: Sequence[Dict]) -> List[Dict]:
    """
    Configured items for the phase, in configured order, with the submitted
    ``checked`` state, followed by any extra submitted items.

    A submitted ``required`` flag can add a requirement but never lift a
    configured one.
    """
    submitted = {}
    for item in items:
        name = item.get("name", "")
        if name:
            submitted[name] = item
    merged = []
    for template in default_checklist_items(phase):
        item = submitted.pop(template["name"], {})
        merged.append({
            "name": template["name"],
            "required": template["required"] or bool(item.get("required", False)),
            "checked": bool(item.get("checked", False)),
        })
    for name, item in submitted.items():
        merged.append({
            "name": name,
            "required": bool(item.get("required", False)),
            "checked": bool(item.get("checked", False)),
        })
    return merged


def validate_checklist(items: Sequence[Dict], front_photo_url: Optional[str], rear_photo_url: Optional[str]) -> None:
    """Expects items already merged with the configured ones."""
    missing_photos = [
        label
        for label, url in (("front", front_photo_url), ("rear", rear_photo_url))
        if not url
    ]
    missing_items = [
        item.get("name", "")
        for item in items
        if item.get("required") and not item.get("checked")
    ]
    if missing_photos or missing_items:
        raise ChecklistIncomplete(missing_photos, missing_items)


def settlement_fields(request: Request, checklist: Checklist) -> Dict:
    toll = checklist.toll_amount or Decimal("0")
    provider = checklist.provider
    quantity = checklist.skates_quantity if provider.offers_skates else 0
    skates_amount = provider.skates_price * quantity if quantity > 0 else Decimal("0")

    final_amount = (request.amount + toll + skates_amount).quantize(Decimal("0.01"))
    rate = Decimal(str(_config().get("commission_rate_percent", "15")))
    commission = (final_amount * rate / 100).quantize(Decimal("0.01"))

    fields = {
        "toll_amount": toll,
        "final_amount": final_amount,
        "commission_rate": rate,
        "commission_amount": commission,
    }
    if quantity > 0:
        fields.update(skates_used=True, skates_quantity=quantity, skates_amount=skates_amount)
    return fields


@dataclass
class ChecklistSubmission:
    checklist: Optional[Checklist]
    transition: TransitionResult
    created: bool = False


def submit_checklist(
    request_id: int,
    provider_id: int,
    phase: str,
    items: Sequence[Dict],
    front_photo_url: Optional[str],
    rear_photo_url: Optional[str],
    notes: str = "",
    extra_photos: Sequence[str] = (),
    toll_amount: Optional[Decimal] = None,
    skates_quantity: int = 0,
) -> ChecklistSubmission:
    """
    Record pickup/drop-off evidence and commit the gated status transition.

    The checklist row is written first and kept even if the status write then
    fails, so uploaded evidence is never lost.
    """
    phase = Phase(phase)
    source, target = PHASE_TRANSITIONS[phase]
    items = merge_checklist_items(phase, items)
    validate_checklist(items, front_photo_url, rear_photo_url)

    request = fetch_request(request_id)
    if request.provider_id != provider_id:
        raise PermissionDenied("Request is not assigned to this provider.")
    if request.status != source:
        logger.warning(
            "Checklist '%s' for request %s refused: status is %s, expected %s",
            phase, request_id, request.status, source,
        )
        return ChecklistSubmission(checklist=None, transition=TransitionResult(False, request))

    photos = [front_photo_url, rear_photo_url] + [url for url in extra_photos if url]
    checklist, created = Checklist.objects.get_or_create(
        request=request,
        phase=phase,
        defaults={
            "provider_id": provider_id,
            "agency_id": request.agency_id,
            "items": items,
            "photos": photos,
            "front_photo_url": front_photo_url,
            "rear_photo_url": rear_photo_url,
            "notes": (notes or "").strip(),
            "toll_amount": toll_amount if toll_amount and toll_amount > 0 else Decimal("0"),
            "skates_quantity": max(int(skates_quantity or 0), 0),
        },
    )
    if not created:
        logger.info("Checklist '%s' for request %s already on file, retrying status write", phase, request_id)

    return ChecklistSubmission(checklist, _commit_gated_transition(request, checklist), created)


def resume_gated_transition(request_id: int, provider_id: int, phase: str) -> TransitionResult:
    """
    Retry the status write of a gated transition whose checklist is already stored.
    """
    phase = Phase(phase)
    checklist = (
        Checklist.objects.select_related("provider", "request")
        .filter(request_id=request_id, phase=phase)
        .first()
    )
    if checklist is None:
        request = fetch_request(request_id)
        return TransitionResult(applied=False, request=request, gate=phase)
    if checklist.provider_id != provider_id:
        raise PermissionDenied("Checklist was submitted by another provider.")
    return _commit_gated_transition(checklist.request, checklist)


def _commit_gated_transition(request: Request, checklist: Checklist) -> TransitionResult:
    source, target = PHASE_TRANSITIONS[checklist.phase]
    fields = {"status": target}
    if target == Status.FINALIZED:
        fields.update(settlement_fields(request, checklist))

    try:
        rows = conditional_update(request.pk, source, fields, provider_id=checklist.provider_id)
    except DatabaseError as error:
        logger.exception("Status write after checklist '%s' failed for request %s", checklist.phase, request.pk)
        raise ChecklistStatusWriteError(request.pk, checklist.phase) from error

    if rows:
        logger.info("Request %s advanced %s -> %s after checklist '%s'", request.pk, source, target, checklist.phase)
    else:
        logger.warning("Request %s was no longer %s when checklist '%s' committed", request.pk, source, checklist.phase)
    return refetch_result(rows, request.pk)


# Terminal-state observation -------------------------------------------------

class TerminalStatusObserver:
    """
    Fires the finalized/cancelled callbacks at most once per request.

    Polling and the change feed may both report the same terminal state any
    number of times.
    """

    def __init__(
        self,
        on_finalized: Optional[Callable[[int], None]] = None,
        on_cancelled: Optional[Callable[[int], None]] = None,
    ):
        self._callbacks = {
            Status.FINALIZED: on_finalized,
            Status.CANCELLED: on_cancelled,
        }
        self._seen = set()
        self._lock = threading.Lock()

    def observe(self, request_id: int, status: str) -> bool:
        if status not in TERMINAL_STATUSES:
            return False
        with self._lock:
            if request_id in self._seen:
                return False
            self._seen.add(request_id)
        callback = self._callbacks.get(status)
        if callback is not None:
            callback(request_id)
        return True
