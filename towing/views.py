from __future__ import annotations

import json
import logging
import time

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from . import lifecycle, matching, services
from .forms import (
    AssignForm, ChecklistForm, CreateRequestForm, OnlineStatusForm, PositionForm, PricingForm,
    ProblemReportForm, QuoteForm, RatingForm,
)
from .models import Checklist, Provider
from .quote import AuthenticationError, Credentials, InvalidResponseError, QuoteClient, UpstreamError
from .tracking import Fix

logger = logging.getLogger(__name__)

ROLES = ("client", "provider", "operator")


class MissingActor(Exception):
    pass


class InvalidPayload(Exception):
    def __init__(self, errors):
        super().__init__("Invalid payload")
        self.errors = errors


def build_quote_client(request) -> QuoteClient:
    """
    Quote client bound to the caller's bearer token, or to the configured
    service token when the caller sends none.
    """
    header = request.headers.get("Authorization", "")
    token = header[7:].strip() if header.startswith("Bearer ") else None
    if not token:
        token = settings.QUOTE_CONFIG.get("service_token") or None
    return QuoteClient(Credentials(token))


def _error(message, status, **extra):
    return JsonResponse({"ok": False, "error": message, **extra}, status=status)


def _transition_response(result: lifecycle.TransitionResult, failure_message: str):
    payload = {
        "ok": result.applied or result.gate is not None,
        "transitioned": result.applied,
        "status": result.status,
        "request": services.serialize_request(result.request) if result.request is not None else None,
    }
    if result.gate is not None:
        payload["checklist_required"] = result.gate
        payload["items"] = lifecycle.default_checklist_items(result.gate)
        return JsonResponse(payload)
    if not result.applied:
        payload["error"] = failure_message
        return JsonResponse(payload, status=409)
    return JsonResponse(payload)


@method_decorator(csrf_exempt, name='dispatch')
class ApiView(View):
    """
    JSON endpoint with the caller resolved from X-Actor-Id / X-Actor-Role.

    Authentication itself happens upstream; these headers carry its outcome.
    """

    roles = ROLES

    def dispatch(self, request, *args, **kwargs):
        try:
            self.actor_id = request.headers.get("X-Actor-Id", "").strip()
            self.role = request.headers.get("X-Actor-Role", "").strip().lower()
            if not self.actor_id or self.role not in ROLES:
                raise MissingActor()
            if self.role not in self.roles:
                raise PermissionDenied(f"Not available to {self.role}s.")
            return super().dispatch(request, *args, **kwargs)
        except MissingActor:
            return _error("Session expired. Please sign in again.", 401)
        except AuthenticationError as e:
            return _error(str(e), 401)
        except PermissionDenied as e:
            return _error(str(e) or "Forbidden", 403)
        except (lifecycle.RequestNotFound, Provider.DoesNotExist) as e:
            return _error(str(e), 404)
        except lifecycle.ChecklistIncomplete as e:
            return _error(str(e), 400, missing_photos=e.missing_photos, missing_items=e.missing_items)
        except services.AlreadyRated as e:
            return _error(str(e), 409)
        except lifecycle.ChecklistStatusWriteError as e:
            return _error(str(e), 503, recoverable=True, phase=e.phase)
        except InvalidResponseError as e:
            logger.warning(f"Rejected quote response: {e}")
            return _error(f"Cannot create request: {e}", 502)
        except UpstreamError as e:
            logger.warning(f"Quote service failed ({e.status_code}): {e}")
            return _error(str(e), 502, upstream_status=e.status_code)
        except InvalidPayload as e:
            return _error("Invalid payload", 400, fields=e.errors)
        except json.JSONDecodeError:
            return _error("Invalid JSON", 400)
        except ValueError as e:
            return _error(str(e), 400)

    @property
    def provider_id(self) -> int:
        return int(self.actor_id)

    def body(self):
        if not self.request.body:
            return {}
        data = json.loads(self.request.body)
        if not isinstance(data, dict):
            raise ValueError("Expected a JSON object.")
        return data

    def validated(self, form):
        if not form.is_valid():
            raise InvalidPayload(form.errors.get_json_data())
        return form.cleaned_data


class QuoteView(ApiView):
    roles = ("client", "operator")

    def post(self, request, *args, **kwargs):
        data = self.validated(QuoteForm(self.body()))
        quote = build_quote_client(request).compute_quote(
            data["origin_lat"], data["origin_lng"], data["destination_lat"], data["destination_lng"],
        )
        return JsonResponse({"ok": True, "quote": quote.as_dict()})


class RequestCreateView(ApiView):
    roles = ("client", "operator")

    def post(self, request, *args, **kwargs):
        data = self.validated(CreateRequestForm(self.body()))
        client_id = self.actor_id if self.role == "client" else None
        created = services.create_request(
            build_quote_client(request),
            data["origin_lat"],
            data["origin_lng"],
            data["destination_lat"],
            data["destination_lng"],
            client_id=client_id,
            guest_name=data.get("guest_name") or "",
            agency_id=data.get("agency_id"),
            pickup_address=data.get("pickup_address") or "",
            destination_address=data.get("destination_address") or "",
        )
        return JsonResponse({"ok": True, "request": services.serialize_request(created)}, status=201)


class ActiveRequestView(ApiView):
    roles = ("client", "provider")

    def get(self, request, *args, **kwargs):
        actor = self.provider_id if self.role == "provider" else self.actor_id
        active = lifecycle.find_active_request(actor, self.role)
        return JsonResponse({
            "ok": True,
            "request": services.serialize_request(active) if active is not None else None,
        })


class OpenRequestListView(ApiView):
    roles = ("provider",)

    def get(self, request, *args, **kwargs):
        return JsonResponse({"ok": True, "requests": services.list_open_requests(self.provider_id)})


class RequestDetailView(ApiView):
    def get(self, request, *args, **kwargs):
        item = lifecycle.fetch_request(self.kwargs["pk"])
        if self.role == "client" and item.client_id != self.actor_id:
            raise PermissionDenied("Request belongs to another client.")
        if self.role == "provider" and item.provider_id not in (None, self.provider_id):
            raise PermissionDenied("Request is assigned to another provider.")
        return JsonResponse({"ok": True, "request": services.serialize_request(item)})


class AssignProviderView(ApiView):
    roles = ("operator",)

    def post(self, request, *args, **kwargs):
        data = self.validated(AssignForm(self.body()))
        result = matching.assign(self.kwargs["pk"], data["provider_id"])
        return _transition_response(result, "Request is no longer pending or already has a provider.")


class AcceptRequestView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        result = matching.accept(self.kwargs["pk"], self.provider_id)
        return _transition_response(result, "This job was already accepted by another provider.")


class DeclineRequestView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        result = matching.decline(self.kwargs["pk"], self.provider_id)
        # Declining a pool offer writes nothing but is still acknowledged.
        return JsonResponse({
            "ok": True,
            "returned_to_pool": result.applied,
            "status": result.status,
        })


class AdvanceStatusView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        result = lifecycle.advance(self.kwargs["pk"], self.provider_id)
        return _transition_response(result, "Status changed in the meantime; reload the request.")


class ChecklistSubmitView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        phase = Checklist.Phase(self.kwargs["phase"])
        data = self.validated(ChecklistForm(self.body(), phase=phase))
        submission = lifecycle.submit_checklist(
            self.kwargs["pk"],
            self.provider_id,
            phase,
            items=data["items"],
            front_photo_url=data.get("front_photo_url"),
            rear_photo_url=data.get("rear_photo_url"),
            notes=data.get("notes") or "",
            extra_photos=data.get("photos") or [],
            toll_amount=data.get("toll_amount"),
            skates_quantity=data.get("skates_quantity") or 0,
        )
        response = _transition_response(
            submission.transition,
            "Request is not at this checklist step anymore; reload the request.",
        )
        if submission.checklist is not None:
            payload = json.loads(response.content)
            payload["checklist_id"] = submission.checklist.pk
            return JsonResponse(payload, status=response.status_code)
        return response


class ChecklistResumeView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        result = lifecycle.resume_gated_transition(self.kwargs["pk"], self.provider_id, self.kwargs["phase"])
        return _transition_response(result, "Status could not be advanced; reload the request.")


class CancelRequestView(ApiView):
    roles = ("client", "operator")

    def post(self, request, *args, **kwargs):
        result = lifecycle.cancel(self.kwargs["pk"], self.actor_id, self.role)
        return _transition_response(result, "A provider is already on the way; the request can no longer be cancelled.")


class ProblemReportView(ApiView):
    roles = ("client",)

    def post(self, request, *args, **kwargs):
        data = self.validated(ProblemReportForm(self.body()))
        item = services.report_problem(
            self.kwargs["pk"],
            self.actor_id,
            data["problem_type"],
            data.get("description") or "",
            score=data.get("score"),
        )
        return JsonResponse({"ok": True, "request": services.serialize_request(item)})


class RateRequestView(ApiView):
    roles = ("client",)

    def post(self, request, *args, **kwargs):
        data = self.validated(RatingForm(self.body()))
        rating = services.rate_request(self.kwargs["pk"], self.actor_id, data["score"], data.get("comment") or "")
        return JsonResponse({"ok": True, "rating": services.serialize_rating(rating)}, status=201)


class TrackingSnapshotView(ApiView):
    roles = ("client", "provider", "operator")

    def get(self, request, *args, **kwargs):
        actor = self.provider_id if self.role == "provider" else self.actor_id
        snapshot = services.get_tracking_snapshot(self.kwargs["pk"], actor, self.role)
        return JsonResponse({"ok": True, **snapshot})


class MessagesReadView(ApiView):
    roles = ("client", "provider")

    def post(self, request, *args, **kwargs):
        item = lifecycle.fetch_request(self.kwargs["pk"])
        if self.role == "client" and item.client_id != self.actor_id:
            raise PermissionDenied("Request belongs to another client.")
        if self.role == "provider" and item.provider_id != self.provider_id:
            raise PermissionDenied("Request is assigned to another provider.")
        # Each side reads what the other side sent.
        sender = "prestador" if self.role == "client" else "cliente"
        updated = services.mark_read(item.pk, sender)
        return JsonResponse({"ok": True, "marked_read": updated})


class ProviderStatusView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        data = self.validated(OnlineStatusForm(self.body()))
        if not services.set_provider_online(self.provider_id, data["online"]):
            raise Provider.DoesNotExist(f"Provider {self.provider_id} not found")
        return JsonResponse({"ok": True, "status": "online" if data["online"] else "offline"})


class ProviderPositionView(ApiView):
    roles = ("provider",)

    def post(self, request, *args, **kwargs):
        data = self.validated(PositionForm(self.body()))
        timestamp = data.get("timestamp") or time.time()
        report = services.report_position(self.provider_id, Fix(data["lat"], data["lng"], timestamp))
        return JsonResponse({"ok": True, **report})


class ProviderPricingView(ApiView):
    roles = ("provider",)

    def get(self, request, *args, **kwargs):
        return JsonResponse({"ok": True, "pricing": services.update_provider_pricing(self.provider_id)})

    def post(self, request, *args, **kwargs):
        form = PricingForm(self.body())
        self.validated(form)
        pricing = services.update_provider_pricing(self.provider_id, **form.changed_fields())
        return JsonResponse({"ok": True, "pricing": pricing})
