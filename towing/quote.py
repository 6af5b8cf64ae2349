"""
Client for the external "compute quote" pricing function.

The function is called with a bearer credential. A 401 answer triggers one
credential refresh and a single retry before the call fails for good.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

import requests
from django.conf import settings

LOGGER = logging.getLogger(__name__)

_JWT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")


class QuoteError(Exception):
    """Base class for quote failures."""


class AuthenticationError(QuoteError):
    """No valid credential could be obtained, or it was rejected after a refresh."""


class UpstreamError(QuoteError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidResponseError(QuoteError):
    """The pricing function answered, but without usable route figures."""


def looks_like_jwt(value: object) -> bool:
    return isinstance(value, str) and bool(_JWT_PATTERN.match(value))


class Credentials:
    """
    Bearer credential source handed to the client explicitly.

    ``refresher`` is called when the backend rejects the current token and
    should return a fresh one (or None when the session cannot be renewed).
    """

    def __init__(self, token: Optional[str], refresher: Optional[Callable[[], Optional[str]]] = None):
        self._token = token
        self._refresher = refresher

    def get_token(self, force_refresh: bool = False) -> Optional[str]:
        if not force_refresh and looks_like_jwt(self._token):
            return self._token
        if self._refresher is None:
            return None
        try:
            refreshed = self._refresher()
        except Exception as error:  # the refresher belongs to the auth provider
            LOGGER.warning("Credential refresh failed: %s", error)
            return None
        if looks_like_jwt(refreshed):
            self._token = refreshed
            return refreshed
        return None


@dataclass(frozen=True)
class Quote:
    distance_km: float
    duration_seconds: int
    eta_min: int
    amount: Decimal
    polyline: Optional[str] = None
    agency_id: Optional[int] = None

    def as_dict(self) -> Dict:
        return {
            "distance_km": round(self.distance_km, 2),
            "duration_seconds": self.duration_seconds,
            "eta_min": self.eta_min,
            "amount": self.amount,
            "polyline": self.polyline,
            "agency_id": self.agency_id,
        }


def _number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_quote(payload: Optional[Dict]) -> Quote:
    """
    Turn the raw function payload into a Quote.

    Distance and amount are critical; duration, ETA and polyline fall back to
    defaults instead of failing the call.
    """
    if not isinstance(payload, dict):
        raise InvalidResponseError("Quote response is not a JSON object.")

    distance_km = _number(payload.get("distance_km", payload.get("distancia_km")))
    if distance_km is None or distance_km <= 0:
        raise InvalidResponseError("Distance could not be computed for this route.")

    amount = _number(payload.get("amount"))
    if amount is None or amount < 0:
        raise InvalidResponseError("Quote response has no valid amount.")

    duration = _number(payload.get("duration_seconds"))
    duration_seconds = int(round(duration)) if duration is not None and duration > 0 else 0

    eta = _number(payload.get("eta_min"))
    if eta is not None and eta > 0:
        eta_min = int(math.ceil(eta))
    else:
        eta_min = max(1, int(round(duration_seconds / 60)))

    polyline = payload.get("polyline")
    if not isinstance(polyline, str) or not polyline:
        polyline = None

    agency_id = payload.get("agency_id")
    try:
        agency_id = int(agency_id) if agency_id is not None else None
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring non-numeric agency_id in quote response: %r", agency_id)
        agency_id = None

    return Quote(
        distance_km=distance_km,
        duration_seconds=duration_seconds,
        eta_min=eta_min,
        amount=Decimal(str(round(amount, 2))),
        polyline=polyline,
        agency_id=agency_id,
    )


class QuoteClient:
    def __init__(
        self,
        credentials: Credentials,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        config = getattr(settings, "QUOTE_CONFIG", {})
        self.credentials = credentials
        self.url = url or config.get("url", "")
        self.api_key = api_key if api_key is not None else config.get("api_key", "")
        self.timeout = timeout if timeout is not None else config.get("timeout_seconds", 10)
        self.session = session or requests.Session()

    def compute_quote(
        self,
        origin_lat: float,
        origin_lng: float,
        destination_lat: float,
        destination_lng: float,
    ) -> Quote:
        token = self.credentials.get_token()
        if not token:
            raise AuthenticationError("Session expired. Please sign in again.")
        if not self.url:
            raise UpstreamError("Quote function URL is not configured.")

        body = {
            "origem_lat": origin_lat,
            "origem_lng": origin_lng,
            "destino_lat": destination_lat,
            "destino_lng": destination_lng,
        }

        response = self._post(token, body)
        if response.status_code == 401:
            LOGGER.info("Quote function returned 401, refreshing credential and retrying once")
            fresh = self.credentials.get_token(force_refresh=True)
            if not fresh:
                raise AuthenticationError("Session expired. Please sign in again.")
            response = self._post(fresh, body)
            if response.status_code == 401:
                raise AuthenticationError("Credential rejected after refresh.")

        text = response.text
        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError:
            payload = None

        if not 200 <= response.status_code < 300:
            message = None
            if isinstance(payload, dict):
                message = payload.get("error") or payload.get("message")
            message = message or f"Quote function error ({response.status_code})"
            LOGGER.error("Quote function failed with %s: %s", response.status_code, text[:200])
            raise UpstreamError(message, status_code=response.status_code)

        quote = normalize_quote(payload)
        LOGGER.info(
            "Quoted %.2f km / %ss for (%s, %s) -> (%s, %s)",
            quote.distance_km, quote.duration_seconds,
            origin_lat, origin_lng, destination_lat, destination_lng,
        )
        return quote

    def _post(self, token: str, body: Dict) -> requests.Response:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            return self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as error:
            LOGGER.error("Error calling quote function: %s", error)
            raise UpstreamError("Error contacting the quote function.") from error
