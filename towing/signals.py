"""
Best-effort change feed for request rows.

Queryset updates bypass ``post_save``, so every lifecycle and dispatch write
announces itself here with the request id and its new status.
"""
import logging

from django.dispatch import Signal

logger = logging.getLogger(__name__)

request_changed = Signal()


def announce_request_change(request_id, status):
    responses = request_changed.send_robust(sender=None, request_id=request_id, status=status)
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.warning("Change feed receiver %r failed for request %s: %s", receiver, request_id, response)
