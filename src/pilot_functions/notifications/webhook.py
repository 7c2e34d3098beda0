"""``resend-webhook`` — delivery events posted by the email provider.

Resend signs webhooks the Svix way: ``svix-id``, ``svix-timestamp`` and
``svix-signature`` headers, where the signature is
``base64(HMAC-SHA256(secret, f"{id}.{timestamp}.{body}"))`` and the
secret is the base64 part of ``whsec_...``.  The signature header may
carry several space-separated ``v1,<sig>`` entries during key rotation.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Mapping

from pilot_functions.errors import InvalidRequestError, UnauthorizedError, UpstreamError
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Filter, utcnow_iso

logger = logging.getLogger(__name__)

EMAIL_EVENTS = "email_events"
TOLERANCE_SECONDS = 5 * 60

# event type -> (status, timestamp column)
TRACKED_EVENTS = {
    "email.delivered": ("delivered", "delivered_at"),
    "email.bounced": ("bounced", "bounced_at"),
    "email.complained": ("complained", "complained_at"),
    "email.opened": ("opened", "opened_at"),
    "email.clicked": ("clicked", "clicked_at"),
}


def _secret_bytes(secret: str) -> bytes:
    raw = secret.split("_", 1)[1] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw)
    except (binascii.Error, ValueError) as exc:
        raise UpstreamError("Webhook secret is not valid base64") from exc


def sign(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """``v1,<base64 signature>`` for one message."""
    signed = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: float | None = None,
) -> None:
    """Raise :class:`UnauthorizedError` unless *body* carries a valid, fresh signature."""
    if not secret:
        raise UpstreamError("RESEND_WEBHOOK_SECRET not configured")

    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signatures = headers.get("svix-signature")
    if not msg_id or not timestamp or not signatures:
        raise UnauthorizedError("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise UnauthorizedError("Invalid webhook timestamp") from exc
    if abs((now if now is not None else time.time()) - sent_at) > TOLERANCE_SECONDS:
        raise UnauthorizedError("Webhook timestamp outside tolerance")

    expected = sign(secret, msg_id, timestamp, body)
    for candidate in signatures.split():
        if hmac.compare_digest(candidate, expected):
            return
    raise UnauthorizedError("Invalid webhook signature")


def handle_event(store: RowStoreBase, payload: dict[str, Any]) -> dict[str, Any]:
    """Apply one verified event to ``email_events``.

    Unknown event types are acknowledged without touching any row.
    """
    event_type = payload.get("type")
    data = payload.get("data") or {}
    email_id = data.get("email_id")
    if event_type not in TRACKED_EVENTS:
        logger.info("Ignoring email event type %s", event_type)
        return {"received": True, "handled": False, "type": event_type}
    if not email_id:
        raise InvalidRequestError("Event payload has no email_id")

    status, column = TRACKED_EVENTS[event_type]
    occurred_at = payload.get("created_at") or utcnow_iso()
    values = {"status": status, column: occurred_at, "last_event": event_type}
    if event_type == "email.bounced":
        values["bounce_reason"] = (data.get("bounce") or {}).get("message")

    updated = store.update(EMAIL_EVENTS, values, [Filter.equals("email_id", email_id)])
    if not updated:
        to = data.get("to")
        store.insert(
            EMAIL_EVENTS,
            {
                "email_id": email_id,
                "recipient": to[0] if isinstance(to, list) and to else to,
                "subject": data.get("subject"),
                **values,
            },
        )
    logger.info("Recorded %s for email %s", event_type, email_id)
    return {"received": True, "handled": True, "type": event_type}


def process_webhook(store: RowStoreBase, secret: str, headers: Mapping[str, str], body: bytes) -> dict[str, Any]:
    verify_signature(secret, headers, body)
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidRequestError("Invalid JSON payload") from exc
    return handle_event(store, payload)
