"""``send-push-notification`` — Web Push to every device a user subscribed."""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from pywebpush import WebPushException, webpush

from pilot_functions.config import settings
from pilot_functions.errors import InvalidRequestError, UpstreamError
from pilot_functions.store.base import Row, RowStoreBase
from pilot_functions.store.models import Filter

logger = logging.getLogger(__name__)

PUSH_SUBSCRIPTIONS = "push_subscriptions"
PUSH_TTL_SECONDS = 24 * 60 * 60
EXPIRED = "subscription_expired"
MAX_WORKERS = 8


@dataclass
class PushMessage:
    user_id: str
    title: str
    body: str
    url: str | None = None
    icon: str | None = None
    badge: str | None = None
    tag: str | None = None
    data: dict[str, Any] | None = None

    def payload(self) -> str:
        return json.dumps(
            {
                "title": self.title,
                "body": self.body,
                "icon": self.icon or "/notification-icon-192.png",
                "badge": self.badge or "/notification-badge-96.png",
                "tag": self.tag,
                "data": {"url": self.url or "/", **(self.data or {})},
            }
        )


class PushSender:
    """Deliver a :class:`PushMessage` and prune dead subscriptions.

    Parameters
    ----------
    store:
        Row store holding ``push_subscriptions``.
    send:
        ``pywebpush.webpush`` compatible callable.
    """

    def __init__(self, store: RowStoreBase, send: Callable[..., Any] = webpush) -> None:
        self.store = store
        self._send = send

    def _deliver(self, subscription: Row, data: str) -> str | None:
        """``None`` on success, otherwise an error tag."""
        try:
            self._send(
                subscription_info={
                    "endpoint": subscription["endpoint"],
                    "keys": {"p256dh": subscription["p256dh"], "auth": subscription["auth"]},
                },
                data=data,
                vapid_private_key=settings.vapid_private_key,
                vapid_claims={"sub": settings.vapid_subject},
                ttl=PUSH_TTL_SECONDS,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            logger.error("Push failed for %s: %s", subscription["endpoint"], exc)
            if status in (404, 410):
                return EXPIRED
            return f"HTTP {status}" if status else str(exc)
        return None

    def send(self, message: PushMessage) -> dict[str, Any]:
        """Returns ``{"sent", "total", "expired"}``."""
        if not (settings.vapid_public_key and settings.vapid_private_key and settings.vapid_subject):
            raise UpstreamError("Push notifications not configured")
        if not message.user_id or not message.title or not message.body:
            raise InvalidRequestError("Missing required fields: user_id, title, body")

        subscriptions = self.store.select(
            PUSH_SUBSCRIPTIONS, [Filter.equals("user_id", message.user_id)], columns="id,user_id,endpoint,p256dh,auth"
        )
        if not subscriptions:
            logger.info("No push subscriptions found for user %s", message.user_id)
            return {"sent": 0, "total": 0, "expired": 0, "message": "No subscriptions found"}

        logger.info("Sending push to %d subscription(s) for user %s", len(subscriptions), message.user_id)
        data = message.payload()
        with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(subscriptions))) as pool:
            errors = list(pool.map(lambda sub: self._deliver(sub, data), subscriptions))

        expired = [sub["endpoint"] for sub, error in zip(subscriptions, errors) if error == EXPIRED]
        if expired:
            logger.info("Cleaning up %d expired subscription(s)", len(expired))
            self.store.delete(PUSH_SUBSCRIPTIONS, [Filter.one_of("endpoint", expired)])

        return {"sent": sum(1 for e in errors if e is None), "total": len(subscriptions), "expired": len(expired)}
