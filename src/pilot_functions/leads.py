"""``create-widget-lead`` — lead capture from the embedded chat widget.

Bots get a normal-looking 200 with a sentinel ``leadId`` instead of an
error, so they cannot tell they were filtered.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pilot_functions.config import settings
from pilot_functions.errors import InvalidRequestError, NotFoundError, RowStoreError, UpstreamError
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Conversation, Filter, Lead, utcnow_iso

logger = logging.getLogger(__name__)

LEADS = "leads"
CONVERSATIONS = "conversations"
AGENTS = "agents"

SPAM_BLOCKED = "spam-blocked"
RATE_LIMITED = "rate-limited"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class TTLRateLimiter:
    """Sliding-window counter per key, held in process memory.

    Best effort only: state is per worker and resets on restart.  The
    durable check is the "same email in the last minute" query.

    Parameters
    ----------
    limit:
        Hits allowed per key inside the window.
    window_seconds:
        Window length.
    clock:
        Monotonic time source.
    """

    def __init__(self, limit: int, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        """Record a hit for *key*; ``False`` once the window is full."""
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            return True

    def _sweep(self, now: float) -> None:
        # keys whose newest hit has left the window hold no state worth keeping
        for idle in [k for k, v in self._hits.items() if not v or now - v[-1] >= self.window_seconds]:
            del self._hits[idle]
        self._last_sweep = now


def parse_user_agent(user_agent: str | None) -> dict[str, str]:
    """Coarse ``device``/``browser``/``os`` from a User-Agent header."""
    if not user_agent:
        return {"device": "unknown", "browser": "unknown", "os": "unknown"}
    ua = user_agent.lower()

    device = "desktop"
    if "mobile" in ua:
        device = "mobile"
    elif "tablet" in ua or "ipad" in ua:
        device = "tablet"

    browser = "unknown"
    if "chrome" in ua and "edge" not in ua:
        browser = "Chrome"
    elif "safari" in ua and "chrome" not in ua:
        browser = "Safari"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "edge" in ua:
        browser = "Edge"

    os_name = "unknown"
    if "windows" in ua:
        os_name = "Windows"
    elif "macintosh" in ua or "mac os" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    elif "android" in ua:
        os_name = "Android"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "iOS"

    return {"device": device, "browser": browser, "os": os_name}


@dataclass
class RequestContext:
    ip_address: str = "unknown"
    country: str = "unknown"
    user_agent: str | None = None
    referer: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> RequestContext:
        forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
        return cls(
            ip_address=headers.get("cf-connecting-ip") or forwarded or headers.get("x-real-ip") or "unknown",
            country=headers.get("cf-ipcountry") or "unknown",
            user_agent=headers.get("user-agent"),
            referer=headers.get("referer"),
        )


_ip_limiter = TTLRateLimiter(settings.lead_rate_limit_per_minute)


class LeadCaptureService:
    """Create a conversation and a lead for a widget contact form.

    Parameters
    ----------
    store:
        Row store.
    limiter:
        Per-IP limiter; the process-wide one when *None*.
    now_ms:
        Wall clock in epoch milliseconds (the widget sends ``_formLoadTime``
        in the same unit).
    """

    def __init__(
        self,
        store: RowStoreBase,
        limiter: TTLRateLimiter | None = None,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.store = store
        self.limiter = limiter or _ip_limiter
        self.now_ms = now_ms

    def _recently_submitted(self, email: str) -> bool:
        one_minute_ago = datetime.fromtimestamp(self.now_ms() / 1000 - 60, tz=timezone.utc).isoformat()
        recent = self.store.select(
            LEADS,
            [Filter.equals("email", email), Filter.at_least("created_at", one_minute_ago)],
            columns="id",
            limit=1,
        )
        return bool(recent)

    def create(
        self,
        agent_id: str | None,
        first_name: str | None,
        last_name: str | None,
        email: str | None,
        custom_fields: dict[str, Any] | None = None,
        form_load_time: int | None = None,
        context: RequestContext | None = None,
    ) -> dict[str, Any]:
        """Returns ``{"leadId", "conversationId"}``."""
        context = context or RequestContext()

        if form_load_time:
            elapsed = self.now_ms() - form_load_time
            if elapsed < settings.min_form_time_ms:
                logger.info("Spam detected: form submitted too fast (%dms)", elapsed)
                return {"leadId": SPAM_BLOCKED, "conversationId": None}

        if not agent_id or not first_name or not last_name or not email:
            raise InvalidRequestError("Missing required fields")
        if not _EMAIL_RE.match(email):
            raise InvalidRequestError("Invalid email format")

        first = str(first_name).strip()[:50]
        last = str(last_name).strip()[:50]
        clean_email = str(email).strip().lower()[:255]

        agent = self.store.get(AGENTS, agent_id, columns="id,user_id")
        if agent is None:
            raise NotFoundError("Agent not found")

        if not self.limiter.allow(context.ip_address) or self._recently_submitted(clean_email):
            logger.info("Rate limit: %s / %s submitted recently", context.ip_address, clean_email)
            return {"leadId": RATE_LIMITED, "conversationId": None}

        full_name = f"{first} {last}"
        metadata: dict[str, Any] = {
            "ip_address": context.ip_address,
            "country": context.country,
            **parse_user_agent(context.user_agent),
            "referer_url": context.referer,
            "session_started_at": utcnow_iso(),
            "lead_name": full_name,
            "lead_email": clean_email,
            "custom_fields": custom_fields or {},
            "tags": [],
            "messages_count": 0,
        }

        conversation_id = None
        try:
            conversation = Conversation(agent_id=agent_id, user_id=agent["user_id"], metadata=metadata)
            conversation_id = self.store.insert(CONVERSATIONS, conversation.to_row())[0]["id"]
        except RowStoreError as exc:
            # the lead is still worth keeping without a conversation
            logger.error("Error creating conversation: %s", exc.message)

        extra = {k: v for k, v in (custom_fields or {}).items() if k != "_formLoadTime"}
        lead = Lead(
            user_id=agent["user_id"],
            name=full_name,
            email=clean_email,
            data={"firstName": first, "lastName": last, **extra},
            conversation_id=conversation_id,
        )
        try:
            lead_row = self.store.insert(LEADS, lead.to_row())[0]
        except RowStoreError as exc:
            logger.error("Error creating lead: %s", exc.message)
            raise UpstreamError("Failed to create lead") from exc

        if conversation_id:
            self.store.update_by_id(CONVERSATIONS, conversation_id, {"metadata": {**metadata, "lead_id": lead_row["id"]}})

        logger.info("Lead created: %s, conversation: %s", lead_row["id"], conversation_id)
        return {"leadId": lead_row["id"], "conversationId": conversation_id}
