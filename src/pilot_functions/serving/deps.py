"""FastAPI dependencies shared by the function routes."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from functools import lru_cache
from typing import Any

from fastapi import Header

from pilot_functions.ingestion.embedder import Embedder
from pilot_functions.notifications.email import ResendClient

logger = logging.getLogger(__name__)


def decode_jwt_claims(token: str) -> dict[str, Any]:
    """Claims of a JWT *without* verifying it.

    The gateway in front of the functions has already verified the
    token; this only reads it.  Malformed tokens yield ``{}``.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError):
        logger.info("Ignoring malformed bearer token")
        return {}
    return claims if isinstance(claims, dict) else {}


def caller_id(authorization: str | None = Header(default=None)) -> str | None:
    """``sub`` claim of the bearer token, or ``None`` for anonymous calls."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    sub = decode_jwt_claims(authorization[7:].strip()).get("sub")
    return sub if isinstance(sub, str) and sub else None


@lru_cache(maxsize=1)
def get_embedder() -> Embedder:
    return Embedder()


def get_resend() -> ResendClient:
    return ResendClient()
