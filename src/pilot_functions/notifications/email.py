"""Transactional email: Resend client and the shared HTML shell.

Every template is rendered twice, as HTML for capable clients and as a
plain-text twin.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from pilot_functions.config import settings
from pilot_functions.errors import UpstreamError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

# ── templates ─────────────────────────────────────────────────────────

_SHELL = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta name="color-scheme" content="light dark">
  <title>Pilot</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f5f5f5; font-family: {font};">
  <div style="display: none; max-height: 0; overflow: hidden;">{preheader}</div>
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" border="0">
    <tr><td align="center" style="padding: 40px 16px;">
      <table role="presentation" width="600" cellpadding="0" cellspacing="0" border="0"
             style="background-color: #ffffff; border: 1px solid #e5e5e5; border-radius: 8px;">
        <tr><td style="padding: 40px;">
{content}
        </td></tr>
        <tr><td style="padding: 24px 40px; border-top: 1px solid #e5e5e5;">
          <p style="margin: 0; font-size: 13px; color: #737373;">&copy; {year} Pilot</p>
          {footer}
        </td></tr>
      </table>
    </td></tr>
  </table>
</body>
</html>"""

_FONT = "-apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif"

_HEADING = '<h1 style="margin: 0 0 16px 0; font-size: 24px; font-weight: 600; color: #171717;">{text}</h1>'
_PARAGRAPH = '<p style="margin: 0 0 16px 0; font-size: 16px; line-height: 1.6; color: {color};">{text}</p>'
_BUTTON = (
    '<a href="{url}" target="_blank" style="display: inline-block; background-color: #171717; color: #ffffff; '
    'font-size: 14px; font-weight: 600; text-decoration: none; padding: 12px 24px; border-radius: 6px;">{text}</a>'
)
_UNSUBSCRIBE = (
    '<p style="margin: 8px 0 0 0; font-size: 13px; color: #737373;">'
    '<a href="{url}" style="color: #737373;">Manage notification preferences</a></p>'
)


@dataclass
class Paragraph:
    """Body paragraph.  *text* is plain text; *html* overrides it in the HTML rendering."""

    text: str
    muted: bool = False
    html: str | None = None


@dataclass
class RenderedEmail:
    html: str
    text: str


def render_email(
    heading: str,
    paragraphs: list[Paragraph],
    *,
    button: tuple[str, str] | None = None,
    preheader: str = "",
    unsubscribe_url: str | None = None,
) -> RenderedEmail:
    """Render the Pilot email shell.

    Parameters
    ----------
    heading:
        Title line.
    paragraphs:
        Body paragraphs in order.
    button:
        Optional ``(label, url)`` call to action.
    preheader:
        Inbox preview text.
    unsubscribe_url:
        Adds a "Manage notification preferences" footer link.
    """
    blocks = [_HEADING.format(text=html.escape(heading))]
    for p in paragraphs:
        blocks.append(
            _PARAGRAPH.format(color="#737373" if p.muted else "#171717", text=p.html or html.escape(p.text))
        )
    if button:
        blocks.append(_BUTTON.format(text=html.escape(button[0]), url=html.escape(button[1], quote=True)))

    year = datetime.now(timezone.utc).year
    rendered_html = _SHELL.format(
        font=_FONT,
        preheader=html.escape(preheader),
        content="\n".join(blocks),
        year=year,
        footer=_UNSUBSCRIBE.format(url=html.escape(unsubscribe_url, quote=True)) if unsubscribe_url else "",
    )

    lines = [heading, ""]
    for p in paragraphs:
        lines += [p.text, ""]
    if button:
        lines += [f"{button[0]}: {button[1]}", ""]
    lines += ["---", f"© {year} Pilot"]
    if unsubscribe_url:
        lines.append(f"Manage notification preferences: {unsubscribe_url}")
    return RenderedEmail(html=rendered_html, text="\n".join(lines))


# ── delivery ──────────────────────────────────────────────────────────


class ResendClient:
    """Minimal client for Resend's ``POST /emails``.

    Parameters
    ----------
    api_key:
        Resend API key (``settings.resend_api_key`` by default).
    session:
        Optional ``requests.Session``.
    """

    def __init__(self, api_key: str | None = None, *, session: requests.Session | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self._http = session or requests

    def send(
        self,
        to: str | list[str],
        subject: str,
        email: RenderedEmail,
        *,
        sender: str | None = None,
        reply_to: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send one message and return Resend's response (``{"id": ...}``)."""
        if not self.api_key:
            raise UpstreamError("RESEND_API_KEY not configured")

        payload: dict[str, Any] = {
            "from": sender or settings.email_from,
            "to": [to] if isinstance(to, str) else to,
            "subject": subject,
            "html": email.html,
            "text": email.text,
        }
        if reply_to:
            payload["reply_to"] = reply_to
        if tags:
            payload["tags"] = [{"name": k, "value": v} for k, v in tags.items()]

        try:
            resp = self._http.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=settings.request_timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Email delivery failed: {exc}") from exc
        if not resp.ok:
            raise UpstreamError(f"Email delivery failed: {resp.status_code} {resp.text[:200]}")

        data = resp.json()
        logger.info("Email %r sent to %s (id=%s)", subject, payload["to"], data.get("id"))
        return data
