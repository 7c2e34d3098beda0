"""``send-team-invitation`` and ``send-new-lead-email``."""

from __future__ import annotations

import html
import logging
import re
from typing import Any
from urllib.parse import quote

from pilot_functions.config import settings
from pilot_functions.errors import InvalidRequestError, RowStoreError
from pilot_functions.notifications.email import Paragraph, RenderedEmail, ResendClient, render_email
from pilot_functions.store.base import RowStoreBase

logger = logging.getLogger(__name__)

PENDING_INVITATIONS = "pending_invitations"
NOTIFICATIONS = "notifications"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _log_security_event(
    store: RowStoreBase,
    user_id: str,
    action: str,
    resource_type: str,
    resource_id: str,
    details: dict[str, Any],
) -> None:
    try:
        store.rpc(
            "log_security_event",
            {
                "p_user_id": user_id,
                "p_action": action,
                "p_resource_type": resource_type,
                "p_resource_id": resource_id,
                "p_success": True,
                "p_details": details,
            },
        )
    except RowStoreError as exc:
        logger.error("Could not log security event %s: %s", action, exc.message)


# ── team invitation ───────────────────────────────────────────────────


def team_invitation_email(invited_by: str, company_name: str, signup_url: str, unsubscribe_url: str) -> RenderedEmail:
    return render_email(
        f"You're invited to join {company_name}",
        [
            Paragraph(f"{invited_by} has invited you to collaborate on Pilot as part of {company_name}."),
            Paragraph(
                "Pilot helps teams manage conversations, leads, and customer interactions "
                "with AI-powered assistance.",
                muted=True,
            ),
            Paragraph("If you weren't expecting this invitation, you can safely ignore this email.", muted=True),
        ],
        button=("Accept Invitation", signup_url),
        preheader=f"{invited_by} invited you to join {company_name} on Pilot",
        unsubscribe_url=unsubscribe_url,
    )


def send_team_invitation(
    store: RowStoreBase,
    resend: ResendClient,
    email: str | None,
    invited_by: str | None,
    company_name: str | None = None,
    *,
    caller_id: str | None = None,
) -> dict[str, Any]:
    """Email an invitation and, for a known caller, record it as pending.

    The bookkeeping rows (pending invitation, in-app notification, audit
    event) are best effort: the email has already gone out.
    """
    if not email or not invited_by:
        raise InvalidRequestError("email and invitedBy are required")
    if not _EMAIL_RE.match(email):
        raise InvalidRequestError("Invalid email format")

    logger.info("Sending team invitation to %s, invited by %s", email, invited_by)
    signup_url = f"{settings.app_url}/auth?tab=signup&email={quote(email, safe='')}"
    unsubscribe_url = f"{settings.app_url}/settings?tab=notifications#team-emails"
    rendered = team_invitation_email(invited_by, company_name or "your team", signup_url, unsubscribe_url)
    resend.send(
        email,
        f"{invited_by} invited you to join {company_name or 'their team'} on Pilot",
        rendered,
        reply_to="team@getpilot.io",
    )

    if caller_id:
        try:
            store.insert(
                PENDING_INVITATIONS,
                {
                    "email": email,
                    "invited_by": caller_id,
                    "invited_by_name": invited_by,
                    "company_name": company_name,
                    "status": "pending",
                },
            )
            store.insert(
                NOTIFICATIONS,
                {
                    "user_id": caller_id,
                    "type": "team",
                    "title": "Team Invitation Sent",
                    "message": f"Invitation sent to {email}",
                    "data": {"invited_email": email},
                    "read": False,
                },
            )
        except RowStoreError as exc:
            logger.error("Error recording invitation for %s: %s", email, exc.message)
        _log_security_event(
            store,
            caller_id,
            "team_invitation_sent",
            "team",
            email,
            {"email": email, "invited_by": invited_by, "company_name": company_name},
        )

    return {"success": True, "message": "Team invitation sent successfully", "email": email}


# ── new lead ──────────────────────────────────────────────────────────


def new_lead_email(
    lead_name: str,
    lead_email: str | None,
    lead_phone: str | None,
    message: str | None,
    view_url: str,
    unsubscribe_url: str,
    source: str = "Ari Agent",
) -> RenderedEmail:
    details = [f"Name: {lead_name}"]
    if lead_email:
        details.append(f"Email: {lead_email}")
    if lead_phone:
        details.append(f"Phone: {lead_phone}")
    details.append(f"Source: {source}")

    paragraphs = [
        Paragraph("View the lead to see more details."),
        Paragraph("\n".join(details), html="<br>".join(html.escape(d) for d in details)),
    ]
    if message:
        paragraphs.append(Paragraph(f'Message: "{message}"', muted=True))
    return render_email(
        "You have a new lead",
        paragraphs,
        button=("View Lead", view_url),
        preheader=f"New lead: {lead_name} from {source}",
        unsubscribe_url=unsubscribe_url,
    )


def send_new_lead_email(
    store: RowStoreBase,
    resend: ResendClient,
    recipient_email: str | None,
    lead_name: str | None,
    lead_id: str | None,
    *,
    lead_email: str | None = None,
    lead_phone: str | None = None,
    message: str | None = None,
    caller_id: str | None = None,
) -> dict[str, Any]:
    if not recipient_email or not lead_name or not lead_id:
        raise InvalidRequestError("Missing required fields: recipientEmail, leadName, leadId")

    logger.info("Sending new lead email to %s, lead %s (%s)", recipient_email, lead_name, lead_id)
    rendered = new_lead_email(
        lead_name,
        lead_email,
        lead_phone,
        message,
        f"{settings.app_url}/leads?id={lead_id}",
        f"{settings.app_url}/settings?tab=notifications#lead-emails",
    )
    resend.send(
        recipient_email,
        f"New lead: {lead_name} via Ari Agent",
        rendered,
        sender="Pilot <leads@getpilot.io>",
        reply_to=lead_email or "team@getpilot.io",
    )

    if caller_id:
        _log_security_event(
            store,
            caller_id,
            "new_lead_email_sent",
            "lead",
            lead_id,
            {"recipient": recipient_email, "lead_name": lead_name, "lead_email": lead_email},
        )
    return {"success": True, "message": "New lead email sent successfully", "leadId": lead_id}
