"""
dreamlight.services.email_service — Transactional Email via Resend
===================================================================

A thin async client over ``POST https://api.resend.com/emails`` plus the
handful of messages the panel sends.  Staff can override any message by
saving an ``email_templates`` row with the same ``template_type``;
``{{name}}`` placeholders are filled from the send context.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from dreamlight.database.engine import run_db
from dreamlight.database.models import EmailTemplate
from dreamlight.errors import UpstreamError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ResendClient:
    """Minimal Resend API client."""

    def __init__(
        self,
        api_key: str,
        *,
        sender: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self._transport = transport

    async def send(self, to: str | list[str], subject: str, html: str) -> dict:
        recipients = [to] if isinstance(to, str) else list(to)
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            resp = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"from": self.sender, "to": recipients, "subject": subject, "html": html},
            )
        if resp.status_code >= 300:
            raise UpstreamError(
                f"Email send failed: {resp.status_code} - {resp.text}",
            )
        return resp.json()


def get_mailer(sender: str) -> ResendClient | None:
    """Build a client from ``RESEND_API_KEY``; ``None`` when unset."""
    api_key = os.getenv("RESEND_API_KEY", "").strip()
    if not api_key:
        return None
    return ResendClient(api_key, sender=sender)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def render_template(text: str, context: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names render empty."""
    def _sub(match: re.Match) -> str:
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, text)


@dataclass(frozen=True, slots=True)
class Message:
    subject: str
    html: str


BUILTIN_TEMPLATES: dict[str, Message] = {
    "email_verification": Message(
        subject="Verify your {{community_name}} account",
        html=(
            "<h2>Welcome, {{username}}!</h2>"
            "<p>Confirm your email address to finish creating your account:</p>"
            '<p><a href="{{verify_url}}">Verify email</a></p>'
            "<p>This link expires in 24 hours.</p>"
        ),
    ),
    "missed_chat": Message(
        subject="Missed live chat from {{visitor_name}}",
        html=(
            "<h2>A visitor waited {{wait_minutes}} minutes without a reply</h2>"
            "<p><strong>Name:</strong> {{visitor_name}}<br>"
            "<strong>Email:</strong> {{visitor_email}}</p>"
            "<p>Follow up from the staff dashboard.</p>"
        ),
    ),
    "application_approved": Message(
        subject="Your {{community_name}} application was approved",
        html=(
            "<h2>Congratulations, {{username}}!</h2>"
            "<p>Your {{application_type}} application has been approved.</p>"
            "<p>{{review_notes}}</p>"
        ),
    ),
    "application_rejected": Message(
        subject="Update on your {{community_name}} application",
        html=(
            "<h2>Hi {{username}},</h2>"
            "<p>Unfortunately your {{application_type}} application was not accepted this time.</p>"
            "<p>{{review_notes}}</p>"
        ),
    ),
    "application_under_review": Message(
        subject="Your {{community_name}} application is under review",
        html=(
            "<h2>Hi {{username}},</h2>"
            "<p>Staff are now reviewing your {{application_type}} application.</p>"
        ),
    ),
    "password_reset": Message(
        subject="Reset your {{community_name}} password",
        html=(
            "<h2>Hi {{username}},</h2>"
            "<p>Someone asked to reset the password for your account.</p>"
            '<p><a href="{{reset_url}}">Choose a new password</a></p>'
            "<p>This link expires in 24 hours. If you did not ask for it, ignore this email.</p>"
        ),
    ),
    "account_banned": Message(
        subject="Your {{community_name}} account has been suspended",
        html="<p>Your account has been suspended.</p><p>Reason: {{reason}}</p>",
    ),
}


def resolve_template(engine, template_type: str) -> Message | None:
    """Staff-edited template if one is active, else the built-in default."""
    with Session(engine) as session:
        row = session.scalars(
            select(EmailTemplate).where(
                EmailTemplate.template_type == template_type,
                EmailTemplate.is_active.is_(True),
            )
        ).first()
        if row is not None:
            return Message(subject=row.subject, html=row.body)
    return BUILTIN_TEMPLATES.get(template_type)


async def send_templated(
    engine,
    mailer: ResendClient | None,
    template_type: str,
    to: str,
    context: dict[str, Any],
) -> bool:
    """Render and send *template_type*.  Returns ``False`` if not sent.

    Raises :class:`UpstreamError` when Resend rejects the request.
    """
    if mailer is None:
        logger.info("Email not configured, skipping %s to %s", template_type, to)
        return False

    message = await run_db(resolve_template, engine, template_type)
    if message is None:
        logger.info("No email template for %s", template_type)
        return False
    await mailer.send(
        to,
        render_template(message.subject, context),
        render_template(message.html, context),
    )
    return True
