"""
dreamlight.errors — Service-layer exceptions
=============================================

Services raise these; the API maps each one onto its HTTP status and a
``{"error": message}`` body (see :mod:`dreamlight.api.main`).
"""

from __future__ import annotations

from typing import Any


class PanelError(Exception):
    """Base error for Dreamlight services."""

    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class ValidationError(PanelError):
    """Bad input: missing fields, failed form validation, invalid action."""

    status_code = 400


class AuthError(PanelError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class ForbiddenError(PanelError):
    """Authenticated, but not allowed to do this."""

    status_code = 403


class NotFoundError(PanelError):
    status_code = 404


class ConflictError(PanelError):
    """Duplicate row or a state that forbids the change."""

    status_code = 409


class RateLimitedError(PanelError):
    status_code = 429


class UpstreamError(PanelError):
    """A third-party API (Discord, Stripe, Resend, Twitch, FiveM) failed."""

    status_code = 502
