"""
dreamlight.services.auth_service — Accounts, Passwords & Sessions
==================================================================

Email/password accounts with opaque bearer session tokens stored in
``user_sessions``.  New passwords are hashed with bcrypt; two legacy
formats imported from the previous site are still accepted and are
upgraded to bcrypt on the next successful login:

* 64-char hex SHA-256 of the password (or of password + email), and
* base64 of ``salt(32) || PBKDF2-SHA256(password, salt, 100000)(32)``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import ipaddress
import logging
import secrets
from datetime import timedelta
from typing import Any

import bcrypt
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from dreamlight.constants import (
    OAUTH_STATE_TTL_SECONDS,
    RESET_TOKEN_TTL_HOURS,
    SESSION_TTL_DAYS,
    VERIFICATION_TOKEN_TTL_HOURS,
)
from dreamlight.database.engine import run_db
from dreamlight.database.models import (
    EmailVerificationToken,
    OAuthState,
    PasswordResetToken,
    User,
    UserSession,
    as_utc,
    utcnow,
)
from dreamlight.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
    ValidationError,
)
from dreamlight.services import security_service
from dreamlight.services.audit_service import log_action
from dreamlight.services.email_service import ResendClient, send_templated

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
_HEX_DIGITS = frozenset("0123456789abcdef")


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    """Hash *password* with bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, stored: str | None, email: str | None = None) -> bool:
    """Check *password* against a bcrypt, legacy SHA-256 or PBKDF2 hash."""
    if not stored:
        return False
    raw = password.encode("utf-8")

    if stored.startswith("$2"):
        try:
            return bcrypt.checkpw(raw, stored.encode("utf-8"))
        except ValueError:
            return False

    if len(stored) == 64 and set(stored.lower()) <= _HEX_DIGITS:
        candidates = [hashlib.sha256(raw).hexdigest()]
        if email:
            candidates.append(hashlib.sha256(raw + email.lower().encode("utf-8")).hexdigest())
        return any(hmac.compare_digest(c, stored.lower()) for c in candidates)

    try:
        blob = base64.b64decode(stored, validate=True)
    except (binascii.Error, ValueError):
        return False
    if len(blob) != 64:
        return False
    salt, key = blob[:32], blob[32:]
    derived = hashlib.pbkdf2_hmac("sha256", raw, salt, PBKDF2_ITERATIONS, dklen=32)
    return hmac.compare_digest(derived, key)


def needs_rehash(stored: str) -> bool:
    return not stored.startswith("$2")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def client_ip(forwarded_for: str | None) -> str | None:
    """First ``X-Forwarded-For`` hop if it is a dotted IPv4 address."""
    if not forwarded_for:
        return None
    first = forwarded_for.split(",")[0].strip()
    try:
        return str(ipaddress.IPv4Address(first))
    except ipaddress.AddressValueError:
        return None


def _new_token() -> str:
    return secrets.token_urlsafe(48)


# ---------------------------------------------------------------------------
# Signup & verification
# ---------------------------------------------------------------------------
def create_account(
    engine, email: str, password: str, username: str | None = None,
) -> tuple[dict, str]:
    """Create an unverified account and its verification token."""
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")

    with Session(engine) as session:
        if session.scalar(select(User.id).where(func.lower(User.email) == email)):
            raise ConflictError("User already exists with this email")

        user = User(
            email=email,
            username=(username or email.split("@")[0]).strip(),
            password_hash=hash_password(password),
            email_verified=False,
        )
        session.add(user)
        session.flush()

        token = _new_token()
        session.add(EmailVerificationToken(
            user_id=user.id,
            token=token,
            expires_at=utcnow() + timedelta(hours=VERIFICATION_TOKEN_TTL_HOURS),
        ))
        session.commit()
        logger.info("Account created for %s", email)
        return user.to_public_dict(), token


async def signup(
    engine,
    mailer: ResendClient | None,
    *,
    email: str,
    password: str,
    username: str | None,
    verify_base_url: str,
    community_name: str,
) -> dict:
    """Create the account, then try to send the verification email.

    A failed send is logged; the account still exists and the user can
    ask for the link again.
    """
    user, token = await run_db(create_account, engine, email, password, username)
    email_sent = False
    try:
        email_sent = await send_templated(
            engine,
            mailer,
            "email_verification",
            user["email"],
            {
                "username": user["username"],
                "community_name": community_name,
                "verify_url": f"{verify_base_url.rstrip('/')}/verify-email?token={token}",
            },
        )
    except UpstreamError as exc:
        logger.error("Verification email to %s failed: %s", user["email"], exc.message)
    return {"user": user, "email_sent": email_sent}


def verify_email(engine, token: str) -> dict:
    with Session(engine) as session:
        row = session.scalars(
            select(EmailVerificationToken).where(EmailVerificationToken.token == token)
        ).first()
        if row is None or as_utc(row.expires_at) < utcnow():
            raise ValidationError("Invalid or expired verification token")
        user = session.get(User, row.user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.email_verified = True
        session.delete(row)
        session.commit()
        return user.to_public_dict()


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------
def create_reset_token(
    engine, *, email: str | None = None, user_id: str | None = None,
) -> tuple[dict, str] | None:
    """Issue a fresh reset token, replacing any outstanding one.

    Returns ``None`` when no account matches *email*.  A missing
    *user_id* raises :class:`NotFoundError` since only staff look up by id.
    """
    with Session(engine) as session:
        if user_id is not None:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
        else:
            email = (email or "").strip().lower()
            if not email or "@" not in email:
                raise ValidationError("A valid email address is required")
            user = session.scalars(select(User).where(func.lower(User.email) == email)).first()
            if user is None:
                return None

        session.execute(delete(PasswordResetToken).where(PasswordResetToken.user_id == user.id))
        token = _new_token()
        session.add(PasswordResetToken(
            user_id=user.id,
            token=token,
            expires_at=utcnow() + timedelta(hours=RESET_TOKEN_TTL_HOURS),
        ))
        session.commit()
        return user.to_public_dict(), token


async def _send_reset_email(
    engine,
    mailer: ResendClient | None,
    user: dict,
    token: str,
    *,
    reset_base_url: str,
    community_name: str,
) -> bool:
    try:
        return await send_templated(engine, mailer, "password_reset", user["email"], {
            "username": user["username"],
            "community_name": community_name,
            "reset_url": f"{reset_base_url.rstrip('/')}/auth?reset_token={token}",
        })
    except UpstreamError as exc:
        logger.error("Password reset email to %s failed: %s", user["email"], exc.message)
        return False


async def request_password_reset(
    engine,
    mailer: ResendClient | None,
    email: str,
    *,
    reset_base_url: str,
    community_name: str,
) -> dict:
    """Email a reset link.  The answer is the same whether or not the account exists."""
    issued = await run_db(create_reset_token, engine, email=email)
    if issued is not None:
        user, token = issued
        await _send_reset_email(
            engine, mailer, user, token, reset_base_url=reset_base_url, community_name=community_name,
        )
    return {"success": True, "message": "If that account exists, a reset link has been sent"}


async def admin_reset_password(
    engine,
    mailer: ResendClient | None,
    user_id: str,
    *,
    actor_id: str | None,
    reset_base_url: str,
    community_name: str,
) -> dict:
    """Staff-initiated reset: send the user a link and audit who asked."""
    user, token = await run_db(create_reset_token, engine, user_id=user_id)
    await run_db(
        security_service.log_audit_event,
        engine,
        actor_id=actor_id,
        action="password_reset_requested",
        resource_type="user",
        resource_id=user_id,
    )
    email_sent = await _send_reset_email(
        engine, mailer, user, token, reset_base_url=reset_base_url, community_name=community_name,
    )
    return {"success": True, "email_sent": email_sent}


def reset_password(engine, token: str, new_password: str) -> dict:
    """Set a new password from a reset token and end every open session."""
    if not new_password or len(new_password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    with Session(engine) as session:
        row = session.scalars(
            select(PasswordResetToken).where(PasswordResetToken.token == (token or ""))
        ).first()
        if row is None:
            raise ValidationError("Invalid or missing reset token")
        if as_utc(row.expires_at) < utcnow():
            session.delete(row)
            session.commit()
            raise ValidationError("Reset token has expired")
        user = session.get(User, row.user_id)
        if user is None:
            raise NotFoundError("User not found")

        user.password_hash = hash_password(new_password)
        session.execute(delete(PasswordResetToken).where(PasswordResetToken.user_id == user.id))
        session.execute(delete(UserSession).where(UserSession.user_id == user.id))
        session.commit()
        logger.info("Password reset for %s", user.email)
    return {"success": True, "message": "Password reset successfully"}


# ---------------------------------------------------------------------------
# Login / sessions
# ---------------------------------------------------------------------------
def login(
    engine,
    email: str,
    password: str,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    """Authenticate and open a 7-day session."""
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password are required")
    if security_service.is_ip_blocked(engine, ip_address):
        raise RateLimitedError("Too many failed login attempts. Try again later.")

    with Session(engine) as session:
        user = session.scalars(select(User).where(func.lower(User.email) == email)).first()
        if user is None or not verify_password(password, user.password_hash, user.email):
            session.rollback()
            security_service.track_failed_login(engine, ip_address, email)
            raise AuthError("Invalid email or password")

        if user.banned:
            raise ForbiddenError("Account suspended", banned=True, ban_reason=user.ban_reason)
        if not user.email_verified:
            raise AuthError(
                "Please verify your email before logging in", email_not_verified=True,
            )

        if needs_rehash(user.password_hash):
            user.password_hash = hash_password(password)

        now = utcnow()
        expires = now + timedelta(days=SESSION_TTL_DAYS)
        token = _new_token()
        session.add(UserSession(
            user_id=user.id,
            session_token=token,
            expires_at=expires,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            last_accessed=now,
        ))
        user.last_login = now
        session.commit()
        logger.info("Login: %s", email)
        return {
            "user": user.to_public_dict(),
            "session_token": token,
            "expires_at": expires.isoformat(),
        }


def validate_session(engine, token: str | None) -> dict:
    """Return the session's user dict, touching ``last_accessed``.

    Raises :class:`AuthError` for an unknown or expired token and
    :class:`ForbiddenError` (after deleting the session) for banned users.
    """
    if not token:
        raise AuthError("Missing session token")
    with Session(engine) as session:
        row = session.scalars(
            select(UserSession).where(
                UserSession.session_token == token,
                UserSession.expires_at > utcnow(),
            )
        ).first()
        if row is None:
            raise AuthError("Invalid or expired session")
        user = session.get(User, row.user_id)
        if user is None:
            session.delete(row)
            session.commit()
            raise AuthError("Invalid or expired session")
        if user.banned:
            session.delete(row)
            session.commit()
            raise ForbiddenError("Account suspended", banned=True)
        row.last_accessed = utcnow()
        session.commit()
        return {**user.to_public_dict(), "session_expires_at": as_utc(row.expires_at).isoformat()}


def logout(engine, token: str) -> bool:
    with Session(engine) as session:
        result = session.execute(delete(UserSession).where(UserSession.session_token == token))
        session.commit()
        return bool(result.rowcount)


def force_logout_user(engine, user_id: str, *, actor_id: str | None) -> int:
    """Kill every session of *user_id* and audit it."""
    with Session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError("User not found")
        result = session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        count = result.rowcount or 0
        log_action(
            session,
            actor_id=actor_id,
            action="force_logout",
            resource_type="user",
            resource_id=user_id,
            after={"sessions_deleted": count},
        )
        session.commit()
    logger.warning("Force logout of %s by %s (%d sessions)", user_id, actor_id, count)
    return count


def set_user_ban(
    engine, user_id: str, *, banned: bool, reason: str | None, actor_id: str | None,
) -> dict:
    """Ban or unban an account.  Banning also ends its sessions."""
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if banned and user.role == "admin":
            raise ForbiddenError("Admins cannot be banned")
        before = {"banned": user.banned, "ban_reason": user.ban_reason}
        user.banned = banned
        user.ban_reason = reason if banned else None
        if banned:
            session.execute(delete(UserSession).where(UserSession.user_id == user_id))
        log_action(
            session,
            actor_id=actor_id,
            action="ban_user" if banned else "unban_user",
            resource_type="user",
            resource_id=user_id,
            before=before,
            after={"banned": banned, "ban_reason": user.ban_reason},
        )
        session.commit()
        return user.to_public_dict()


async def ban_user(
    engine,
    mailer: ResendClient | None,
    user_id: str,
    *,
    banned: bool,
    reason: str | None,
    actor_id: str | None,
    community_name: str,
) -> dict:
    """Ban or unban, then tell a banned user why.

    The ban stands even if the notification cannot be delivered.
    """
    user = await run_db(
        set_user_ban, engine, user_id, banned=banned, reason=reason, actor_id=actor_id,
    )
    email_sent = False
    if banned:
        try:
            email_sent = await send_templated(engine, mailer, "account_banned", user["email"], {
                "username": user["username"],
                "community_name": community_name,
                "reason": reason or "No reason given",
            })
        except UpstreamError as exc:
            logger.error("Ban notification to %s failed: %s", user["email"], exc.message)
    return {**user, "email_sent": email_sent}


def list_users(engine, *, search: str | None = None, limit: int = 100) -> list[dict]:
    with Session(engine) as session:
        stmt = select(User).order_by(User.created_at.desc())
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                func.lower(User.email).like(pattern) | func.lower(User.username).like(pattern)
            )
        return [u.to_public_dict() for u in session.scalars(stmt.limit(limit)).all()]


# ---------------------------------------------------------------------------
# Discord account linking
# ---------------------------------------------------------------------------
def create_link_state(engine, user_id: str) -> str:
    """Persist a one-time OAuth state for *user_id* and prune stale ones."""
    state = secrets.token_urlsafe(32)
    cutoff = utcnow() - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with Session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        session.add(OAuthState(state=state, user_id=user_id))
        session.commit()
    return state


def consume_link_state(engine, state: str) -> str | None:
    """Consume a state token; returns the linking user's id if valid."""
    cutoff = utcnow() - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with Session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        row = session.get(OAuthState, state)
        if row is None:
            session.commit()
            return None
        user_id = row.user_id
        session.delete(row)
        session.commit()
        return user_id


def link_discord(engine, user_id: str, discord_id: str, discord_username: str | None) -> dict:
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.discord_id = str(discord_id)
        user.discord_username = discord_username
        session.commit()
        return user.to_public_dict()
