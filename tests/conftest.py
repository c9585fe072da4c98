"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import secrets
from datetime import timedelta

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from dreamlight.config import PanelConfig
from dreamlight.database.models import Base, User, UserSession, utcnow
from dreamlight.database.seed import seed_defaults
from dreamlight.services.auth_service import hash_password

_jsonb_sqlite_registered = False

# Secrets that would make a test talk to a real service
_SERVICE_ENV_VARS = (
    "DISCORD_BOT_TOKEN",
    "DISCORD_WEBHOOK_URL",
    "DISCORD_CLIENT_ID",
    "DISCORD_CLIENT_SECRET",
    "DISCORD_REDIRECT_URI",
    "RESEND_API_KEY",
    "STRIPE_SECRET_KEY",
    "TWITCH_CLIENT_ID",
    "TWITCH_CLIENT_SECRET",
    "PURCHASE_WEBHOOK_SECRET",
)

TEST_PASSWORD = "correct-horse-battery"
OWNER_EMAIL = "owner@dreamlight.gg"


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture(autouse=True)
def _no_service_credentials(monkeypatch):
    """Start every test with outbound integrations unconfigured."""
    for name in _SERVICE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Dreamlight tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used by ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_defaults(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    email: str = "player@example.com",
    *,
    role: str = "user",
    password: str = TEST_PASSWORD,
    verified: bool = True,
    banned: bool = False,
    username: str | None = None,
    discord_id: str | None = None,
    password_hash: str | None = None,
) -> dict:
    """Insert an account directly and return its public dict."""
    with Session(engine) as session:
        user = User(
            email=email,
            username=username or email.split("@")[0],
            password_hash=password_hash or hash_password(password),
            role=role,
            email_verified=verified,
            banned=banned,
            discord_id=discord_id,
        )
        session.add(user)
        session.commit()
        return user.to_public_dict()


def make_session(engine: Engine, user_id: str, *, expires_in: timedelta = timedelta(days=7)) -> str:
    """Open a session for *user_id* without going through login."""
    token = secrets.token_urlsafe(32)
    with Session(engine) as session:
        session.add(UserSession(
            user_id=user_id,
            session_token=token,
            expires_at=utcnow() + expires_in,
        ))
        session.commit()
    return token


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def panel_config() -> PanelConfig:
    return PanelConfig(
        community_name="Dreamlight RP",
        community_motto="Where stories come alive",
        bot_prefix="!",
        guild_id=1122334455667788990,
        dashboard_port=8000,
        kill_switch_owner_email=OWNER_EMAIL,
    )


@pytest.fixture
def admin_user(db_engine) -> dict:
    return make_user(db_engine, "admin@dreamlight.gg", role="admin", username="Admin")


@pytest.fixture
def staff_user(db_engine) -> dict:
    return make_user(db_engine, "staff@dreamlight.gg", role="staff", username="Helper")


@pytest.fixture
def player(db_engine) -> dict:
    return make_user(db_engine, "player@example.com", username="Player")


@pytest.fixture
def client(db_engine, panel_config):
    """FastAPI TestClient bound to the in-memory database.

    Lifespan is not run, so the rate limiter is configured here.
    """
    from fastapi.testclient import TestClient

    from dreamlight.api.deps import get_config, get_engine, get_mailer
    from dreamlight.api.main import app
    from dreamlight.api.rate_limit import configure_rate_limiter

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: panel_config
    app.dependency_overrides[get_mailer] = lambda: None
    configure_rate_limiter(engine=db_engine)

    yield TestClient(app, raise_server_exceptions=False)

    app.dependency_overrides.clear()
