"""
dreamlight.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn dreamlight.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

load_dotenv()

from dreamlight.api.deps import get_engine, site_available  # noqa: E402
from dreamlight.api.rate_limit import configure_rate_limiter  # noqa: E402
from dreamlight.api.routes.analytics import router as analytics_router  # noqa: E402
from dreamlight.api.routes.applications import router as applications_router  # noqa: E402
from dreamlight.api.routes.auth import router as auth_router  # noqa: E402
from dreamlight.api.routes.chat import router as chat_router  # noqa: E402
from dreamlight.api.routes.content import router as content_router  # noqa: E402
from dreamlight.api.routes.integrations import router as integrations_router  # noqa: E402
from dreamlight.api.routes.staff import router as staff_router  # noqa: E402
from dreamlight.api.routes.votes import router as votes_router  # noqa: E402
from dreamlight.errors import PanelError  # noqa: E402
from dreamlight.services.log_buffer import install_handler  # noqa: E402
from dreamlight.services.settings_service import get_bot_heartbeat, is_kill_switch_active  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — attach the log buffer, warm the DB engine."""
    # Uvicorn reconfigures logging on start, so the handler goes on here
    install_handler()

    engine = get_engine()
    configure_rate_limiter(engine=engine)
    logger.info("Dreamlight API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Dreamlight API shutting down")


app = FastAPI(
    title="Dreamlight Panel API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error rendering: every failure body is {"error": message, ...}
# ---------------------------------------------------------------------------
@app.exception_handler(PanelError)
async def panel_error_handler(request: Request, exc: PanelError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Mount routers.  Auth, staff and analytics stay reachable while the kill
# switch is on so the owner can still sign in and turn it off.
public_gate = [Depends(site_available)]
app.include_router(auth_router, prefix="/api")
app.include_router(content_router, prefix="/api", dependencies=public_gate)
app.include_router(applications_router, prefix="/api", dependencies=public_gate)
app.include_router(chat_router, prefix="/api", dependencies=public_gate)
app.include_router(staff_router, prefix="/api")
app.include_router(integrations_router, prefix="/api")
app.include_router(votes_router, prefix="/api", dependencies=public_gate)
app.include_router(analytics_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/health/bot")
def bot_health(engine=Depends(get_engine)):
    """Return the bot's heartbeat status."""
    return get_bot_heartbeat(engine)


@app.get("/api/site-status")
def site_status(engine=Depends(get_engine)):
    """Public: lets the front end render its maintenance page."""
    return {"kill_switch_active": is_kill_switch_active(engine)}
