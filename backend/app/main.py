"""
BuildUnion Project Core API
FastAPI backend over the project fact ledger: async PostgreSQL, JWT auth,
tier-gated facts, pending budget changes, weather/AI/email adapters.
"""
import os
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

from app.services.logging_config import setup_logging  # noqa: E402
from app.services.middleware import RequestTimingMiddleware  # noqa: E402
from app.services.errors import (  # noqa: E402
    AuthorizationDenied, CitationNotFound, CoreError, DuplicatePendingChange,
    ExternalServiceDegraded, InvalidTransition, PendingChangeNotFound, SourceUnavailable,
)

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("buildunion-api")

# Startup validation
for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
for var in ["OPENWEATHER_API_KEY", "RESEND_API_KEY", "LLM_PRIMARY_MODEL"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import init_db
    from app.services.ai_analysis import AIAnalysisClient
    from app.services.fact_synthesizer import FactSynthesizer
    from app.services.local_cache import LocalFactCache
    from app.services.notifications import EmailNotifier
    from app.services.project_loader import ProjectLoader, SessionRegistry
    from app.services.project_store import ChangeFeed, SqlProjectStore
    from app.services.weather_client import WeatherClient

    await init_db()

    store = SqlProjectStore(feed=ChangeFeed())
    weather = WeatherClient()
    loader = ProjectLoader(
        store,
        cache=LocalFactCache(),
        synthesizer=FactSynthesizer(store, weather_client=weather),
    )
    app.state.store = store
    app.state.weather = weather
    app.state.ai = AIAnalysisClient(store)
    app.state.email = EmailNotifier()
    app.state.sessions = SessionRegistry(loader)
    logger.info("Project core ready.")

    yield

    await app.state.sessions.close_all()
    from app.db import engine
    await engine.dispose()


app = FastAPI(
    title="BuildUnion Project Core API",
    version="1.0.0",
    description="Verified project facts, synthesis, access tiers and approval workflow",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
_STATUS_BY_ERROR = [
    (AuthorizationDenied, 403),
    (CitationNotFound, 404),
    (PendingChangeNotFound, 404),
    (InvalidTransition, 409),
    (DuplicatePendingChange, 409),
    (SourceUnavailable, 503),
    (ExternalServiceDegraded, 503),
]


def status_for(exc: CoreError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return 500


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    code = status_for(exc)
    log = logger.warning if code < 500 else logger.error
    log(
        f"{type(exc).__name__}: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


# ---------------------------------------------------------------------------
# CORS restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:5173"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from app.api.ledger_routes import router as ledger_router  # noqa: E402
from app.api.change_routes import router as change_router  # noqa: E402

app.include_router(ledger_router)
app.include_router(change_router)


@app.get("/health")
async def health_check():
    from app.db import DB_CONFIGURED, ping
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": DB_CONFIGURED,
        "db_reachable": await ping(),
        "weather_configured": bool(os.getenv("OPENWEATHER_API_KEY")),
        "email_configured": bool(os.getenv("RESEND_API_KEY")),
        "llm_primary": os.getenv("LLM_PRIMARY_MODEL", "gemini/gemini-2.5-flash"),
    }
