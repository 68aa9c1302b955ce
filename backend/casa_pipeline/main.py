import logging
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from casa_pipeline.config import settings
from casa_pipeline.errors import CasaError, TwoFactorRequired
from casa_pipeline.middleware.logging_config import configure_json_logging

configure_json_logging(settings.log_level)

from casa_pipeline.api.auth import router as auth_router  # noqa: E402
from casa_pipeline.api.deps import SessionRegistry  # noqa: E402
from casa_pipeline.api.metrics import router as metrics_router  # noqa: E402
from casa_pipeline.api.pipeline import router as pipeline_router  # noqa: E402
from casa_pipeline.services.api_client import ApiClient  # noqa: E402
from casa_pipeline.services.session_storage import create_session_storage  # noqa: E402

logger = logging.getLogger("casa_pipeline")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: one shared backend client and the session snapshot storage
    client = ApiClient()
    app.state.sessions = SessionRegistry(client, create_session_storage())
    logger.info("Backend %s%s, sessions in %s", settings.backend_url, settings.api_prefix, settings.session_backend)
    yield
    # Shutdown
    await app.state.sessions.aclose()
    await client.aclose()


app = FastAPI(
    title="CASA Volunteer Pipeline",
    description="Session, authorization and volunteer onboarding pipeline for the CASA front end",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# ── Security headers middleware ──────────────────────────────────────────────
from casa_pipeline.middleware.security_headers import SecurityHeadersMiddleware  # noqa: E402

app.add_middleware(SecurityHeadersMiddleware)

# ── Request context middleware (request ID + timing) ─────────────────────────
from casa_pipeline.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from casa_pipeline.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


@app.exception_handler(CasaError)
async def casa_error_handler(request: Request, exc: CasaError):
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, TwoFactorRequired):
        content["requires_2fa"] = True
        content["challenge"] = exc.challenge.model_dump()
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": f"{type(exc).__name__}: {exc}", "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(auth_router)
app.include_router(pipeline_router)
app.include_router(metrics_router)


# ── Health check ─────────────────────────────────────────────────────────────

_health_cache: dict = {}
_health_cache_ts: float = 0.0
HEALTH_CACHE_TTL = 10.0  # seconds


@app.get("/api/health")
async def health_check(request: Request):
    global _health_cache, _health_cache_ts

    now = time.time()
    if _health_cache and (now - _health_cache_ts) < HEALTH_CACHE_TTL:
        return _health_cache

    components: dict = {}
    sessions: SessionRegistry | None = getattr(request.app.state, "sessions", None)

    # WordPress backend
    if sessions is None:
        components["backend"] = {"status": "not_started"}
    else:
        resp = await sessions.client.get("")
        if resp.status_code is None:
            components["backend"] = {"status": "unreachable", "error": resp.error}
        else:
            components["backend"] = {"status": "reachable", "status_code": resp.status_code}

    backend_ok = components["backend"]["status"] == "reachable"
    result = {
        "status": "healthy" if backend_ok else "degraded",
        "environment": settings.environment,
        "session_backend": settings.session_backend,
        "components": components,
    }

    _health_cache = result
    _health_cache_ts = now
    return result
