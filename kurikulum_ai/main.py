import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from kurikulum_ai.api.v1.router import api_v1_router
from kurikulum_ai.core.config import settings, validate_settings_for_production
from kurikulum_ai.core.logging import setup_logging
from kurikulum_ai.core.metrics import PrometheusMiddleware, metrics_response
from kurikulum_ai.core.rate_limit import limiter
from kurikulum_ai.core.sentry import init_sentry
from kurikulum_ai.gateway.errors import (
    GenerationError,
    NoCredentialsError,
    ProvidersExhaustedError,
)
from kurikulum_ai.generation.service import GenerationOrchestrator

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting Kurikulum AI generation service...")

    orchestrator = await GenerationOrchestrator.from_settings(settings)
    await orchestrator.start()
    app.state.orchestrator = orchestrator

    yield

    # Shutdown
    await orchestrator.close()
    app.state.orchestrator = None
    logger.info("Kurikulum AI generation service shut down")


app = FastAPI(
    title="Kurikulum AI",
    description="Learning objective and exam question generation on top of Gemini",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


def _error_body(message: str, code: str) -> dict:
    return {"success": False, "error": message, "code": code}


@app.exception_handler(GenerationError)
async def _generation_error_handler(request: Request, exc: GenerationError):
    if isinstance(exc, ProvidersExhaustedError):
        if exc.quota_exhausted:
            status_code, code = 429, "QUOTA_EXHAUSTED"
        else:
            status_code, code = 502, "PROVIDERS_EXHAUSTED"
    elif isinstance(exc, NoCredentialsError):
        status_code, code = 503, "NO_CREDENTIALS"
    else:
        status_code, code = 502, "GENERATION_FAILED"

    logger.warning(
        "%s on %s %s -> %d %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        status_code,
        code,
        exc,
    )
    return JSONResponse(status_code=status_code, content=_error_body(str(exc), code))


@app.exception_handler(ValueError)
async def _value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content=_error_body(str(exc), "INVALID_REQUEST"))


# Pydantic errors raised while building a response are server faults, not bad input
@app.exception_handler(ValidationError)
async def _response_validation_handler(request: Request, exc: ValidationError):
    logger.error("Response validation failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Log unhandled exceptions with their traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus HTTP metrics
app.add_middleware(PrometheusMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "ok",
        "credentials": len(orchestrator.pool) if orchestrator else 0,
        "redis": bool(orchestrator and orchestrator.store is not None),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
