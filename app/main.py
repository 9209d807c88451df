import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_v1_router
from app.core.config import load_ai_service_config, settings, validate_settings_for_production
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.sentry import init_sentry
from app.gateway.errors import AIError, AllProvidersFailedError
from app.gateway.orchestrator import AIOrchestrator
from app.services.conversation import InMemoryConversationStore

# Configure logging and error tracking before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    config = load_ai_service_config()
    validate_settings_for_production(config)
    logger.info("Starting reading assistant...")

    orchestrator = await AIOrchestrator.from_config(config)
    app.state.orchestrator = orchestrator
    app.state.conversation_store = InMemoryConversationStore()
    logger.info("AI providers ready: %s", ", ".join(p.value for p in orchestrator.providers) or "none")

    yield

    # Shutdown
    await orchestrator.aclose()
    logger.info("Reading assistant shut down")


app = FastAPI(
    title="Reading Assistant",
    description="Book-tracking reading assistant with multi-provider AI failover",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


def _ai_error_status(exc: AIError) -> int:
    if isinstance(exc, AllProvidersFailedError):
        return 503
    if exc.code == "INVALID_REQUEST":
        return 422
    if exc.code == "NOT_INITIALIZED":
        return 503
    return 502


@app.exception_handler(AIError)
async def _ai_error_handler(request: Request, exc: AIError):
    status = _ai_error_status(exc)
    logger.warning("%s on %s %s -> %d: %s", exc.code, request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Metrics middleware
app.add_middleware(PrometheusMiddleware)

# CORS — parse allowed_origins from settings (comma-separated)
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


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/api/v1/health")
async def health(request: Request):
    orchestrator: AIOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "ok",
        "ai_providers": [p.value for p in orchestrator.providers] if orchestrator else [],
    }
