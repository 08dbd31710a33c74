import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from promptforge.api.v1.router import api_v1_router
from promptforge.core.config import settings, validate_settings_for_production
from promptforge.core.exceptions import PromptForgeError
from promptforge.core.logging import setup_logging
from promptforge.core.metrics import metrics_response
from promptforge.core.rate_limit import limiter
from promptforge.core.sentry import init_sentry
from promptforge.gateway.openrouter import OpenRouterInvoker
from promptforge.testsets.document_store import JsonFileDocumentStore
from promptforge.testsets.result_store import ResultStore
from promptforge.testsets.service import TestSetService

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


def build_service() -> TestSetService:
    store = ResultStore(JsonFileDocumentStore(settings.data_dir))
    invoker = OpenRouterInvoker(api_key=settings.openrouter_api_key)
    return TestSetService(store, invoker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    app.state.service = build_service()
    logger.info("Starting Prompt Forge (data_dir=%s)...", settings.data_dir)

    yield

    # Shutdown: cancel running batches and let in-flight calls settle
    await app.state.service.shutdown()
    logger.info("Prompt Forge shut down")


app = FastAPI(
    title="Prompt Forge",
    description="Test-set execution engine for prompt versions",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(PromptForgeError)
async def _domain_exception_handler(request: Request, exc: PromptForgeError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

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


@app.get("/api/v1/health")
async def health(request: Request):
    service: TestSetService | None = getattr(request.app.state, "service", None)
    return {
        "status": "ok",
        "credential": service.invoker.has_credential() if service else False,
        "running_batches": len(service.registry.running()) if service else 0,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
