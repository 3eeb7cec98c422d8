"""
Voyage planner FastAPI service: group trip optimization, progress streaming,
schedule exports.

Entrypoint: uvicorn services.planner.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

import asyncpg
import redis.asyncio as aioredis
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from services.planner.config import settings
from services.planner.middleware.cors import setup_cors
from services.planner.middleware.sentry import setup_sentry
from services.planner.optimization.cache import StageCache
from services.planner.optimization.errors import OptimizationError
from services.planner.optimization.pipeline import OptimizationPipeline, StageTimeouts
from services.planner.realtime.broker import ProgressBroker
from services.planner.realtime.progress_store import RedisProgressStore
from services.planner.routers import health, optimize, progress, schedule

logger = logging.getLogger(__name__)


def build_pipeline(redis_client, broker: ProgressBroker) -> OptimizationPipeline:
    return OptimizationPipeline(
        broker,
        cache=StageCache(redis_client, ttl_seconds=settings.stage_cache_ttl_s),
        timeouts=StageTimeouts(
            normalize_s=settings.stage_timeout_normalize_s,
            select_s=settings.stage_timeout_select_s,
            routing_s=settings.stage_timeout_routing_s,
        ),
        algorithm_version=settings.algorithm_version,
        run_policy=settings.run_policy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry()

    # Redis for the stage cache and progress mirror
    redis_client = None
    if settings.redis_url:
        try:
            redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await redis_client.ping()
        except Exception:
            # Cache and progress mirror degrade gracefully without Redis
            logger.warning("Redis unavailable, running without stage cache", exc_info=True)
            redis_client = None

    db_pool = None
    if settings.database_url:
        try:
            db_pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=2,
                max_size=10,
                command_timeout=30,
            )
        except Exception as e:
            logger.warning(f"DB pool failed to connect: {e}")

    broker = ProgressBroker(store=RedisProgressStore(redis_client, ttl_seconds=settings.progress_ttl_s))

    app.state.redis = redis_client
    app.state.db = db_pool
    app.state.settings = settings
    app.state.broker = broker
    app.state.pipeline = build_pipeline(redis_client, broker)

    yield

    broker.close_all()
    if db_pool:
        await db_pool.close()
    if redis_client:
        await redis_client.aclose()


app = FastAPI(
    title="Voyage Planner API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# -- Middleware (order matters: last added = outermost in Starlette) --

app.include_router(health.router)
app.include_router(optimize.router)
app.include_router(progress.router)
app.include_router(schedule.router)

# CORS (needs to be outermost to handle preflight)
setup_cors(app)


# Request ID injection
@app.middleware("http")
async def request_envelope_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# -- Exception Handlers --

def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


@app.exception_handler(OptimizationError)
async def optimization_error_handler(request: Request, exc: OptimizationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "success": False,
            "error": exc.to_dict(),
            "stage": exc.stage,
            "code": exc.code,
            "requestId": _request_id(request),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        error = exc.detail
    elif exc.status_code == 404:
        error = {"code": "NOT_FOUND", "message": "Resource not found."}
    else:
        error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error, "requestId": _request_id(request)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": str(exc.errors()[0].get("msg")) if exc.errors() else "Validation error.",
            },
            "requestId": _request_id(request),
        },
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."},
            "requestId": _request_id(request),
        },
    )
