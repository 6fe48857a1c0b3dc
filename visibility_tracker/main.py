import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from visibility_tracker.api.v1.router import api_v1_router
from visibility_tracker.core.config import settings, validate_settings_for_production
from visibility_tracker.core.logging import setup_logging
from visibility_tracker.core.metrics import APP_INFO, PrometheusMiddleware, metrics_response
from visibility_tracker.core.sentry import init_sentry
from visibility_tracker.db.postgres import async_session_factory, engine

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_settings_for_production()
    init_sentry()
    APP_INFO.info({"version": app.version, "env": settings.app_env})
    logger.info("Starting Visibility Tracker...")

    yield

    await engine.dispose()
    logger.info("Visibility Tracker shut down")


app = FastAPI(
    title="Visibility Tracker",
    description="Brand visibility collection and scoring across AI answer engines",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


app.add_middleware(PrometheusMiddleware)

app.include_router(api_v1_router)


@app.get("/api/v1/health")
async def health():
    postgres_ok = True
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check: database unavailable: %s", e)
        postgres_ok = False
    return {"status": "ok" if postgres_ok else "degraded", "postgres": postgres_ok}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
