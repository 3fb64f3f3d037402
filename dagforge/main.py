from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .orchestration.engine import TaskGraphEngine
from .orchestration.store import PostgresGraphStore

settings = get_settings()
configure_logging(settings.observability.log_level, log_format=settings.observability.log_format)
logger = get_logger(name=__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    engine = TaskGraphEngine.from_settings(settings)
    store = engine.store
    if isinstance(store, PostgresGraphStore):
        await store.ensure_schema()
    app.state.engine = engine
    resumed = await engine.resume_unterminated()
    logger.info("engine_started", environment=settings.environment, resumed=len(resumed))
    try:
        yield
    finally:
        await engine.shutdown()
        if isinstance(store, PostgresGraphStore):
            await store.close()
        app.state.engine = None


app = FastAPI(title="dagforge", version="0.1.0", lifespan=app_lifespan)
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


if settings.observability.prometheus_enabled:

    @app.get("/metrics", tags=["observability"])
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
