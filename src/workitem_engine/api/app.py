"""
workitem_engine.api.app

FastAPI app factory for the work-item engine gateway.

Responsibilities:
- Build the FastAPI application and register routers, middleware and error mapping.
- Initialize and dispose shared infrastructure (DB engine/session factory).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from workitem_engine import __version__
from workitem_engine.api.errors import register_error_handlers
from workitem_engine.api.routers.health import router as health_router
from workitem_engine.api.routers.work_items import router as work_items_router
from workitem_engine.db.init_db import init_db
from workitem_engine.db.session import create_engine, create_sessionmaker
from workitem_engine.observability.logging import configure_logging, get_logger
from workitem_engine.observability.middleware import RequestContextMiddleware
from workitem_engine.settings import Settings

log = get_logger(__name__)


def create_app(*, settings: Settings) -> FastAPI:
    configure_logging(service_name=settings.service_name, level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("startup", env=settings.env)
        # One engine + sessionmaker per process; routers get sessions via `api.deps`.
        engine = create_engine(settings)
        app.state.engine = engine
        app.state.sessionmaker = create_sessionmaker(engine)
        if settings.env in ("dev", "test"):
            # Dev/test convenience: create tables automatically. Prod should use Alembic migrations.
            await init_db(engine)
        try:
            yield
        finally:
            await engine.dispose()
            log.info("shutdown")

    app = FastAPI(
        title="Work Item Cascade Engine",
        version=__version__,
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)
    app.include_router(health_router, tags=["health"])
    app.include_router(work_items_router)

    return app
