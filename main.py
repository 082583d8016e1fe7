"""
Theater Canteen - Notification & Event Fan-out Plane
FastAPI Application Entry Point
"""
import uvicorn
from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
import logging

from canteen.core import settings
from canteen.core.logging import setup_logging
from canteen.api import api_router, register_exception_handlers
from canteen.context import build_context

logger = logging.getLogger(__name__)


def create_app(context=None) -> FastAPI:
    # Lifespan for startup/shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = app.state.context
        logger.info(f"{settings.APP_NAME} starting on port {settings.APP_PORT}")
        await ctx.startup()

        yield

        await ctx.shutdown()
        logger.info(f"{settings.APP_NAME} shutting down")

    app = FastAPI(
        title=settings.APP_NAME,
        description="Stock notifications, POS event stream and QR artifact pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.context = context or build_context()

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    # Health check
    @app.get("/health")
    async def health_check(request: Request):
        ctx = request.app.state.context
        database = ctx.database.health()
        storage_ready = await ctx.storage.is_ready()
        fallback_ready = await ctx.fallback_storage.is_ready()
        healthy = database["is_connected"] and (storage_ready or fallback_ready)
        return {
            "status": "healthy" if healthy else "degraded",
            "app": settings.APP_NAME,
            "database": database,
            "storage": {"ready": storage_ready, "fallback_ready": fallback_ready},
            "scheduler": {
                "running": ctx.supervisor.is_running,
                "using_defaults": ctx.supervisor.using_defaults,
            },
            "pos_subscribers": ctx.pos_bus.subscriber_count(),
        }

    return app


if __name__ == "__main__":
    setup_logging("canteen.log")
    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=settings.APP_PORT,
    )
