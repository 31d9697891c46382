"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ghmirror.api.routes import sync as sync_routes
from ghmirror.api.routes import webhooks
from ghmirror.db.engine import get_engine


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Creates tables and runs migrations on first use (idempotent)
        get_engine()
        yield

    app = FastAPI(
        title="ghmirror",
        description="GitHub mirror: webhook ingestion and pull sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
