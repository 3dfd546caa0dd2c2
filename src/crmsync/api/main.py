"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crmsync.api.routes import activities, sync as sync_routes
from crmsync.db.engine import get_engine


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Creates tables on first use (idempotent)
        get_engine()
        yield

    app = FastAPI(
        title="CRM Sync API",
        description="Contact, organization and activity sync against the remote CRM",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(activities.router, prefix="/activities", tags=["activities"])

    return app


# Module-level app instance for uvicorn
app = create_app()
