from contextlib import asynccontextmanager

from fastapi import FastAPI

from mintflow import __version__
from mintflow.config import settings
from mintflow.database import init_db
from mintflow.log import setup_logging
from mintflow.routes import access, capture, content, events, mints
from mintflow.wiring import Services, build_services


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API.  Passing *services* skips database setup and wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Configure logging, create SQLite tables and wire the pipeline."""
        setup_logging(settings.log_level, settings.log_json)
        if services is None:
            await init_db()
            app.state.services = build_services()
            app.state.services.events.subscribe(events.broadcast)
        yield

    app = FastAPI(
        title="mintflow",
        description="Capture media, pin it to content-addressed storage and mint it as a verified ownership record",
        version=__version__,
        lifespan=lifespan,
    )

    if services is not None:
        services.events.subscribe(events.broadcast)
        app.state.services = services

    app.include_router(capture.router)
    app.include_router(mints.router)
    app.include_router(access.router)
    app.include_router(content.router)
    app.include_router(events.router)

    @app.get("/health")
    async def health() -> dict:
        s = app.state.services
        return {
            "status": "ok",
            "recording": s.capture.is_recording,
            "storage": s.storage.status(),
            "ledger": s.ledger.status(),
        }

    return app


app = create_app()
