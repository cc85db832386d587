"""FastAPI application for the agentfleet orchestrator."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import register_exception_handlers, router
from .config import settings
from .database import init_db
from .services import Services, build_services

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    # Startup
    logger.info("Starting agentfleet API")
    await init_db()
    logger.info("Database initialized")

    if app.state.services is None:
        app.state.services = build_services()
    scheduler = app.state.services.scheduler
    if settings.automation_enabled:
        scheduler.start()
    else:
        logger.info("Automation disabled; sweeps run only on demand")

    yield

    # Shutdown
    logger.info("Shutting down agentfleet API")
    await scheduler.stop()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        services: Prebuilt services (default: built at startup)

    Returns:
        FastAPI app
    """
    app = FastAPI(
        title="agentfleet API",
        description="Goal decomposition and task scheduling for a fleet of LLM workers",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    register_exception_handlers(app)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "agentfleet API",
            "version": "0.1.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
