"""
FastAPI Application - Main entry point.
Provides the REST API for the API Cartographer discovery pipeline.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import Settings, settings as default_settings
from ..core.logging_setup import configure_logging
from ..memory.spec_store import SpecStore

from .routes import sessions, specs


logger = logging.getLogger(__name__)


def create_app(config: Settings | None = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Settings override (uses global settings if not provided)

    Returns:
        Configured FastAPI app
    """
    config = config or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler.
        Opens the spec store and closes it on shutdown.
        """
        logger.info("Opening spec store at %s", config.database_path)
        store = SpecStore(config.database_path)
        await store.initialize()

        app.state.store = store
        app.state.sessions = {}

        logger.info("API Cartographer ready")

        yield

        logger.info("Shutting down...")
        await store.close()

    app = FastAPI(
        title="API Cartographer",
        description=(
            "Reverse-engineers OpenAPI specifications from observed HTTP traffic: "
            "clusters exchanges into endpoints, classifies pagination, authentication "
            "and bot protection, infers schemas and versions the resulting spec."
        ),
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
    app.include_router(specs.router, prefix="/api/specs", tags=["Specs"])

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "API Cartographer",
            "version": "0.1.0",
            "status": "running",
            "docs": "/docs",
            "pipeline": [
                "ingest", "cluster", "classify", "infer", "synthesize", "diff"
            ],
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        store = getattr(app.state, "store", None)
        return {
            "status": "healthy",
            "database": "connected" if store is not None and store.db is not None else "disconnected",
            "sessions": len(getattr(app.state, "sessions", {})),
        }

    return app


def run() -> None:
    """Serve the API with uvicorn using configured host and port."""
    configure_logging(default_settings.log_level, default_settings.log_json)
    uvicorn.run(
        create_app(),
        host=default_settings.api_host,
        port=default_settings.api_port,
        log_config=None,
    )
