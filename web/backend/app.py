#!/usr/bin/env python3
"""
Opportunity Alerts - FastAPI Application

HTTP surface for the pipeline: event submission, delivery record lookup,
statistics and a Prometheus scrape endpoint.

Usage:
    python -m web.backend.app

Then open:
    - http://localhost:8080/docs - API Documentation (Swagger UI)
    - http://localhost:8080/redoc - Alternative API Documentation
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException

from core.app_context import AppContext
from core.config_loader import AppConfig, load_config
from core.exceptions import PipelineError
from database.database import init_db
from pipeline.runner import OpportunityPipeline

from .exceptions import (
    pipeline_exception_handler,
    http_exception_handler,
    general_exception_handler
)
from .routers import (
    events_router,
    deliveries_router,
    stats_router
)
from .routers.events import add_rate_limit_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None, pipeline: Optional[OpportunityPipeline] = None) -> FastAPI:
    """
    Build the FastAPI application.

    With a pipeline given (tests), the app serves it as is and never starts
    or stops it. Otherwise the pipeline is built from config on startup,
    its workers are started, and it is drained on shutdown.
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if app.state.pipeline is None:
            ctx = AppContext.build(config)
            init_db(ctx.engine)
            owned = OpportunityPipeline(ctx)
            owned.start()
            app.state.pipeline = owned
        try:
            yield
        finally:
            if owned is not None:
                owned.shutdown()
                app.state.pipeline = None

    app = FastAPI(
        title="Opportunity Alerts API",
        description="Opportunity matching and notification delivery",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.pipeline = pipeline

    # Configure rate limiting
    add_rate_limit_handlers(app)

    # Register exception handlers
    app.add_exception_handler(PipelineError, pipeline_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers
    app.include_router(events_router)
    app.include_router(deliveries_router)
    app.include_router(stats_router)

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        current = app.state.pipeline
        return {
            "status": "healthy",
            "service": "opportunity-alerts",
            "pipeline_running": bool(current and current.running)
        }

    return app


def main():
    """Run the web server."""
    import uvicorn

    config = load_config()
    logger.info(f"Starting Opportunity Alerts API on {config.web.host}:{config.web.port}")
    logger.info(f"API Docs: http://{config.web.host}:{config.web.port}/docs")

    uvicorn.run(
        create_app(config),
        host=config.web.host,
        port=config.web.port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
