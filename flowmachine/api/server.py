"""
FastAPI REST API server for the flowmachine engine.

Exposes pipelines, flows, jobs, processed-item maintenance and the chat agent
over HTTP. All state lives in a Container built at startup and stored on
``app.state.container``.

Usage:
    # Run standalone
    python -m flowmachine.api.server --port 8080

    # Or via factory
    from flowmachine.api import create_app
    app = create_app()
    uvicorn.run(app, port=8080)

    # Tests: inject a prepared container, no background threads
    app = create_app(container=build_container(db_path=":memory:", provider=fake))

API Structure:
    /api/pipelines/        - Pipeline templates (from routes/pipelines.py)
    /api/flows/            - Flow instances, run, trigger, schedule (from routes/flows.py)
    /api/jobs/             - Job status (from routes/jobs.py)
    /api/processed-items   - Dedup maintenance (from routes/processed_items.py)
    /api/chat              - Chat agent (from routes/chat.py)
    /api/health            - Health check
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from flowmachine.config.runtime_config import get_log_level
from flowmachine.runtime.registry import Container, build_container

from .routes import (
    chat_router,
    flows_router,
    jobs_router,
    pipelines_router,
    processed_items_router,
)

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: str
    timestamp: str
    db_path: Optional[str] = None
    provider: Optional[str] = None
    queue: Dict[str, int] = {}


def create_app(
    container: Optional[Container] = None,
    enable_cors: bool = True,
    start_background: Optional[bool] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Prepared service container. Built from runtime
            configuration at startup when omitted.
        enable_cors: Whether to enable CORS middleware.
        start_background: Start the worker pool and scheduler with the app.
            Defaults to True only when the app builds its own container.

    Returns:
        Configured FastAPI application.
    """
    owns_container = container is None
    run_background = owns_container if start_background is None else start_background

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        On startup the container is built (if not injected) and the worker
        pool and scheduler are started. On shutdown they are stopped and an
        owned container is closed.
        """
        logger.info("flowmachine API starting...")
        active = app.state.container
        if active is None:
            active = build_container()
            app.state.container = active
        if run_background:
            active.start()

        yield

        logger.info("flowmachine API shutting down...")
        if run_background:
            active.stop()
        if owns_container:
            active.close()

    app = FastAPI(
        title="flowmachine API",
        description="Pipelines, flows and jobs of the flowmachine content automation engine.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(pipelines_router, prefix="/api")
    app.include_router(flows_router, prefix="/api")
    app.include_router(jobs_router, prefix="/api")
    app.include_router(processed_items_router, prefix="/api")
    app.include_router(chat_router, prefix="/api")

    @app.get("/api/health", response_model=HealthResponse)
    def health_check(request: Request):
        active: Optional[Container] = request.app.state.container
        if active is None:
            return HealthResponse(status="starting", timestamp=datetime.now(timezone.utc).isoformat())
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            db_path=str(active.store.db_path) if active.store.db_path else ":memory:",
            provider=getattr(active.provider, "name", None),
            queue=active.queue.counts(),
        )

    return app


# =============================================================================
# Main Entry Point
# =============================================================================


def main():
    """Run the API server."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="flowmachine API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8080, help="Port to bind to")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    args = parser.parse_args()

    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = create_app(enable_cors=not args.no_cors)
    logger.info("Starting flowmachine API at http://%s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
