#!/usr/bin/env python3
"""
Order Cancellation API
======================

FastAPI app exposing the cancellation workflow engine: intake, inspection,
warehouse replies, approvals and the operator escalation queue.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cancellations import __version__
from cancellations.engine.factory import build_engine
from cancellations.engine.machine import WorkflowStateMachine
from cancellations.strategies import list_strategies
from core.config import config
from core.observability.setup import init_observability

from ..shared.middleware import register_error_handlers, TracingMiddleware
from ..shared.routers.health import router as health_router
from .routers import approvals_router, operations_router, workflows_router

logger = logging.getLogger(__name__)


def create_app(engine: Optional[WorkflowStateMachine] = None) -> FastAPI:
    """
    Build the API.

    When `engine` is omitted one is built from environment configuration at
    startup and its HTTP client is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_engine = app.state.engine is None
        if owns_engine:
            init_observability(config)
            app.state.engine = build_engine(config)
            logger.info("Workflow store: %s", app.state.engine.store.db_path)
        logger.info("Fulfillment strategies: %s", ", ".join(list_strategies()))

        yield

        if owns_engine and app.state.engine.http_client is not None:
            app.state.engine.http_client.close()

    app = FastAPI(
        title="Order Cancellation API",
        description="Cancellation workflows across warehouse email, ShipBob, ShipStation and self-fulfillment",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.add_middleware(TracingMiddleware)

    app.include_router(health_router)
    app.include_router(workflows_router)
    app.include_router(approvals_router)
    app.include_router(operations_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.cancellations.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
    )
