"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI

from api.middleware import RequestContextMiddleware
from api.errors import error_response
from api.routes import config, health, refresh, webhooks
from core.config import Settings, settings as default_settings
from core.exceptions import SyncException
from core.logging import setup_logging
from refresh.runtime import RefreshRuntime
from refresh.scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[RefreshRuntime] = None
) -> FastAPI:
    """
    Build the application.
    
    A runtime passed in (tests, embedding) is used as is and not closed on
    shutdown; otherwise one is created from settings at startup.
    """
    settings = settings or default_settings
    owns_runtime = runtime is None
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        logger.info("Starting warehouse refresh API")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        
        if owns_runtime:
            app.state.runtime = RefreshRuntime.create(settings)
        active_runtime: RefreshRuntime = app.state.runtime
        logger.info(f"Database: {active_runtime.database.describe()}")
        
        active_runtime.continuations.start(settings.CONTINUATION_WORKERS)
        
        scheduler = None
        if settings.SCHEDULER_ENABLED:
            scheduler = RefreshScheduler(active_runtime)
            scheduler.start()
        else:
            logger.info("Internal scheduler disabled; relying on external triggers")
        
        try:
            yield
        finally:
            logger.info("Shutting down warehouse refresh API")
            if scheduler is not None:
                scheduler.stop()
            if owns_runtime:
                await active_runtime.close()
            else:
                await active_runtime.continuations.stop()
    
    app = FastAPI(
        title="Warehouse Refresh API",
        description="Checkpointed incremental sync from the warehouse into the transactional store",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    if runtime is not None:
        app.state.runtime = runtime
    
    app.add_middleware(RequestContextMiddleware)
    
    app.include_router(health.router)
    app.include_router(refresh.router)
    app.include_router(config.router)
    app.include_router(webhooks.router)
    
    @app.exception_handler(SyncException)
    async def sync_exception_handler(request, exc: SyncException):
        logger.warning(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return error_response(exc)
    
    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Warehouse Refresh API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "endpoints": {
                "trigger": "/refresh/trigger",
                "metrics": "/refresh/metrics",
                "config": "/refresh/config",
                "webhooks": "/refresh/webhooks",
                "webhook_test": "/refresh/webhooks/test",
                "deliveries": "/refresh/webhooks/deliveries",
                "process_webhooks": "/refresh/webhooks/process"
            }
        }
    
    return app


app = create_app()
