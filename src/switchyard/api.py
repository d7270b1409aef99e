"""FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from switchyard.bootstrap import Runtime, build_runtime
from switchyard.errors import SwitchyardError
from switchyard.ratelimit import limiter
from switchyard.settings import settings
from switchyard.routers import (
    inbound_events,
    integrations,
    jobs,
    outbound_jobs,
    webhooks,
)

logger = logging.getLogger(__name__)


async def switchyard_error_handler(request: Request, exc: SwitchyardError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app. Without a runtime one is constructed at startup."""
    app = FastAPI(
        title="Switchyard",
        description="Multi-tenant webhook ingress and outbound delivery",
        version="0.1.0",
    )
    app.state.runtime = runtime
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(SwitchyardError, switchyard_error_handler)

    @app.on_event("startup")
    async def build_runtime_on_startup():
        if app.state.runtime is None:
            app.state.runtime = build_runtime()

    @app.on_event("startup")
    async def start_worker_mode():
        """Start the background worker when the service runs in worker mode."""
        if not settings.worker_mode:
            return
        try:
            from switchyard.worker import start_background_worker_thread

            start_background_worker_thread(app.state.runtime)
        except Exception:
            # Keep API process alive even if worker startup fails.
            logger.exception("Failed to start worker mode thread")

    @app.on_event("shutdown")
    async def stop_worker_mode():
        if not settings.worker_mode:
            return
        try:
            from switchyard.worker import stop_background_worker_thread

            stop_background_worker_thread()
        except Exception:
            logger.exception("Failed to stop worker mode thread")

    # Public (signature-verified) webhooks
    app.include_router(webhooks.router)

    # Tenant API (bearer token + X-Tenant-ID)
    app.include_router(integrations.router)
    app.include_router(inbound_events.router)
    app.include_router(outbound_jobs.router)
    app.include_router(jobs.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint with DB connectivity verification."""
        current = app.state.runtime
        if current is None:
            raise HTTPException(status_code=503, detail="Service is starting")
        db = current.session_factory()
        try:
            db.execute(text("SELECT 1"))
            return {"status": "healthy"}
        except Exception as exc:
            raise HTTPException(status_code=503, detail=f"Database unavailable: {exc}")
        finally:
            db.close()

    return app


app = create_app()
