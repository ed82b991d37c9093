"""
InheritX Engine - Main Application Entry Point

Inheritance plans, periodic distributions and beneficiary claims over an
escrow ledger.
"""

import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inheritx.core.config import settings
from inheritx.core.errors import EngineError
from inheritx.core.scheduler import get_scheduler, start_scheduler, stop_scheduler
from inheritx.modules.ledger.client import get_ledger_client

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Import module routers
from inheritx.core.auth_router import router as auth_router
from inheritx.modules.plans.router import router as plans_router
from inheritx.modules.claims.router import router as claims_router
from inheritx.modules.proof_of_life.router import router as proof_of_life_router
from inheritx.modules.admin.router import router as admin_router


def create_app(enable_scheduler: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Digital inheritance plans with escrowed assets and claim-code protected release",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Use ["*"] if CORS_ALLOW_ALL is True (development), otherwise use explicit origins
    cors_origins = ["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        # Internal reasons stay in the log; clients only see the public message
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({type(exc).__name__}): {exc}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})

    # Register module routers
    app.include_router(auth_router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(plans_router, prefix="/api/v1/plans", tags=["Plans"])
    app.include_router(claims_router, prefix="/api/v1/claims", tags=["Claims"])
    app.include_router(proof_of_life_router, prefix="/api/v1/proof-of-life", tags=["Proof of Life"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["Admin"])

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "application": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        """Liveness, the ledger client in use and whether this process runs the scheduler."""
        return {
            "status": "healthy",
            "scheduler_running": get_scheduler() is not None,
            "ledger": get_ledger_client().name,
        }

    if enable_scheduler:
        @app.on_event("startup")
        async def startup_event():
            """Start the background scheduler."""
            try:
                start_scheduler()
            except Exception as e:
                logger.error(f"Failed to start scheduler: {e}", exc_info=True)

        @app.on_event("shutdown")
        async def shutdown_event():
            """Stop the background scheduler."""
            try:
                stop_scheduler()
                logger.info("Application shutdown - scheduler stopped")
            except Exception as e:
                logger.error(f"Error stopping scheduler: {e}")

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("inheritx.main:app", host="0.0.0.0", port=8000, reload=True)
