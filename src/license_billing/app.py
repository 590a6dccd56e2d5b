"""
FastAPI application factory for the license billing API
"""
import logging

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import config
from .db.engine import check_database_health
from .exceptions import register_exception_handlers
from .logging_config import RequestIDMiddleware, setup_logging
from .license_routes import router as license_router
from .billing_routes import router as billing_cycle_router, adjustments_router
from .payment_routes import router as payment_router
from .tax_routes import router as tax_router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    setup_logging(config.ENV, config.LOG_LEVEL)

    app = FastAPI(title="License Billing API", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it wraps CORS and every handler sees the request ID
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(license_router)
    app.include_router(billing_cycle_router)
    app.include_router(adjustments_router)
    app.include_router(payment_router)
    app.include_router(tax_router)

    @app.get("/health")
    def health():
        """Liveness plus a database round trip"""
        if check_database_health():
            return {
                "status": "healthy",
                "service": "license-billing",
                "env": config.ENV,
                "build": {"version": config.BUILD_VERSION, "commit": config.BUILD_COMMIT},
            }
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "service": "license-billing", "database": "unreachable"},
        )

    logger.info(f"License billing API configured (env={config.ENV})")
    return app
