"""
FastAPI Application Entry Point.

This is the main application file for the OTC Ledger Backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import IntegrityError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware
from backend.app.core.redis_client import close_redis, get_fanout_client, ping_redis
from backend.app.db.session import engine, Base
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    integrity_error_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.services.file_storage import FileStorage
from backend.app.services.notification_service import ConnectionRegistry, NotificationService

# Import models to ensure they are registered with Base
from backend.app.models.user import User, Role  # noqa: F401
from backend.app.models.audit_log import AuditLog  # noqa: F401
from backend.app.models.currency import Currency  # noqa: F401
from backend.app.models.account import Account, AccountTransaction  # noqa: F401
from backend.app.models.order import Order  # noqa: F401
from backend.app.models.order_ledger import (  # noqa: F401
    OrderReceipt, OrderPayment, OrderProfit, OrderServiceCharge
)
from backend.app.models.approval_request import ApprovalRequest  # noqa: F401
from backend.app.models.expense import Expense, InternalTransfer  # noqa: F401
from backend.app.models.notification import Notification  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Waits for in-flight notification deliveries on shutdown, then
       closes the redis fan-out connection.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await app.state.notifier.drain()
    await close_redis()


def build_notifier(connections: ConnectionRegistry) -> NotificationService:
    return NotificationService(
        connections,
        redis=get_fanout_client(),
        redis_channel=settings.redis_notification_channel,
        webhook_enabled=settings.notification_webhook_enabled,
        webhook_url=settings.notification_webhook_url,
        webhook_secret=settings.notification_webhook_secret,
        webhook_timeout=settings.notification_webhook_timeout,
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.api_version,
        debug=settings.debug,
        description="Back-office ledger for OTC currency exchange orders",
        lifespan=lifespan,
    )

    # App-level collaborators, injected into routes through core.dependencies
    app.state.connections = ConnectionRegistry()
    app.state.notifier = build_notifier(app.state.connections)
    app.state.file_storage = FileStorage(settings.uploads_dir, settings.uploads_url_prefix)

    # Register global exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_middleware(ObservabilityMiddleware)

    @app.get("/health", tags=["Health"])
    async def health_check():
        """
        Health check endpoint.

        Returns:
            dict: Status and application information
        """
        redis_status = await ping_redis()
        return {
            "status": "healthy",
            "app_name": settings.app_name,
            "version": settings.api_version,
            "redis": redis_status,
        }

    @app.get("/", tags=["Root"])
    async def root():
        """
        Root endpoint.

        Returns:
            dict: Welcome message and API documentation links
        """
        return {
            "message": "Welcome to OTC Ledger Backend API",
            "docs": "/docs",
            "health": "/health",
        }

    # Include API v1 router
    app.include_router(api_v1_router, prefix=f"/{settings.api_version}")

    # Stored receipt/payment images
    app.mount(
        settings.uploads_url_prefix,
        StaticFiles(directory=settings.uploads_dir, check_dir=False),
        name="uploads",
    )

    return app


app = create_app()
