"""Access Portal main application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from access_portal.api.routes import audit, auth, grants, requests, systems, users
from access_portal.config import settings
from access_portal.db.database import close_db, init_db
from access_portal.services.audit import audit_service
from access_portal.services.errors import AccessPortalError
from access_portal.services.notifications import (
    SlackNotificationBackend,
    notification_dispatcher,
)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def configure_services() -> None:
    """Wire the audit and notification singletons from settings."""
    audit_service.configure(
        file_path=settings.audit.file_path if settings.audit.file_enabled else None,
        siem_webhook_url=(
            settings.audit.siem_webhook_url if settings.audit.siem_enabled else None
        ),
    )

    backend = None
    if settings.slack_enabled:
        backend = SlackNotificationBackend(settings.notifications.slack_bot_token)
        logger.info("Slack notifications enabled")
    elif settings.notifications.backend == "slack":
        logger.warning("Slack backend selected but no bot token set, logging instead")
    notification_dispatcher.configure(
        backend=backend, frontend_url=settings.notifications.frontend_url
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Access Portal...")

    await init_db()
    logger.info("Database initialized")

    configure_services()

    logger.info(f"Access Portal ready on http://{settings.host}:{settings.port}")

    yield

    logger.info("Shutting down Access Portal...")
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="Access Portal",
    description="Access request, approval and provisioning portal",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(AccessPortalError)
async def access_portal_error_handler(request: Request, exc: AccessPortalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Mount API routes
app.include_router(auth.router, prefix="/api/v1", tags=["auth"])
app.include_router(users.router, prefix="/api/v1", tags=["users"])
app.include_router(systems.router, prefix="/api/v1", tags=["systems"])
app.include_router(grants.router, prefix="/api/v1", tags=["access-grants"])
app.include_router(requests.router, prefix="/api/v1", tags=["access-requests"])
app.include_router(audit.router, prefix="/api/v1", tags=["audit"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "notifications": type(notification_dispatcher.backend).__name__,
    }


def main():
    """Run the application."""
    import uvicorn
    uvicorn.run(
        "access_portal.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
