"""Fire-and-forget wrapper around a notification backend."""
import logging

from access_portal.services.notifications.base import (
    NotificationBackend,
    NotificationContext,
    build_link,
)
from access_portal.services.notifications.log_backend import (
    LoggingNotificationBackend,
)

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Invokes the configured backend and never lets its failures escape."""

    def __init__(self):
        self.backend: NotificationBackend = LoggingNotificationBackend()
        self.frontend_url = "http://localhost:5173"

    def configure(
        self,
        backend: NotificationBackend | None = None,
        frontend_url: str | None = None,
    ):
        """Swap the delivery backend and/or deep-link base URL."""
        if backend is not None:
            self.backend = backend
        if frontend_url:
            self.frontend_url = frontend_url

    def link(self, section: str) -> str:
        return build_link(self.frontend_url, section)

    async def notify_manager(self, context: NotificationContext) -> None:
        await self._dispatch("notify_manager", context)

    async def notify_system_owners(self, context: NotificationContext) -> None:
        await self._dispatch("notify_system_owners", context)

    async def notify_requester(self, context: NotificationContext) -> None:
        await self._dispatch("notify_requester", context)

    async def _dispatch(self, method: str, context: NotificationContext) -> None:
        try:
            await getattr(self.backend, method)(context)
        except Exception:
            logger.exception(
                f"Notification {method} failed for request {context.request.id} "
                f"(action={context.action})"
            )


# Global singleton
notification_dispatcher = NotificationDispatcher()
