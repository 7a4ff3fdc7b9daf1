"""Notification backend that writes messages to the application log."""
import logging

from access_portal.services.notifications.base import (
    NotificationContext,
    describe_items,
)

logger = logging.getLogger(__name__)


class LoggingNotificationBackend:
    """Development backend: every notification becomes one INFO log block."""

    async def notify_manager(self, context: NotificationContext) -> None:
        manager = context.request.target_user.manager
        if manager is None:
            logger.info(
                f"No manager for {context.request.target_user.email}, "
                f"skipping '{context.action}' notification"
            )
            return
        self._emit(manager.email, context)

    async def notify_system_owners(self, context: NotificationContext) -> None:
        for owner in context.system_owners:
            self._emit(owner.email, context)

    async def notify_requester(self, context: NotificationContext) -> None:
        self._emit(context.request.requester.email, context)

    def _emit(self, recipient: str, context: NotificationContext) -> None:
        request = context.request
        lines = [
            f"[notification] action={context.action} to={recipient}",
            f"  request={request.id} status={request.status}",
            f"  for={request.target_user.name} <{request.target_user.email}>",
            f"  by={request.requester.name} <{request.requester.email}>",
        ]
        lines.extend(f"  - {item}" for item in describe_items(request))
        if context.reason:
            lines.append(f"  reason: {context.reason}")
        if context.link:
            lines.append(f"  link: {context.link}")
        logger.info("\n".join(lines))
