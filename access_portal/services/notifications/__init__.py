"""Notification dispatch for access request workflow events."""
from access_portal.services.notifications.base import (
    ACTIONS,
    NotificationBackend,
    NotificationContext,
    build_link,
)
from access_portal.services.notifications.dispatcher import (
    NotificationDispatcher,
    notification_dispatcher,
)
from access_portal.services.notifications.log_backend import (
    LoggingNotificationBackend,
)
from access_portal.services.notifications.slack_backend import (
    SlackNotificationBackend,
)

__all__ = [
    "ACTIONS",
    "NotificationBackend",
    "NotificationContext",
    "NotificationDispatcher",
    "LoggingNotificationBackend",
    "SlackNotificationBackend",
    "build_link",
    "notification_dispatcher",
]
