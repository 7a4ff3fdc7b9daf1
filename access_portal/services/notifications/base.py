"""Notification contract shared by the workflow and the delivery backends."""
from dataclasses import dataclass, field
from typing import Protocol

from access_portal.db.models import AccessRequest, User

ACTIONS = ("request", "approve", "reject", "activate", "to_remove", "remove")


@dataclass
class NotificationContext:
    """What happened to a request and who should hear about it.

    ``request`` must be loaded with its target user, requester, target
    user's manager and items (instance, system and tier) attached.
    """

    request: AccessRequest
    action: str
    link: str | None = None
    reason: str | None = None
    # Owners of the systems touched by the request, resolved by the workflow
    system_owners: list[User] = field(default_factory=list)

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ValueError(f"Unknown notification action: {self.action}")


class NotificationBackend(Protocol):
    """Protocol for notification delivery."""

    async def notify_manager(self, context: NotificationContext) -> None:
        """Notify the target user's direct manager."""
        ...

    async def notify_system_owners(self, context: NotificationContext) -> None:
        """Notify the owners of every system on the request."""
        ...

    async def notify_requester(self, context: NotificationContext) -> None:
        """Notify whoever submitted the request."""
        ...


def build_link(base_url: str, section: str) -> str:
    """Deep link into a frontend section, e.g. ``approvals`` or ``my-access``."""
    return f"{base_url.rstrip('/')}/#{section}"


def describe_items(request: AccessRequest) -> list[str]:
    """One line per item: "System / Instance (Tier)"."""
    lines = []
    for item in request.items:
        instance = item.system_instance
        lines.append(
            f"{instance.system.name} / {instance.name} ({item.access_tier.name})"
        )
    return lines


def slack_address(user: User) -> str:
    """Address used to find a user in Slack."""
    return user.slack_email or user.email
