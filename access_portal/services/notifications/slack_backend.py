"""Slack direct-message notification backend."""
import logging

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from access_portal.db.models import User
from access_portal.services.notifications.base import (
    NotificationContext,
    describe_items,
    slack_address,
)

logger = logging.getLogger(__name__)

HEADLINES = {
    "request": "New access request awaiting your approval",
    "approve": "Access request approved",
    "reject": "Access request rejected",
    "activate": "Access has been provisioned",
    "to_remove": "Access marked for removal",
    "remove": "Access removed",
}


class SlackNotificationBackend:
    """Deliver notifications as Slack DMs via the Web API.

    Users are resolved with ``users.lookupByEmail`` using their Slack address
    (``slack_email`` when set, else the login email). Lookups are cached for
    the lifetime of the backend. A miss is cached only when Slack reports
    ``users_not_found``; other API errors are retried on the next message.
    """

    def __init__(self, token: str, client: AsyncWebClient | None = None):
        self.client = client or AsyncWebClient(token=token)
        self._user_ids: dict[str, str | None] = {}

    async def notify_manager(self, context: NotificationContext) -> None:
        manager = context.request.target_user.manager
        if manager is None:
            logger.warning(
                f"Target user {context.request.target_user.email} has no manager"
            )
            return
        await self._send(manager, context)

    async def notify_system_owners(self, context: NotificationContext) -> None:
        for owner in context.system_owners:
            await self._send(owner, context)

    async def notify_requester(self, context: NotificationContext) -> None:
        await self._send(context.request.requester, context)

    async def lookup_user_id(self, address: str) -> str | None:
        """Resolve an email address to a Slack user ID."""
        if address in self._user_ids:
            return self._user_ids[address]

        try:
            response = await self.client.users_lookupByEmail(email=address)
            user_id = response["user"]["id"]
        except SlackApiError as exc:
            error_code = exc.response.get("error") if exc.response else str(exc)
            logger.warning(f"Slack lookup failed for {address}: {error_code}")
            if error_code != "users_not_found":
                return None
            user_id = None

        self._user_ids[address] = user_id
        return user_id

    async def _send(self, recipient: User, context: NotificationContext) -> None:
        address = slack_address(recipient)
        user_id = await self.lookup_user_id(address)
        if user_id is None:
            logger.info(f"No Slack user for {address}, notification dropped")
            return

        headline = HEADLINES[context.action]
        await self.client.chat_postMessage(
            channel=user_id,
            text=headline,
            blocks=self.build_blocks(context, headline),
        )
        logger.debug(f"Sent '{context.action}' notification to {address}")

    @staticmethod
    def build_blocks(context: NotificationContext, headline: str) -> list[dict]:
        request = context.request
        items = "\n".join(f"• {line}" for line in describe_items(request))
        blocks: list[dict] = [
            {"type": "header", "text": {"type": "plain_text", "text": headline}},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*For:*\n{request.target_user.name}"},
                    {"type": "mrkdwn", "text": f"*Requested by:*\n{request.requester.name}"},
                ],
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Access:*\n{items}"}},
        ]
        if request.note and context.action == "request":
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": f"*Note:*\n{request.note}"}}
            )
        if context.reason:
            blocks.append(
                {"type": "section", "text": {"type": "mrkdwn", "text": f"*Reason:*\n{context.reason}"}}
            )
        if context.link:
            blocks.append(
                {
                    "type": "actions",
                    "elements": [
                        {
                            "type": "button",
                            "text": {"type": "plain_text", "text": "Open portal"},
                            "url": context.link,
                        }
                    ],
                }
            )
        return blocks
