"""Append-only audit trail for workflow transitions.

Every entry lands in the ``audit_logs`` table. Entries can also be mirrored
as JSON lines to a local file and posted to a SIEM webhook.
"""
import json
import logging
from datetime import datetime
from pathlib import Path

import aiofiles
import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.db.models import AuditLog

logger = logging.getLogger(__name__)


def audit_event(entry: AuditLog, details: dict | None) -> dict:
    """Shape an entry for the file mirror and the SIEM webhook."""
    created = entry.created_at or datetime.utcnow()
    return {
        "id": entry.id,
        "timestamp": created.isoformat(),
        "action": entry.action,
        "actor_id": entry.actor_id,
        "target_user_id": entry.target_user_id,
        "resource": {"type": entry.resource_type, "id": entry.resource_id},
        "details": details,
        "reason": entry.reason,
    }


class AuditService:
    """Writes audit entries; a failed write never fails the workflow.

    The row is inserted inside a SAVEPOINT so an insert error leaves the
    caller's transaction usable.
    """

    def __init__(self):
        self.file_path: Path | None = None
        self.siem_webhook_url: str | None = None

    def configure(
        self, file_path: str | None = None, siem_webhook_url: str | None = None
    ):
        """Enable the file mirror and/or the SIEM webhook.

        The file's parent directory is created on the spot.
        """
        if file_path:
            self.file_path = Path(file_path)
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if siem_webhook_url:
            self.siem_webhook_url = siem_webhook_url

    async def log(
        self,
        db: AsyncSession,
        *,
        action: str,
        actor_id: str | None,
        resource_type: str,
        resource_id: str | None = None,
        target_user_id: str | None = None,
        details: dict | None = None,
        reason: str | None = None,
    ) -> AuditLog | None:
        """Record one workflow event.

        Args:
            db: Database session
            action: request_created, item_provisioned, grant_removed, ...
            actor_id: User who acted, None for system actions
            resource_type: access_request, access_request_item or access_grant
            resource_id: ID of the affected resource
            target_user_id: User whose access is affected
            details: JSON-serialisable extras
            reason: Free-text reason (rejections)

        Returns:
            The stored entry, or None when the insert failed
        """
        entry = AuditLog(
            action=action,
            actor_id=actor_id,
            target_user_id=target_user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details_json=json.dumps(details, default=str) if details else None,
            reason=reason,
        )
        try:
            async with db.begin_nested():
                db.add(entry)
            await db.refresh(entry)
        except Exception as e:
            logger.error(f"Audit entry '{action}' not stored: {e}")
            return None

        event = audit_event(entry, details)
        if self.file_path:
            await self._append_line(event)
        if self.siem_webhook_url:
            await self._post_webhook(event)
        return entry

    async def _append_line(self, event: dict):
        try:
            async with aiofiles.open(self.file_path, mode="a") as f:
                await f.write(json.dumps(event, default=str) + "\n")
        except Exception as e:
            logger.error(f"Audit file mirror failed: {e}")

    async def _post_webhook(self, event: dict):
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                await client.post(self.siem_webhook_url, json=event)
        except Exception as e:
            logger.error(f"Audit SIEM webhook failed: {e}")


audit_service = AuditService()


async def list_audit_logs(
    db: AsyncSession,
    action: str | None = None,
    actor_id: str | None = None,
    target_user_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    """List audit entries, newest first.

    Returns:
        Tuple of (entries, total matching count)
    """
    query = select(AuditLog)
    if action:
        query = query.where(AuditLog.action == action)
    if actor_id:
        query = query.where(AuditLog.actor_id == actor_id)
    if target_user_id:
        query = query.where(AuditLog.target_user_id == target_user_id)
    if resource_type:
        query = query.where(AuditLog.resource_type == resource_type)
    if resource_id:
        query = query.where(AuditLog.resource_id == resource_id)

    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar() or 0

    query = (
        query.order_by(AuditLog.created_at.desc(), AuditLog.id)
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all()), total
