"""Audit log API routes."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import require_admin
from access_portal.api.schemas import ApiListResponse, AuditLogResponse
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services.audit import list_audit_logs

router = APIRouter()


@router.get("/audit-logs", response_model=ApiListResponse[AuditLogResponse])
async def get_audit_logs(
    action: str | None = None,
    actor_id: str | None = None,
    target_user_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """List audit log entries, newest first (admin only).

    Args:
        action: Filter by action (request_created, grant_removed, ...)
        actor_id: Filter by acting user
        target_user_id: Filter by the user whose access changed
        resource_type: Filter by resource type (access_request, access_grant, ...)
        resource_id: Filter by resource ID
    """
    entries, total = await list_audit_logs(
        db,
        action=action,
        actor_id=actor_id,
        target_user_id=target_user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        limit=limit,
        offset=offset,
    )
    return ApiListResponse(
        data=[AuditLogResponse.from_entry(e) for e in entries],
        total=total,
    )
