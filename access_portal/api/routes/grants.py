"""Access grant API endpoints."""
import logging
import math
from typing import Literal

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import get_current_user, require_admin
from access_portal.api.schemas import (
    AccessGrantCreate,
    AccessGrantResponse,
    ApiListResponse,
    ApiResponse,
    BulkActionResponse,
    BulkCreateResponse,
    BulkGrantsCreate,
    BulkIdsRequest,
    GrantPageResponse,
    GrantStatus,
    GrantStatusUpdate,
)
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import catalog, csv_import, grants, ownership
from access_portal.services.errors import BadRequestError

logger = logging.getLogger(__name__)

router = APIRouter()

TEMPLATE_FILENAME = "access-grants-template.csv"


# --- Overview ---

@router.get("/access-grants", response_model=GrantPageResponse)
async def list_grants(
    user_id: str | None = None,
    system_id: str | None = None,
    system_instance_id: str | None = None,
    access_tier_id: str | None = None,
    status: GrantStatus | None = None,
    user_search: str | None = Query(None, description="Substring of user name or email"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=grants.MAX_PAGE_SIZE),
    sort_by: Literal["userName", "systemName", "grantedAt"] = "grantedAt",
    sort_order: Literal["asc", "desc"] = "desc",
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Filtered, sorted and paginated grant overview."""
    result, total = await grants.find_all(
        db,
        user_id=user_id,
        system_id=system_id,
        system_instance_id=system_instance_id,
        access_tier_id=access_tier_id,
        status=status,
        user_search=user_search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return GrantPageResponse(
        data=[AccessGrantResponse.model_validate(g) for g in result],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@router.post(
    "/access-grants", response_model=ApiResponse[AccessGrantResponse], status_code=201
)
async def create_grant(
    body: AccessGrantCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a grant directly. Requires ownership of the system or admin."""
    instance = await catalog.get_instance(db, body.system_instance_id)
    await ownership.require_owner_or_admin(
        db, current_user.id, instance.system_id, "create grants for this system"
    )
    grant = await grants.create_grant(
        db,
        user_id=body.user_id,
        system_instance_id=body.system_instance_id,
        access_tier_id=body.access_tier_id,
        granted_by_id=body.granted_by_id or current_user.id,
        granted_at=body.granted_at,
        status=body.status,
    )
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant), message="Access grant created"
    )


@router.get(
    "/access-grants/pending-removal",
    response_model=ApiListResponse[AccessGrantResponse],
)
async def pending_removal(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Grants flagged for removal on systems the current user owns."""
    result = await grants.find_pending_removal(db, current_user.id)
    return ApiListResponse(
        data=[AccessGrantResponse.model_validate(g) for g in result],
        total=len(result),
    )


# --- Bulk ---

@router.post("/access-grants/bulk", response_model=ApiResponse[BulkCreateResponse])
async def bulk_create_grants(
    body: BulkGrantsCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create grants from JSON rows (admin only).

    Always returns 200 with a per-row report, even when every row failed.
    """
    inputs = [
        grants.GrantInput(
            system_instance_id=g.system_instance_id,
            access_tier_id=g.access_tier_id,
            user_id=g.user_id,
            granted_by_id=g.granted_by_id or current_user.id,
            granted_at=g.granted_at,
            status=g.status,
        )
        for g in body.grants
    ]
    result = await grants.bulk_create(db, inputs)
    return ApiResponse(
        data=BulkCreateResponse.from_result(result),
        message=f"{result.success} created, {result.skipped} skipped, {result.failed} failed",
    )


@router.post("/access-grants/bulk/csv", response_model=ApiResponse[BulkCreateResponse])
async def upload_csv(
    file: UploadFile = File(...),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Import grants from a CSV upload (admin only)."""
    content = await file.read()
    csv_import.check_upload(file.filename, content)
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        raise BadRequestError("CSV file must be UTF-8 encoded") from None

    logger.info(f"CSV import of {file.filename} by {current_user.email}")
    result = await csv_import.import_csv(db, text, granted_by_id=current_user.id)
    return ApiResponse(
        data=BulkCreateResponse.from_result(result),
        message=f"{result.success} created, {result.skipped} skipped, {result.failed} failed",
    )


@router.get("/access-grants/bulk/csv/template")
async def csv_template(_: User = Depends(get_current_user)):
    """Download the CSV import template."""
    return Response(
        content=csv_import.generate_template(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"'},
    )


@router.post(
    "/access-grants/bulk/mark-to-remove", response_model=ApiResponse[BulkActionResponse]
)
async def bulk_mark_to_remove(
    body: BulkIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await grants.bulk_mark_to_remove(db, body.ids, current_user.id)
    return ApiResponse(data=BulkActionResponse.from_result(result))


@router.post(
    "/access-grants/bulk/mark-removed", response_model=ApiResponse[BulkActionResponse]
)
async def bulk_mark_removed(
    body: BulkIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await grants.bulk_mark_removed(db, body.ids, current_user.id)
    return ApiResponse(data=BulkActionResponse.from_result(result))


# --- Single grant ---

@router.get("/access-grants/{grant_id}", response_model=ApiResponse[AccessGrantResponse])
async def get_grant(
    grant_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    grant = await grants.get_grant(db, grant_id)
    return ApiResponse(data=AccessGrantResponse.model_validate(grant))


@router.patch(
    "/access-grants/{grant_id}/status", response_model=ApiResponse[AccessGrantResponse]
)
async def update_grant_status(
    grant_id: str,
    body: GrantStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Change a grant's status. Requires ownership of the system or admin."""
    grant = await grants.get_grant(db, grant_id)
    await ownership.require_owner_or_admin(
        db,
        current_user.id,
        grant.system_instance.system_id,
        "change the status of grants for this system",
    )
    grant = await grants.update_status(db, grant_id, body.status, current_user.id)
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant),
        message=f"Grant status changed to {grant.status}",
    )


@router.post(
    "/access-grants/{grant_id}/mark-to-remove",
    response_model=ApiResponse[AccessGrantResponse],
)
async def mark_to_remove(
    grant_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    grant = await grants.mark_to_remove(db, grant_id, current_user.id)
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant), message="Grant marked for removal"
    )


@router.post(
    "/access-grants/{grant_id}/mark-removed",
    response_model=ApiResponse[AccessGrantResponse],
)
async def mark_removed(
    grant_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    grant = await grants.mark_removed(db, grant_id, current_user.id)
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant), message="Grant removed"
    )


@router.post(
    "/access-grants/{grant_id}/cancel-removal",
    response_model=ApiResponse[AccessGrantResponse],
)
async def cancel_removal(
    grant_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    grant = await grants.cancel_removal(db, grant_id, current_user.id)
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant), message="Grant removal cancelled"
    )
