"""Access request workflow API endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import get_current_user
from access_portal.api.schemas import (
    AccessGrantResponse,
    AccessRequestCreate,
    AccessRequestItemResponse,
    AccessRequestResponse,
    ApiListResponse,
    ApiResponse,
    BulkIdsRequest,
    BulkProvisionResponse,
    CopyGrantsRequest,
    CopyGrantsResponse,
    ProvisioningItemResponse,
    RejectBody,
    RequestStatus,
)
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import requests

router = APIRouter()


@router.post(
    "/access-requests",
    response_model=ApiResponse[AccessRequestResponse],
    status_code=201,
)
async def create_request(
    body: AccessRequestCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Submit a request on behalf of the target user.

    A request submitted by the target user's direct manager is approved and
    provisioned immediately.
    """
    request = await requests.create_request(
        db,
        target_user_id=body.target_user_id,
        items=[
            requests.RequestItemInput(
                system_instance_id=i.system_instance_id,
                access_tier_id=i.access_tier_id,
            )
            for i in body.items
        ],
        requester_id=current_user.id,
        note=body.note,
    )
    message = (
        "Request auto-approved" if request.status == "approved" else "Request submitted"
    )
    return ApiResponse(data=AccessRequestResponse.model_validate(request), message=message)


@router.get("/access-requests", response_model=ApiListResponse[AccessRequestResponse])
async def list_requests(
    status: RequestStatus | None = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests the current user submitted or is the target of."""
    result = await requests.find_all_for_user(db, current_user.id, status)
    return ApiListResponse(
        data=[AccessRequestResponse.model_validate(r) for r in result],
        total=len(result),
    )


@router.get(
    "/access-requests/pending-approval",
    response_model=ApiListResponse[AccessRequestResponse],
)
async def pending_approval(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests waiting for the current user's approval as a manager."""
    result = await requests.find_pending_for_manager(db, current_user.id)
    return ApiListResponse(
        data=[AccessRequestResponse.model_validate(r) for r in result],
        total=len(result),
    )


@router.get(
    "/access-requests/pending-provisioning",
    response_model=ApiListResponse[ProvisioningItemResponse],
)
async def pending_provisioning(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approved items on the current user's systems that have no grant yet."""
    result = await requests.find_pending_provisioning(db, current_user.id)
    return ApiListResponse(
        data=[ProvisioningItemResponse.from_item(i) for i in result],
        total=len(result),
    )


@router.get(
    "/access-requests/owned-systems",
    response_model=ApiListResponse[AccessRequestResponse],
)
async def requests_for_owned_systems(
    status: RequestStatus | None = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests with at least one item on a system the current user owns."""
    result = await requests.find_all_for_system_owner(db, current_user.id, status)
    return ApiListResponse(
        data=[AccessRequestResponse.model_validate(r) for r in result],
        total=len(result),
    )


@router.post("/access-requests/copy", response_model=ApiResponse[CopyGrantsResponse])
async def copy_grants(
    body: CopyGrantsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Request the source user's active access for the target user."""
    result = await requests.copy_grants_from_user(
        db,
        source_user_id=body.source_user_id,
        target_user_id=body.target_user_id,
        requester_id=current_user.id,
        system_ids=body.system_ids,
        exclude_system_ids=body.exclude_system_ids,
    )
    return ApiResponse(
        data=CopyGrantsResponse.from_result(result),
        message=f"{len(result.created)} requests created, {len(result.skipped)} skipped",
    )


# --- Items ---

@router.post(
    "/access-requests/items/bulk-provision",
    response_model=ApiResponse[BulkProvisionResponse],
)
async def bulk_provision(
    body: BulkIdsRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await requests.bulk_provision(db, body.ids, current_user.id)
    return ApiResponse(data=BulkProvisionResponse.from_result(result))


@router.post(
    "/access-requests/items/{item_id}/approve",
    response_model=ApiResponse[AccessRequestItemResponse],
)
async def approve_item(
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await requests.approve_item(db, item_id, current_user.id)
    return ApiResponse(
        data=AccessRequestItemResponse.model_validate(item), message="Item approved"
    )


@router.post(
    "/access-requests/items/{item_id}/reject",
    response_model=ApiResponse[AccessRequestItemResponse],
)
async def reject_item(
    item_id: str,
    body: RejectBody | None = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await requests.reject_item(
        db, item_id, current_user.id, body.reason if body else None
    )
    return ApiResponse(
        data=AccessRequestItemResponse.model_validate(item), message="Item rejected"
    )


@router.post(
    "/access-requests/items/{item_id}/provision",
    response_model=ApiResponse[AccessGrantResponse],
)
async def provision_item(
    item_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create (or link) the grant for an approved item."""
    grant = await requests.provision_item(db, item_id, current_user.id)
    return ApiResponse(
        data=AccessGrantResponse.model_validate(grant), message="Access provisioned"
    )


# --- Single request ---

@router.get(
    "/access-requests/{request_id}", response_model=ApiResponse[AccessRequestResponse]
)
async def get_request(
    request_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    request = await requests.get_request(db, request_id)
    return ApiResponse(data=AccessRequestResponse.model_validate(request))


@router.post(
    "/access-requests/{request_id}/approve",
    response_model=ApiResponse[AccessRequestResponse],
)
async def approve_request(
    request_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Approve a whole request as the target user's manager."""
    request = await requests.approve_request(db, request_id, current_user.id)
    return ApiResponse(
        data=AccessRequestResponse.model_validate(request), message="Request approved"
    )


@router.post(
    "/access-requests/{request_id}/reject",
    response_model=ApiResponse[AccessRequestResponse],
)
async def reject_request(
    request_id: str,
    body: RejectBody | None = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    request = await requests.reject_request(
        db, request_id, current_user.id, body.reason if body else None
    )
    return ApiResponse(
        data=AccessRequestResponse.model_validate(request), message="Request rejected"
    )
