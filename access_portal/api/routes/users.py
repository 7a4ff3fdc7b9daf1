"""User management API endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import get_current_user, require_admin
from access_portal.api.schemas import (
    AccessGrantResponse,
    AccessRequestResponse,
    ApiListResponse,
    ApiResponse,
    GrantStatus,
    ManagerAssign,
    RequestStatus,
    RoleAssign,
    RolesResponse,
    SystemOwnerResponse,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import grants, ownership, requests, roles, users

router = APIRouter()


# --- Current user ---

@router.get("/users/me/grants", response_model=ApiListResponse[AccessGrantResponse])
async def my_grants(
    status: GrantStatus | None = Query(None, description="Filter by grant status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Grants held by the current user."""
    result, total = await grants.find_all(
        db,
        user_id=current_user.id,
        status=status,
        limit=grants.MAX_PAGE_SIZE,
        sort_by="systemName",
        sort_order="asc",
    )
    return ApiListResponse(
        data=[AccessGrantResponse.model_validate(g) for g in result],
        total=total,
    )


@router.get(
    "/users/me/requests", response_model=ApiListResponse[AccessRequestResponse]
)
async def my_requests(
    status: RequestStatus | None = Query(None, description="Filter by request status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests the current user submitted or is the target of."""
    result = await requests.find_all_for_user(db, current_user.id, status)
    return ApiListResponse(
        data=[AccessRequestResponse.model_validate(r) for r in result],
        total=len(result),
    )


# --- Users ---

@router.get("/users", response_model=ApiListResponse[UserResponse])
async def list_users(
    search: str | None = Query(None, description="Substring of name or email"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List users that are not soft-deleted."""
    result, total = await users.list_users(db, search=search, offset=offset, limit=limit)
    return ApiListResponse(
        data=[UserResponse.model_validate(u) for u in result],
        total=total,
    )


@router.post("/users", response_model=ApiResponse[UserResponse], status_code=201)
async def create_user(
    body: UserCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a user (admin only)."""
    user = await users.create_user(
        db,
        email=body.email,
        name=body.name,
        manager_id=body.manager_id,
        slack_email=body.slack_email,
    )
    return ApiResponse(
        data=UserResponse.model_validate(user),
        message=f"User {user.email} created",
    )


@router.get("/users/{user_id}", response_model=ApiResponse[UserResponse])
async def get_user(
    user_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await users.get_user(db, user_id)
    return ApiResponse(data=UserResponse.model_validate(user))


@router.patch("/users/{user_id}", response_model=ApiResponse[UserResponse])
async def update_user(
    user_id: str,
    body: UserUpdate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Update a user's profile (admin only)."""
    user = await users.update_user(
        db,
        user_id,
        email=body.email,
        name=body.name,
        slack_email=body.slack_email,
    )
    return ApiResponse(data=UserResponse.model_validate(user), message="User updated")


@router.delete("/users/{user_id}", response_model=ApiResponse[None])
async def delete_user(
    user_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete a user and remove their live grants (admin only)."""
    await users.soft_delete_user(db, user_id)
    return ApiResponse(data=None, message="User deleted")


@router.put("/users/{user_id}/manager", response_model=ApiResponse[UserResponse])
async def assign_manager(
    user_id: str,
    body: ManagerAssign,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set or clear a user's direct manager (admin only)."""
    user = await users.assign_manager(db, user_id, body.manager_id)
    return ApiResponse(data=UserResponse.model_validate(user), message="Manager updated")


# --- Roles ---

@router.get("/users/{user_id}/roles", response_model=ApiResponse[RolesResponse])
async def get_roles(
    user_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Effective roles of a user."""
    await users.get_user(db, user_id)
    return ApiResponse(
        data=RolesResponse(
            user_id=user_id, roles=await roles.effective_roles(db, user_id)
        )
    )


@router.post("/users/{user_id}/roles", response_model=ApiResponse[RolesResponse])
async def assign_role(
    user_id: str,
    body: RoleAssign,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await roles.assign_role(db, user_id, body.role)
    return ApiResponse(
        data=RolesResponse(user_id=user_id, roles=result),
        message=f"Role '{body.role}' assigned",
    )


@router.delete(
    "/users/{user_id}/roles/{role}", response_model=ApiResponse[RolesResponse]
)
async def revoke_role(
    user_id: str,
    role: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await roles.revoke_role(db, user_id, role)
    return ApiResponse(
        data=RolesResponse(user_id=user_id, roles=result),
        message=f"Role '{role}' revoked",
    )


@router.get(
    "/users/{user_id}/owned-systems",
    response_model=ApiListResponse[SystemOwnerResponse],
)
async def owned_systems(
    user_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Systems a user owns."""
    await users.get_user(db, user_id)
    owners = await ownership.find_by_user(db, user_id)
    return ApiListResponse(
        data=[SystemOwnerResponse.model_validate(o) for o in owners],
        total=len(owners),
    )
