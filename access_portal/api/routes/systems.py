"""Catalog API endpoints: systems, instances, access tiers and owners."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.api.dependencies.auth import get_current_user, require_admin
from access_portal.api.schemas import (
    ApiListResponse,
    ApiResponse,
    InstanceCreate,
    InstanceResponse,
    InstanceUpdate,
    OwnerAssign,
    SystemCreate,
    SystemOwnerResponse,
    SystemResponse,
    SystemUpdate,
    TierCreate,
    TierResponse,
)
from access_portal.db.database import get_db
from access_portal.db.models import User
from access_portal.services import catalog, ownership

router = APIRouter()


# --- Systems ---

@router.get("/systems", response_model=ApiListResponse[SystemResponse])
async def list_systems(
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List systems with their instances and tiers."""
    systems = await catalog.list_systems(db)
    return ApiListResponse(
        data=[SystemResponse.model_validate(s) for s in systems],
        total=len(systems),
    )


@router.post("/systems", response_model=ApiResponse[SystemResponse], status_code=201)
async def create_system(
    body: SystemCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    system = await catalog.create_system(db, body.name, body.description)
    return ApiResponse(
        data=SystemResponse.model_validate(system),
        message=f"System {system.name} created",
    )


@router.get("/systems/{system_id}", response_model=ApiResponse[SystemResponse])
async def get_system(
    system_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    system = await catalog.get_system(db, system_id)
    return ApiResponse(data=SystemResponse.model_validate(system))


@router.patch("/systems/{system_id}", response_model=ApiResponse[SystemResponse])
async def update_system(
    system_id: str,
    body: SystemUpdate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    system = await catalog.update_system(
        db, system_id, name=body.name, description=body.description
    )
    return ApiResponse(data=SystemResponse.model_validate(system), message="System updated")


# --- Instances ---

@router.get(
    "/systems/{system_id}/instances",
    response_model=ApiListResponse[InstanceResponse],
)
async def list_instances(
    system_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    instances = await catalog.list_instances(db, system_id)
    return ApiListResponse(
        data=[InstanceResponse.model_validate(i) for i in instances],
        total=len(instances),
    )


@router.post(
    "/systems/{system_id}/instances",
    response_model=ApiResponse[InstanceResponse],
    status_code=201,
)
async def create_instance(
    system_id: str,
    body: InstanceCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    instance = await catalog.create_instance(
        db,
        system_id,
        name=body.name,
        region=body.region,
        environment=body.environment,
    )
    return ApiResponse(
        data=InstanceResponse.model_validate(instance),
        message=f"Instance {instance.name} created",
    )


@router.patch("/instances/{instance_id}", response_model=ApiResponse[InstanceResponse])
async def update_instance(
    instance_id: str,
    body: InstanceUpdate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    instance = await catalog.update_instance(
        db,
        instance_id,
        name=body.name,
        region=body.region,
        environment=body.environment,
    )
    return ApiResponse(
        data=InstanceResponse.model_validate(instance), message="Instance updated"
    )


# --- Access tiers ---

@router.get(
    "/systems/{system_id}/access-tiers",
    response_model=ApiListResponse[TierResponse],
)
async def list_tiers(
    system_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tiers = await catalog.list_tiers(db, system_id)
    return ApiListResponse(
        data=[TierResponse.model_validate(t) for t in tiers],
        total=len(tiers),
    )


@router.post(
    "/systems/{system_id}/access-tiers",
    response_model=ApiResponse[TierResponse],
    status_code=201,
)
async def create_tier(
    system_id: str,
    body: TierCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    tier = await catalog.create_tier(db, system_id, body.name, body.description)
    return ApiResponse(
        data=TierResponse.model_validate(tier),
        message=f"Access tier {tier.name} created",
    )


# --- Owners ---

@router.get(
    "/systems/{system_id}/owners",
    response_model=ApiListResponse[SystemOwnerResponse],
)
async def list_owners(
    system_id: str,
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    owners = await ownership.find_by_system(db, system_id)
    return ApiListResponse(
        data=[SystemOwnerResponse.model_validate(o) for o in owners],
        total=len(owners),
    )


@router.post(
    "/systems/{system_id}/owners",
    response_model=ApiResponse[SystemOwnerResponse],
    status_code=201,
)
async def assign_owner(
    system_id: str,
    body: OwnerAssign,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Make a user an owner of a system (admin only)."""
    owner = await ownership.assign_owner(db, body.user_id, system_id)
    return ApiResponse(
        data=SystemOwnerResponse.model_validate(owner), message="Owner assigned"
    )


@router.delete("/systems/{system_id}/owners/{user_id}", response_model=ApiResponse[None])
async def remove_owner(
    system_id: str,
    user_id: str,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await ownership.remove_owner(db, user_id, system_id)
    return ApiResponse(data=None, message="Owner removed")
