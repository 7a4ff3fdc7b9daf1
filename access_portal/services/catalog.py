"""Catalog: systems, their instances and access tiers."""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_portal.db.models import AccessTier, System, SystemInstance
from access_portal.services.errors import (
    ConflictError,
    NotFoundError,
    UnprocessableError,
)

logger = logging.getLogger(__name__)


async def list_systems(db: AsyncSession) -> list[System]:
    result = await db.execute(
        select(System)
        .options(selectinload(System.instances), selectinload(System.access_tiers))
        .order_by(System.name)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_system(db: AsyncSession, system_id: str) -> System:
    result = await db.execute(
        select(System)
        .options(selectinload(System.instances), selectinload(System.access_tiers))
        .where(System.id == system_id)
        .execution_options(populate_existing=True)
    )
    system = result.scalar_one_or_none()
    if not system:
        raise NotFoundError("System", system_id)
    return system


async def find_system_by_name(db: AsyncSession, name: str) -> System | None:
    result = await db.execute(select(System).where(System.name == name))
    return result.scalar_one_or_none()


async def create_system(
    db: AsyncSession, name: str, description: str | None = None
) -> System:
    if await find_system_by_name(db, name):
        raise ConflictError(f"System with name '{name}' already exists")

    system = System(name=name, description=description)
    db.add(system)
    await db.flush()
    logger.info(f"Created system {name}")
    return await get_system(db, system.id)


async def update_system(
    db: AsyncSession,
    system_id: str,
    name: str | None = None,
    description: str | None = None,
) -> System:
    system = await get_system(db, system_id)
    if name is not None and name != system.name:
        if await find_system_by_name(db, name):
            raise ConflictError(f"System with name '{name}' already exists")
        system.name = name
    if description is not None:
        system.description = description
    await db.flush()
    return await get_system(db, system_id)


async def list_instances(db: AsyncSession, system_id: str) -> list[SystemInstance]:
    await get_system(db, system_id)
    result = await db.execute(
        select(SystemInstance)
        .options(selectinload(SystemInstance.system))
        .where(SystemInstance.system_id == system_id)
        .order_by(SystemInstance.name)
    )
    return list(result.scalars().all())


async def get_instance(db: AsyncSession, instance_id: str) -> SystemInstance:
    result = await db.execute(
        select(SystemInstance)
        .options(selectinload(SystemInstance.system))
        .where(SystemInstance.id == instance_id)
        .execution_options(populate_existing=True)
    )
    instance = result.scalar_one_or_none()
    if not instance:
        raise NotFoundError("System instance", instance_id)
    return instance


async def find_instance_by_name(
    db: AsyncSession, system_id: str, name: str
) -> SystemInstance | None:
    result = await db.execute(
        select(SystemInstance).where(
            SystemInstance.system_id == system_id, SystemInstance.name == name
        )
    )
    return result.scalar_one_or_none()


async def create_instance(
    db: AsyncSession,
    system_id: str,
    name: str,
    region: str | None = None,
    environment: str | None = None,
) -> SystemInstance:
    system = await get_system(db, system_id)
    if await find_instance_by_name(db, system_id, name):
        raise ConflictError(
            f"Instance '{name}' already exists for system '{system.name}'"
        )

    instance = SystemInstance(
        system_id=system_id, name=name, region=region, environment=environment
    )
    db.add(instance)
    await db.flush()
    logger.info(f"Created instance {system.name}/{name}")
    return await get_instance(db, instance.id)


async def update_instance(
    db: AsyncSession,
    instance_id: str,
    name: str | None = None,
    region: str | None = None,
    environment: str | None = None,
) -> SystemInstance:
    instance = await get_instance(db, instance_id)
    if name is not None and name != instance.name:
        if await find_instance_by_name(db, instance.system_id, name):
            raise ConflictError(
                f"Instance '{name}' already exists for system '{instance.system.name}'"
            )
        instance.name = name
    if region is not None:
        instance.region = region
    if environment is not None:
        instance.environment = environment
    await db.flush()
    return await get_instance(db, instance_id)


async def list_tiers(db: AsyncSession, system_id: str) -> list[AccessTier]:
    await get_system(db, system_id)
    result = await db.execute(
        select(AccessTier)
        .where(AccessTier.system_id == system_id)
        .order_by(AccessTier.name)
    )
    return list(result.scalars().all())


async def get_tier(db: AsyncSession, tier_id: str) -> AccessTier:
    result = await db.execute(
        select(AccessTier)
        .options(selectinload(AccessTier.system))
        .where(AccessTier.id == tier_id)
        .execution_options(populate_existing=True)
    )
    tier = result.scalar_one_or_none()
    if not tier:
        raise NotFoundError("Access tier", tier_id)
    return tier


async def find_tier_by_name(
    db: AsyncSession, system_id: str, name: str
) -> AccessTier | None:
    result = await db.execute(
        select(AccessTier).where(
            AccessTier.system_id == system_id, AccessTier.name == name
        )
    )
    return result.scalar_one_or_none()


async def create_tier(
    db: AsyncSession, system_id: str, name: str, description: str | None = None
) -> AccessTier:
    system = await get_system(db, system_id)
    if await find_tier_by_name(db, system_id, name):
        raise ConflictError(
            f"Access tier '{name}' already exists for system '{system.name}'"
        )

    tier = AccessTier(system_id=system_id, name=name, description=description)
    db.add(tier)
    await db.flush()
    logger.info(f"Created access tier {system.name}/{name}")
    return await get_tier(db, tier.id)


async def resolve_instance_and_tier(
    db: AsyncSession, instance_id: str, tier_id: str
) -> tuple[SystemInstance, AccessTier]:
    """Load an (instance, tier) pair and check they share a system.

    Raises:
        NotFoundError: If either does not exist
        UnprocessableError: If the tier belongs to another system
    """
    instance = await get_instance(db, instance_id)
    tier = await get_tier(db, tier_id)
    if tier.system_id != instance.system_id:
        raise UnprocessableError(
            f"Access tier '{tier.name}' does not belong to system "
            f"'{instance.system.name}'"
        )
    return instance, tier
