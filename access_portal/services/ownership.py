"""Ownership registry: which users may provision and remove grants per system."""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_portal.db.models import SystemOwner, User
from access_portal.services import catalog, roles, users
from access_portal.services.errors import ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)


async def is_owner(db: AsyncSession, user_id: str, system_id: str) -> bool:
    result = await db.execute(
        select(SystemOwner.id).where(
            SystemOwner.user_id == user_id, SystemOwner.system_id == system_id
        )
    )
    return result.first() is not None


async def require_owner(
    db: AsyncSession, user_id: str, system_id: str, action: str
) -> None:
    """Raise ForbiddenError unless user_id owns system_id."""
    if not await is_owner(db, user_id, system_id):
        raise ForbiddenError(f"Only system owners can {action}")


async def require_owner_or_admin(
    db: AsyncSession, user_id: str, system_id: str, action: str
) -> None:
    if await roles.is_admin(db, user_id):
        return
    await require_owner(db, user_id, system_id, action)


async def owned_system_ids(db: AsyncSession, user_id: str) -> list[str]:
    result = await db.execute(
        select(SystemOwner.system_id).where(SystemOwner.user_id == user_id)
    )
    return [row[0] for row in result.fetchall()]


async def find_by_system(db: AsyncSession, system_id: str) -> list[SystemOwner]:
    await catalog.get_system(db, system_id)
    result = await db.execute(
        select(SystemOwner)
        .options(selectinload(SystemOwner.user), selectinload(SystemOwner.system))
        .where(SystemOwner.system_id == system_id)
        .order_by(SystemOwner.created_at)
    )
    return list(result.scalars().all())


async def find_by_user(db: AsyncSession, user_id: str) -> list[SystemOwner]:
    result = await db.execute(
        select(SystemOwner)
        .options(selectinload(SystemOwner.user), selectinload(SystemOwner.system))
        .where(SystemOwner.user_id == user_id)
        .order_by(SystemOwner.created_at)
    )
    return list(result.scalars().all())


async def owners_of_systems(db: AsyncSession, system_ids: set[str]) -> list[User]:
    """Distinct owner users across several systems."""
    if not system_ids:
        return []
    result = await db.execute(
        select(User)
        .join(SystemOwner, SystemOwner.user_id == User.id)
        .where(SystemOwner.system_id.in_(system_ids), User.deleted_at.is_(None))
        .distinct()
        .order_by(User.email)
    )
    return list(result.scalars().all())


async def assign_owner(db: AsyncSession, user_id: str, system_id: str) -> SystemOwner:
    """Make a user an owner of a system.

    Raises:
        NotFoundError: If the user or system does not exist
        ConflictError: If the user already owns the system
    """
    user = await users.get_user(db, user_id)
    system = await catalog.get_system(db, system_id)
    if await is_owner(db, user_id, system_id):
        raise ConflictError(
            f"User '{user.email}' is already an owner of system '{system.name}'"
        )

    owner = SystemOwner(user_id=user_id, system_id=system_id)
    db.add(owner)
    await db.flush()
    logger.info(f"{user.email} is now an owner of {system.name}")

    result = await db.execute(
        select(SystemOwner)
        .options(selectinload(SystemOwner.user), selectinload(SystemOwner.system))
        .where(SystemOwner.id == owner.id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def remove_owner(db: AsyncSession, user_id: str, system_id: str) -> None:
    user = await users.get_user(db, user_id, include_deleted=True)
    system = await catalog.get_system(db, system_id)
    result = await db.execute(
        select(SystemOwner).where(
            SystemOwner.user_id == user_id, SystemOwner.system_id == system_id
        )
    )
    owner = result.scalar_one_or_none()
    if not owner:
        raise NotFoundError(
            "System owner",
            f"{user_id}/{system_id}",
            f"User '{user.email}' is not an owner of system '{system.name}'",
        )

    await db.delete(owner)
    await db.flush()
    logger.info(f"{user.email} is no longer an owner of {system.name}")
