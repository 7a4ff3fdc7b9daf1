"""Explicit role table lookups.

``admin`` is the only stored role. ``owner`` and ``manager`` are derived from
the ownership registry and the manager tree, never from the email address.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.db.models import SystemOwner, User, UserRole
from access_portal.services import users
from access_portal.services.errors import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = ("admin",)


async def has_role(db: AsyncSession, user_id: str, role: str) -> bool:
    result = await db.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
    )
    return result.first() is not None


async def is_admin(db: AsyncSession, user_id: str) -> bool:
    return await has_role(db, user_id, "admin")


async def effective_roles(db: AsyncSession, user_id: str) -> list[str]:
    """Stored roles plus derived ``owner``/``manager`` roles, sorted."""
    result = await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    roles = {row[0] for row in result.fetchall()}

    owns = await db.execute(
        select(SystemOwner.id).where(SystemOwner.user_id == user_id).limit(1)
    )
    if owns.first() is not None:
        roles.add("owner")

    reports = await db.execute(
        select(User.id)
        .where(User.manager_id == user_id, User.deleted_at.is_(None))
        .limit(1)
    )
    if reports.first() is not None:
        roles.add("manager")

    return sorted(roles)


async def assign_role(db: AsyncSession, user_id: str, role: str) -> list[str]:
    """Grant a stored role. Assigning a role the user already has is a no-op."""
    if role not in ASSIGNABLE_ROLES:
        raise BadRequestError(
            f"Unknown role '{role}'. Assignable roles: {', '.join(ASSIGNABLE_ROLES)}"
        )
    await users.get_user(db, user_id)
    if not await has_role(db, user_id, role):
        db.add(UserRole(user_id=user_id, role=role))
        await db.flush()
        logger.info(f"Assigned role {role} to user {user_id}")
    return await effective_roles(db, user_id)


async def revoke_role(db: AsyncSession, user_id: str, role: str) -> list[str]:
    await users.get_user(db, user_id)
    result = await db.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role == role)
    )
    user_role = result.scalar_one_or_none()
    if not user_role:
        raise NotFoundError(
            "Role", role, f"User '{user_id}' does not have role '{role}'"
        )
    await db.delete(user_role)
    await db.flush()
    logger.info(f"Revoked role {role} from user {user_id}")
    return await effective_roles(db, user_id)
