"""Identity store: users and their manager tree."""
import logging
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_portal.db.models import AccessGrant, User
from access_portal.services.errors import BadRequestError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Upper bound on manager chain walks; deeper chains are treated as corrupt
MAX_MANAGER_DEPTH = 100


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _user_query():
    return select(User).options(selectinload(User.manager), selectinload(User.roles))


async def get_user(
    db: AsyncSession, user_id: str, include_deleted: bool = False
) -> User:
    """Load a user by ID.

    Raises:
        NotFoundError: If no such user exists (or it is soft-deleted)
    """
    query = _user_query().where(User.id == user_id).execution_options(
        populate_existing=True
    )
    if not include_deleted:
        query = query.where(User.deleted_at.is_(None))
    user = (await db.execute(query)).scalar_one_or_none()
    if not user:
        raise NotFoundError("User", user_id)
    return user


async def find_by_email(
    db: AsyncSession, email: str, include_deleted: bool = False
) -> User | None:
    query = _user_query().where(User.email == normalize_email(email))
    if not include_deleted:
        query = query.where(User.deleted_at.is_(None))
    return (await db.execute(query)).scalar_one_or_none()


async def list_users(
    db: AsyncSession,
    search: str | None = None,
    offset: int = 0,
    limit: int = 100,
) -> tuple[list[User], int]:
    """List active (not soft-deleted) users ordered by name."""
    query = _user_query().where(User.deleted_at.is_(None))
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(
            or_(func.lower(User.name).like(pattern), User.email.like(pattern))
        )

    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar() or 0

    result = await db.execute(query.order_by(User.name, User.id).offset(offset).limit(limit))
    return list(result.scalars().all()), total


async def create_user(
    db: AsyncSession,
    email: str,
    name: str,
    manager_id: str | None = None,
    slack_email: str | None = None,
) -> User:
    """Create a user.

    Raises:
        ConflictError: If the email is already taken (including soft-deleted users)
        NotFoundError: If the manager does not exist
    """
    email = normalize_email(email)
    existing = await find_by_email(db, email, include_deleted=True)
    if existing:
        raise ConflictError(f"User with email '{email}' already exists")

    if manager_id:
        await get_user(db, manager_id)

    user = User(
        email=email,
        name=name,
        manager_id=manager_id,
        slack_email=normalize_email(slack_email) if slack_email else None,
    )
    db.add(user)
    await db.flush()
    logger.info(f"Created user {email}")
    return await get_user(db, user.id)


async def update_user(
    db: AsyncSession,
    user_id: str,
    email: str | None = None,
    name: str | None = None,
    slack_email: str | None = None,
) -> User:
    """Update profile fields. Manager changes go through assign_manager."""
    user = await get_user(db, user_id)

    if email is not None:
        email = normalize_email(email)
        if email != user.email:
            existing = await find_by_email(db, email, include_deleted=True)
            if existing:
                raise ConflictError(f"User with email '{email}' already exists")
            user.email = email
    if name is not None:
        user.name = name
    if slack_email is not None:
        user.slack_email = normalize_email(slack_email) or None

    await db.flush()
    return await get_user(db, user_id)


async def is_manager_of(
    db: AsyncSession, manager_id: str, user_id: str
) -> bool:
    """Check whether manager_id is the direct manager of user_id."""
    result = await db.execute(select(User.manager_id).where(User.id == user_id))
    return result.scalar_one_or_none() == manager_id


async def _would_create_cycle(
    db: AsyncSession, user_id: str, manager_id: str
) -> bool:
    """Walk up from the proposed manager looking for user_id."""
    visited: set[str] = set()
    current: str | None = manager_id
    while current is not None and len(visited) < MAX_MANAGER_DEPTH:
        if current == user_id:
            return True
        if current in visited:
            # Existing chain is already cyclic
            return True
        visited.add(current)
        result = await db.execute(select(User.manager_id).where(User.id == current))
        current = result.scalar_one_or_none()
    return current is not None


async def assign_manager(
    db: AsyncSession, user_id: str, manager_id: str | None
) -> User:
    """Set (or clear) a user's direct manager.

    Args:
        db: Database session
        user_id: User whose manager changes
        manager_id: New manager, or None to clear

    Returns:
        The updated user

    Raises:
        NotFoundError: If either user does not exist
        BadRequestError: On self-management or a circular chain
    """
    user = await get_user(db, user_id)

    if manager_id is not None:
        if manager_id == user_id:
            raise BadRequestError("User cannot be their own manager")
        await get_user(db, manager_id)
        if await _would_create_cycle(db, user_id, manager_id):
            raise BadRequestError(
                "Circular reference detected: user cannot be manager of their manager"
            )

    user.manager_id = manager_id
    await db.flush()
    logger.info(f"User {user_id} manager set to {manager_id}")
    return await get_user(db, user_id)


async def soft_delete_user(db: AsyncSession, user_id: str) -> None:
    """Tombstone a user and mark their live grants removed."""
    user = await get_user(db, user_id)
    now = datetime.utcnow()

    result = await db.execute(
        update(AccessGrant)
        .where(
            AccessGrant.user_id == user_id,
            AccessGrant.status.in_(["active", "to_remove"]),
        )
        .values(status="removed", removed_at=now)
    )
    user.deleted_at = now
    await db.flush()
    logger.info(f"Soft-deleted user {user.email}, removed {result.rowcount} grants")


async def restore_user(db: AsyncSession, user: User) -> User:
    """Clear a soft-delete tombstone."""
    if user.deleted_at is not None:
        user.deleted_at = None
        await db.flush()
        logger.info(f"Restored soft-deleted user {user.email}")
    return await get_user(db, user.id)


def derive_name_from_email(email: str) -> str:
    """Build a display name from the email local part.

    ``jane.doe-smith@x.com`` becomes ``Jane Doe Smith``.
    """
    local = email.split("@")[0]
    parts = [p for p in local.replace("-", ".").replace("_", ".").split(".") if p]
    if not parts:
        return "New User"
    return " ".join(p[:1].upper() + p[1:] for p in parts)


async def get_or_create_by_email(db: AsyncSession, email: str) -> User:
    """Find a user by email, restoring or auto-provisioning as needed."""
    user = await find_by_email(db, email, include_deleted=True)
    if user:
        return await restore_user(db, user)

    email = normalize_email(email)
    user = User(email=email, name=derive_name_from_email(email))
    db.add(user)
    await db.flush()
    logger.info(f"Auto-created user {email}")
    return await get_user(db, user.id)
