"""Grant ledger: who currently holds which access tier on which instance.

This module provides functions for:
- Creating grants with the one-active-grant-per-triple invariant
- Status changes through the grant state machine (active, to_remove, removed)
- Owner-gated removal workflow (mark, confirm, cancel) and its bulk variants
- Paginated overview queries
- Best-effort bulk creation shared by the JSON and CSV import paths

The partial unique index ``uq_access_grants_active`` is the real enforcement
point for the duplicate invariant. The pre-insert lookup only produces a nicer
error; an IntegrityError at insert time is reported as the same ConflictError.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_portal.core.state_machine import GrantStateMachine
from access_portal.db.models import AccessGrant, System, SystemInstance, User
from access_portal.services import catalog, ownership, users
from access_portal.services.audit import audit_service
from access_portal.services.errors import (
    AccessPortalError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("userName", "systemName", "grantedAt")
MAX_PAGE_SIZE = 100
DUPLICATE_GRANT_ERROR = "Duplicate active grant already exists"


@dataclass
class BulkFailure:
    id: str
    reason: str


@dataclass
class BulkActionResult:
    """Outcome of a best-effort batch over existing entity IDs."""

    successful: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)


@dataclass
class BulkRowResult:
    row: int
    success: bool
    grant: AccessGrant | None = None
    error: str | None = None
    skipped: bool = False


@dataclass
class BulkCreateResult:
    """Per-row report of a bulk grant import."""

    results: list[BulkRowResult] = field(default_factory=list)

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)


@dataclass
class GrantInput:
    """One grant to create in a bulk import."""

    system_instance_id: str
    access_tier_id: str
    user_id: str | None = None
    user_email: str | None = None
    granted_by_id: str | None = None
    granted_at: datetime | None = None
    status: str = "active"


def _grant_query():
    return select(AccessGrant).options(
        selectinload(AccessGrant.user),
        selectinload(AccessGrant.granted_by),
        selectinload(AccessGrant.system_instance).selectinload(SystemInstance.system),
        selectinload(AccessGrant.access_tier),
    )


async def get_grant(db: AsyncSession, grant_id: str) -> AccessGrant:
    """Load a grant with user, instance, system, tier and granter attached.

    Raises:
        NotFoundError: If the grant does not exist
    """
    result = await db.execute(
        _grant_query()
        .where(AccessGrant.id == grant_id)
        .execution_options(populate_existing=True)
    )
    grant = result.scalar_one_or_none()
    if not grant:
        raise NotFoundError("Access grant", grant_id)
    return grant


async def find_active_grant(
    db: AsyncSession, user_id: str, system_instance_id: str, access_tier_id: str
) -> AccessGrant | None:
    result = await db.execute(
        select(AccessGrant).where(
            AccessGrant.user_id == user_id,
            AccessGrant.system_instance_id == system_instance_id,
            AccessGrant.access_tier_id == access_tier_id,
            AccessGrant.status == "active",
        )
    )
    return result.scalar_one_or_none()


async def create_grant(
    db: AsyncSession,
    user_id: str,
    system_instance_id: str,
    access_tier_id: str,
    granted_by_id: str | None = None,
    granted_at: datetime | None = None,
    status: str = "active",
) -> AccessGrant:
    """Create a grant.

    Args:
        db: Database session
        user_id: User receiving the access
        system_instance_id: Instance the access applies to
        access_tier_id: Tier, must belong to the instance's system
        granted_by_id: User recorded as the granter (optional)
        granted_at: Defaults to now
        status: Initial status, normally "active"

    Returns:
        The created grant with its display relations loaded

    Raises:
        NotFoundError: If the user, instance, tier or granter does not exist
        UnprocessableError: If the tier belongs to another system
        ConflictError: If an active grant already exists on the same triple
        BadRequestError: If status is not a grant status
    """
    if status not in GrantStateMachine.STATES:
        raise BadRequestError(f"Invalid grant status '{status}'")

    user = await users.get_user(db, user_id)
    instance, tier = await catalog.resolve_instance_and_tier(
        db, system_instance_id, access_tier_id
    )
    if granted_by_id:
        await users.get_user(db, granted_by_id, include_deleted=True)

    conflict_message = (
        f"Active grant already exists for user '{user.email}' on instance "
        f"'{instance.name}' with tier '{tier.name}'"
    )
    if status == "active":
        if await find_active_grant(db, user_id, system_instance_id, access_tier_id):
            raise ConflictError(conflict_message)

    now = datetime.utcnow()
    grant = AccessGrant(
        user_id=user_id,
        system_instance_id=system_instance_id,
        access_tier_id=access_tier_id,
        status=status,
        granted_by_id=granted_by_id,
        granted_at=granted_at or now,
        removed_at=now if status == "removed" else None,
    )
    try:
        async with db.begin_nested():
            db.add(grant)
    except IntegrityError:
        logger.info(f"Duplicate rejected by constraint: {conflict_message}")
        raise ConflictError(conflict_message) from None

    logger.info(
        f"Created {status} grant {grant.id}: {user.email} -> "
        f"{instance.system.name}/{instance.name} ({tier.name})"
    )
    await audit_service.log(
        db,
        action="grant_created",
        actor_id=granted_by_id,
        target_user_id=user_id,
        resource_type="access_grant",
        resource_id=grant.id,
        details={
            "system_instance_id": system_instance_id,
            "access_tier_id": access_tier_id,
            "status": status,
        },
    )
    return await get_grant(db, grant.id)


async def _apply_status(
    db: AsyncSession, grant: AccessGrant, new_status: str
) -> str:
    """Move a grant through the state machine, keeping removed_at coupled.

    Returns:
        The previous status
    """
    previous = grant.status
    GrantStateMachine.transition(previous, new_status)

    try:
        async with db.begin_nested():
            grant.status = new_status
            grant.removed_at = datetime.utcnow() if new_status == "removed" else None
    except IntegrityError:
        raise ConflictError(
            "Another active grant already exists for this user, instance and tier"
        ) from None
    return previous


async def update_status(
    db: AsyncSession,
    grant_id: str,
    new_status: str,
    actor_id: str | None = None,
) -> AccessGrant:
    """Change a grant's status through the grant state machine.

    Callers gate who may call this.

    Raises:
        NotFoundError: If the grant does not exist
        InvalidStatusTransition: If the transition is not allowed
    """
    grant = await get_grant(db, grant_id)
    previous = await _apply_status(db, grant, new_status)

    logger.info(f"Grant {grant_id} status {previous} -> {new_status}")
    await audit_service.log(
        db,
        action="grant_status_changed",
        actor_id=actor_id,
        target_user_id=grant.user_id,
        resource_type="access_grant",
        resource_id=grant_id,
        details={"from": previous, "to": new_status},
    )
    return await get_grant(db, grant_id)


async def _owner_transition(
    db: AsyncSession,
    grant_id: str,
    actor_id: str,
    required_status: str,
    new_status: str,
    verb: str,
    audit_action: str,
) -> AccessGrant:
    grant = await get_grant(db, grant_id)
    await ownership.require_owner(
        db, actor_id, grant.system_instance.system_id, f"{verb} access grants"
    )
    if grant.status != required_status:
        raise BadRequestError(
            f"Grant must be in '{required_status}' status to {verb} "
            f"(current status: '{grant.status}')"
        )

    previous = await _apply_status(db, grant, new_status)
    logger.info(f"Grant {grant_id} {previous} -> {new_status} by {actor_id}")
    await audit_service.log(
        db,
        action=audit_action,
        actor_id=actor_id,
        target_user_id=grant.user_id,
        resource_type="access_grant",
        resource_id=grant_id,
        details={"from": previous, "to": new_status},
    )
    return await get_grant(db, grant_id)


async def mark_to_remove(db: AsyncSession, grant_id: str, actor_id: str) -> AccessGrant:
    """Flag an active grant for removal. Requires system ownership."""
    return await _owner_transition(
        db, grant_id, actor_id, "active", "to_remove",
        "mark for removal", "grant_marked_for_removal",
    )


async def mark_removed(db: AsyncSession, grant_id: str, actor_id: str) -> AccessGrant:
    """Confirm removal of a flagged grant. Requires system ownership."""
    return await _owner_transition(
        db, grant_id, actor_id, "to_remove", "removed",
        "mark as removed", "grant_removed",
    )


async def cancel_removal(db: AsyncSession, grant_id: str, actor_id: str) -> AccessGrant:
    """Return a flagged grant to active. Requires system ownership."""
    return await _owner_transition(
        db, grant_id, actor_id, "to_remove", "active",
        "cancel removal", "grant_activated",
    )


async def find_pending_removal(db: AsyncSession, owner_id: str) -> list[AccessGrant]:
    """Grants flagged for removal on systems the owner owns."""
    system_ids = await ownership.owned_system_ids(db, owner_id)
    if not system_ids:
        return []
    result = await db.execute(
        _grant_query()
        .join(SystemInstance, AccessGrant.system_instance_id == SystemInstance.id)
        .where(
            AccessGrant.status == "to_remove",
            SystemInstance.system_id.in_(system_ids),
        )
        .order_by(AccessGrant.updated_at.desc(), AccessGrant.id)
    )
    return list(result.scalars().all())


async def _bulk_transition(db, grant_ids, actor_id, operation) -> BulkActionResult:
    outcome = BulkActionResult()
    for grant_id in grant_ids:
        try:
            async with db.begin_nested():
                await operation(db, grant_id, actor_id)
            outcome.successful.append(grant_id)
        except AccessPortalError as e:
            outcome.failed.append(BulkFailure(id=grant_id, reason=e.message))
    logger.info(
        f"Bulk {operation.__name__}: {len(outcome.successful)} ok, "
        f"{len(outcome.failed)} failed"
    )
    return outcome


async def bulk_mark_to_remove(
    db: AsyncSession, grant_ids: list[str], actor_id: str
) -> BulkActionResult:
    return await _bulk_transition(db, grant_ids, actor_id, mark_to_remove)


async def bulk_mark_removed(
    db: AsyncSession, grant_ids: list[str], actor_id: str
) -> BulkActionResult:
    return await _bulk_transition(db, grant_ids, actor_id, mark_removed)


async def find_all(
    db: AsyncSession,
    user_id: str | None = None,
    system_id: str | None = None,
    system_instance_id: str | None = None,
    access_tier_id: str | None = None,
    status: str | None = None,
    user_search: str | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "grantedAt",
    sort_order: str = "desc",
) -> tuple[list[AccessGrant], int]:
    """Filtered, sorted, paginated grant overview.

    ``id`` is always the secondary sort key so pages are stable.

    Returns:
        Tuple of (grants on the requested page, total matching count)
    """
    if sort_by not in SORT_FIELDS:
        raise BadRequestError(
            f"Invalid sort field '{sort_by}'. Valid fields: {', '.join(SORT_FIELDS)}"
        )
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    query = (
        _grant_query()
        .join(User, AccessGrant.user_id == User.id)
        .join(SystemInstance, AccessGrant.system_instance_id == SystemInstance.id)
        .join(System, SystemInstance.system_id == System.id)
    )
    if user_id:
        query = query.where(AccessGrant.user_id == user_id)
    if system_id:
        query = query.where(SystemInstance.system_id == system_id)
    if system_instance_id:
        query = query.where(AccessGrant.system_instance_id == system_instance_id)
    if access_tier_id:
        query = query.where(AccessGrant.access_tier_id == access_tier_id)
    if status:
        query = query.where(AccessGrant.status == status)
    if user_search:
        pattern = f"%{user_search.lower()}%"
        query = query.where(
            or_(func.lower(User.name).like(pattern), func.lower(User.email).like(pattern))
        )

    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar() or 0

    sort_column = {
        "userName": User.name,
        "systemName": System.name,
        "grantedAt": AccessGrant.granted_at,
    }[sort_by]
    primary = sort_column.asc() if sort_order.lower() == "asc" else sort_column.desc()

    result = await db.execute(
        query.order_by(primary, AccessGrant.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def create_grant_row(
    db: AsyncSession, row: int, grant_input: GrantInput
) -> BulkRowResult:
    """Create one bulk-import grant without letting its failure escape.

    A missing user given only by email is auto-provisioned. A duplicate
    active grant, detected up front or by the constraint, is reported as
    skipped.
    """
    try:
        async with db.begin_nested():
            user_id = grant_input.user_id
            if not user_id:
                if not grant_input.user_email:
                    raise BadRequestError("User ID or email is required")
                user = await users.get_or_create_by_email(db, grant_input.user_email)
                user_id = user.id

            if grant_input.status == "active" and await find_active_grant(
                db, user_id, grant_input.system_instance_id, grant_input.access_tier_id
            ):
                return BulkRowResult(
                    row=row, success=False, skipped=True, error=DUPLICATE_GRANT_ERROR
                )

            grant = await create_grant(
                db,
                user_id=user_id,
                system_instance_id=grant_input.system_instance_id,
                access_tier_id=grant_input.access_tier_id,
                granted_by_id=grant_input.granted_by_id,
                granted_at=grant_input.granted_at,
                status=grant_input.status,
            )
        return BulkRowResult(row=row, success=True, grant=grant)
    except ConflictError:
        return BulkRowResult(
            row=row, success=False, skipped=True, error=DUPLICATE_GRANT_ERROR
        )
    except AccessPortalError as e:
        return BulkRowResult(row=row, success=False, error=e.message)


async def bulk_create(
    db: AsyncSession,
    grant_inputs: list[GrantInput],
    granted_by_id: str | None = None,
) -> BulkCreateResult:
    """Create grants one by one; rows are numbered from 1.

    ``granted_by_id`` overrides each row's granter when given.
    """
    outcome = BulkCreateResult()
    for index, grant_input in enumerate(grant_inputs):
        if granted_by_id:
            grant_input.granted_by_id = granted_by_id
        outcome.results.append(await create_grant_row(db, index + 1, grant_input))

    logger.info(
        f"Bulk grant import: {outcome.success} created, {outcome.skipped} skipped, "
        f"{outcome.failed} failed"
    )
    return outcome
