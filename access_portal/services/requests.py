"""Service layer for the access request workflow.

This module provides functions for managing access requests including:
- Submitting requests with the manager auto-approval rule
- Manager decisions on whole requests (cascaded to their items)
- System owner decisions and provisioning on individual items
- Work queues for managers and system owners
- Copying another user's active access as new requests

Two relations authorize transitions and are never conflated: the target
user's direct manager decides whole requests, and owners of an item's system
decide and provision that item.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_portal.core.state_machine import (
    ItemStateMachine,
    RequestStateMachine,
    aggregate_request_status,
)
from access_portal.db.models import (
    AccessGrant,
    AccessRequest,
    AccessRequestItem,
    SystemInstance,
    User,
)
from access_portal.services import catalog, grants, ownership, roles, users
from access_portal.services.audit import audit_service
from access_portal.services.errors import (
    AccessPortalError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from access_portal.services.notifications import (
    NotificationContext,
    notification_dispatcher,
)

logger = logging.getLogger(__name__)

ALREADY_HAS_ACCESS = "Target user already has this access (active grant or pending request)"


@dataclass
class RequestItemInput:
    system_instance_id: str
    access_tier_id: str


@dataclass
class BulkProvisionResult:
    successful: list[AccessGrant] = field(default_factory=list)
    failed: list[grants.BulkFailure] = field(default_factory=list)


@dataclass
class CopySkip:
    system_instance_id: str
    access_tier_id: str
    reason: str


@dataclass
class CopyGrantsResult:
    created: list[AccessRequest] = field(default_factory=list)
    skipped: list[CopySkip] = field(default_factory=list)
    total: int = 0

    @property
    def auto_approved(self) -> int:
        return sum(1 for r in self.created if r.status == "approved")


def _request_query():
    return select(AccessRequest).options(
        selectinload(AccessRequest.requester),
        selectinload(AccessRequest.target_user).selectinload(User.manager),
        selectinload(AccessRequest.items)
        .selectinload(AccessRequestItem.system_instance)
        .selectinload(SystemInstance.system),
        selectinload(AccessRequest.items).selectinload(AccessRequestItem.access_tier),
    )


def _item_query():
    return select(AccessRequestItem).options(
        selectinload(AccessRequestItem.access_request).selectinload(
            AccessRequest.target_user
        ),
        selectinload(AccessRequestItem.access_request).selectinload(
            AccessRequest.requester
        ),
        selectinload(AccessRequestItem.system_instance).selectinload(
            SystemInstance.system
        ),
        selectinload(AccessRequestItem.access_tier),
    )


async def get_request(db: AsyncSession, request_id: str) -> AccessRequest:
    """Load a request with requester, target (and manager) and items attached.

    Raises:
        NotFoundError: If the request does not exist
    """
    result = await db.execute(
        _request_query()
        .where(AccessRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if not request:
        raise NotFoundError("Access request", request_id)
    return request


async def get_item(db: AsyncSession, item_id: str) -> AccessRequestItem:
    result = await db.execute(
        _item_query()
        .where(AccessRequestItem.id == item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if not item:
        raise NotFoundError("Access request item", item_id)
    return item


async def _system_owners(db: AsyncSession, request: AccessRequest) -> list[User]:
    system_ids = {item.system_instance.system_id for item in request.items}
    return await ownership.owners_of_systems(db, system_ids)


async def _recompute_status(db: AsyncSession, request_id: str) -> AccessRequest:
    """Reload a request and align its status with its items."""
    request = await get_request(db, request_id)
    derived = aggregate_request_status([item.status for item in request.items])
    if derived != request.status:
        RequestStateMachine.transition(request.status, derived)
        logger.info(f"Request {request_id} status {request.status} -> {derived}")
        request.status = derived
        await db.flush()
        request = await get_request(db, request_id)
    return request


async def _link_grant(
    db: AsyncSession,
    item: AccessRequestItem,
    target_user_id: str,
    granted_by_id: str,
) -> AccessGrant:
    """Create the item's grant, or link the existing active one on conflict."""
    try:
        grant = await grants.create_grant(
            db,
            user_id=target_user_id,
            system_instance_id=item.system_instance_id,
            access_tier_id=item.access_tier_id,
            granted_by_id=granted_by_id,
            status="active",
        )
    except ConflictError:
        existing = await grants.find_active_grant(
            db, target_user_id, item.system_instance_id, item.access_tier_id
        )
        if existing is None:
            raise
        logger.info(f"Item {item.id} linked to existing active grant {existing.id}")
        grant = await grants.get_grant(db, existing.id)

    item.access_grant_id = grant.id
    await db.flush()
    return grant


async def create_request(
    db: AsyncSession,
    target_user_id: str,
    items: list[RequestItemInput],
    requester_id: str,
    note: str | None = None,
) -> AccessRequest:
    """Submit an access request.

    If the requester is the target user's direct manager (and not the target
    themself), the request and its items are created approved and an active
    grant is created for every item. A grant that already exists is linked
    instead, so repeating an auto-approved request never duplicates grants.

    Args:
        db: Database session
        target_user_id: User who will receive the access
        items: Instance/tier pairs requested
        requester_id: User submitting the request
        note: Optional justification

    Returns:
        The created request with items attached

    Raises:
        BadRequestError: If no items are given
        NotFoundError: If a user, instance or tier does not exist
        UnprocessableError: If a tier does not belong to its instance's system
    """
    if not items:
        raise BadRequestError("At least one request item is required")

    target = await users.get_user(db, target_user_id)
    await users.get_user(db, requester_id)

    # Validate everything before writing anything
    for item_input in items:
        await catalog.resolve_instance_and_tier(
            db, item_input.system_instance_id, item_input.access_tier_id
        )

    is_self_request = requester_id == target_user_id
    auto_approve = not is_self_request and target.manager_id == requester_id
    status = "approved" if auto_approve else "requested"

    request = AccessRequest(
        target_user_id=target_user_id,
        requester_id=requester_id,
        note=note,
        status=status,
    )
    db.add(request)
    await db.flush()

    created_items = []
    for position, item_input in enumerate(items):
        item = AccessRequestItem(
            access_request_id=request.id,
            system_instance_id=item_input.system_instance_id,
            access_tier_id=item_input.access_tier_id,
            status=status,
            position=position,
        )
        db.add(item)
        created_items.append(item)
    await db.flush()

    if auto_approve:
        for item in created_items:
            await _link_grant(db, item, target_user_id, requester_id)

    logger.info(
        f"Created access request {request.id} for {target.email} with "
        f"{len(items)} item(s), status {status}"
    )
    await audit_service.log(
        db,
        action="request_created",
        actor_id=requester_id,
        target_user_id=target_user_id,
        resource_type="access_request",
        resource_id=request.id,
        details={"status": status, "item_count": len(items), "auto_approved": auto_approve},
    )

    request = await get_request(db, request.id)
    if auto_approve:
        await notification_dispatcher.notify_system_owners(
            NotificationContext(
                request=request,
                action="approve",
                link=notification_dispatcher.link("provisioning"),
                system_owners=await _system_owners(db, request),
            )
        )
    else:
        await notification_dispatcher.notify_manager(
            NotificationContext(
                request=request,
                action="request",
                link=notification_dispatcher.link("approvals"),
            )
        )
    return request


async def _load_for_manager(
    db: AsyncSession, request_id: str, actor_id: str, to_status: str, verb: str
) -> AccessRequest:
    request = await get_request(db, request_id)
    RequestStateMachine.transition(request.status, to_status)
    if request.target_user.manager_id != actor_id:
        raise ForbiddenError(f"Only the manager of the grantee can {verb} this request")
    return request


async def approve_request(
    db: AsyncSession, request_id: str, actor_id: str
) -> AccessRequest:
    """Manager approval of a whole request.

    Every still-requested item is approved. No grants are created; system
    owners provision approved items afterwards.

    Raises:
        NotFoundError: If the request does not exist
        InvalidStatusTransition: If the request is not in "requested"
        ForbiddenError: If the actor is not the target user's direct manager
    """
    request = await _load_for_manager(db, request_id, actor_id, "approved", "approve")

    for item in request.items:
        if item.status == "requested":
            item.status = ItemStateMachine.manager_transition(item.status, "approved")
    request.status = "approved"
    await db.flush()

    logger.info(f"Request {request_id} approved by manager {actor_id}")
    await audit_service.log(
        db,
        action="request_approved",
        actor_id=actor_id,
        target_user_id=request.target_user_id,
        resource_type="access_request",
        resource_id=request_id,
    )

    request = await get_request(db, request_id)
    await notification_dispatcher.notify_requester(
        NotificationContext(
            request=request,
            action="approve",
            link=notification_dispatcher.link("my-access"),
        )
    )
    await notification_dispatcher.notify_system_owners(
        NotificationContext(
            request=request,
            action="approve",
            link=notification_dispatcher.link("provisioning"),
            system_owners=await _system_owners(db, request),
        )
    )
    return request


async def reject_request(
    db: AsyncSession, request_id: str, actor_id: str, reason: str | None = None
) -> AccessRequest:
    """Manager rejection of a whole request.

    Every item without a grant is rejected, including ones a system owner
    already approved, and the reason is stored as the request note. Items
    that were provisioned before the rejection keep their grant.
    """
    request = await _load_for_manager(db, request_id, actor_id, "rejected", "reject")

    for item in request.items:
        if item.status == "rejected" or item.access_grant_id:
            continue
        item.status = ItemStateMachine.manager_transition(item.status, "rejected")
        item.rejection_reason = reason
    request.status = "rejected"
    if reason:
        request.note = reason
    await db.flush()

    logger.info(f"Request {request_id} rejected by manager {actor_id}")
    await audit_service.log(
        db,
        action="request_rejected",
        actor_id=actor_id,
        target_user_id=request.target_user_id,
        resource_type="access_request",
        resource_id=request_id,
        reason=reason,
    )

    request = await get_request(db, request_id)
    await notification_dispatcher.notify_requester(
        NotificationContext(
            request=request,
            action="reject",
            reason=reason,
            link=notification_dispatcher.link("my-access"),
        )
    )
    return request


async def _load_for_owner(
    db: AsyncSession, item_id: str, actor_id: str, verb: str
) -> AccessRequestItem:
    item = await get_item(db, item_id)
    await ownership.require_owner(
        db,
        actor_id,
        item.system_instance.system_id,
        f"{verb} items for system '{item.system_instance.system.name}'",
    )
    return item


async def approve_item(
    db: AsyncSession, item_id: str, actor_id: str
) -> AccessRequestItem:
    """System owner approval of one item.

    Raises:
        NotFoundError: If the item does not exist
        ForbiddenError: If the actor does not own the item's system
        InvalidStatusTransition: If the item is not in "requested"
    """
    item = await _load_for_owner(db, item_id, actor_id, "approve")
    item.status = ItemStateMachine.transition(item.status, "approved")
    await db.flush()

    logger.info(f"Item {item_id} approved by owner {actor_id}")
    await audit_service.log(
        db,
        action="item_approved",
        actor_id=actor_id,
        target_user_id=item.access_request.target_user_id,
        resource_type="access_request_item",
        resource_id=item_id,
        details={"access_request_id": item.access_request_id},
    )
    await _recompute_status(db, item.access_request_id)
    return await get_item(db, item_id)


async def reject_item(
    db: AsyncSession, item_id: str, actor_id: str, reason: str | None = None
) -> AccessRequestItem:
    """System owner rejection of one item. Rejects the parent request too."""
    item = await _load_for_owner(db, item_id, actor_id, "reject")
    item.status = ItemStateMachine.transition(item.status, "rejected")
    item.rejection_reason = reason
    await db.flush()

    logger.info(f"Item {item_id} rejected by owner {actor_id}")
    await audit_service.log(
        db,
        action="item_rejected",
        actor_id=actor_id,
        target_user_id=item.access_request.target_user_id,
        resource_type="access_request_item",
        resource_id=item_id,
        details={"access_request_id": item.access_request_id},
        reason=reason,
    )

    request = await _recompute_status(db, item.access_request_id)
    await notification_dispatcher.notify_requester(
        NotificationContext(
            request=request,
            action="reject",
            reason=reason or "Rejected by system owner",
            link=notification_dispatcher.link("my-access"),
        )
    )
    return await get_item(db, item_id)


async def provision_item(
    db: AsyncSession, item_id: str, actor_id: str
) -> AccessGrant:
    """Create the active grant for an approved item and link it.

    An item that is already linked returns its grant. If the target user
    already holds an identical active grant, that grant is linked instead.

    Raises:
        NotFoundError: If the item does not exist
        ForbiddenError: If the actor does not own the item's system
        BadRequestError: If the item is not approved
    """
    item = await _load_for_owner(db, item_id, actor_id, "provision")
    if item.status != "approved":
        raise BadRequestError(
            f"Cannot provision item in status '{item.status}'. "
            f"Only 'approved' items can be provisioned."
        )
    if item.access_grant_id:
        return await grants.get_grant(db, item.access_grant_id)

    target_user_id = item.access_request.target_user_id
    grant = await _link_grant(db, item, target_user_id, actor_id)

    logger.info(f"Item {item_id} provisioned as grant {grant.id} by {actor_id}")
    await audit_service.log(
        db,
        action="item_provisioned",
        actor_id=actor_id,
        target_user_id=target_user_id,
        resource_type="access_request_item",
        resource_id=item_id,
        details={"access_grant_id": grant.id},
    )

    request = await get_request(db, item.access_request_id)
    await notification_dispatcher.notify_requester(
        NotificationContext(
            request=request,
            action="activate",
            link=notification_dispatcher.link("my-access"),
        )
    )
    return grant


async def bulk_provision(
    db: AsyncSession, item_ids: list[str], actor_id: str
) -> BulkProvisionResult:
    """Provision several items; one failure never aborts the rest."""
    outcome = BulkProvisionResult()
    for item_id in item_ids:
        try:
            async with db.begin_nested():
                grant = await provision_item(db, item_id, actor_id)
            outcome.successful.append(grant)
        except AccessPortalError as e:
            outcome.failed.append(grants.BulkFailure(id=item_id, reason=e.message))
    logger.info(
        f"Bulk provision by {actor_id}: {len(outcome.successful)} ok, "
        f"{len(outcome.failed)} failed"
    )
    return outcome


async def find_pending_for_manager(
    db: AsyncSession, manager_id: str
) -> list[AccessRequest]:
    """Requests awaiting this manager, excluding ones they submitted."""
    result = await db.execute(
        _request_query()
        .join(User, AccessRequest.target_user_id == User.id)
        .where(
            AccessRequest.status == "requested",
            User.manager_id == manager_id,
            AccessRequest.requester_id != manager_id,
        )
        .order_by(AccessRequest.created_at, AccessRequest.id)
    )
    return list(result.scalars().all())


async def find_pending_provisioning(
    db: AsyncSession, owner_id: str
) -> list[AccessRequestItem]:
    """Approved, not yet provisioned items on systems the owner owns."""
    system_ids = await ownership.owned_system_ids(db, owner_id)
    if not system_ids:
        return []
    result = await db.execute(
        _item_query()
        .join(SystemInstance, AccessRequestItem.system_instance_id == SystemInstance.id)
        .where(
            AccessRequestItem.status == "approved",
            AccessRequestItem.access_grant_id.is_(None),
            SystemInstance.system_id.in_(system_ids),
        )
        .order_by(AccessRequestItem.created_at, AccessRequestItem.id)
    )
    return list(result.scalars().all())


async def find_all_for_user(
    db: AsyncSession, user_id: str, status: str | None = None
) -> list[AccessRequest]:
    """Requests the user submitted or is the target of, newest first."""
    query = _request_query().where(
        or_(
            AccessRequest.requester_id == user_id,
            AccessRequest.target_user_id == user_id,
        )
    )
    if status:
        query = query.where(AccessRequest.status == status)
    result = await db.execute(
        query.order_by(AccessRequest.created_at.desc(), AccessRequest.id)
    )
    return list(result.scalars().all())


async def find_all_for_system_owner(
    db: AsyncSession, owner_id: str, status: str | None = None
) -> list[AccessRequest]:
    """Requests with at least one item on a system the owner owns."""
    system_ids = await ownership.owned_system_ids(db, owner_id)
    if not system_ids:
        return []
    touching = (
        select(AccessRequestItem.access_request_id)
        .join(SystemInstance, AccessRequestItem.system_instance_id == SystemInstance.id)
        .where(SystemInstance.system_id.in_(system_ids))
    )
    query = _request_query().where(AccessRequest.id.in_(touching))
    if status:
        query = query.where(AccessRequest.status == status)
    result = await db.execute(
        query.order_by(AccessRequest.created_at.desc(), AccessRequest.id)
    )
    return list(result.scalars().all())


async def _existing_access_keys(
    db: AsyncSession, user_id: str
) -> set[tuple[str, str]]:
    """(instance, tier) pairs the user holds or has pending."""
    keys: set[tuple[str, str]] = set()

    result = await db.execute(
        select(AccessGrant.system_instance_id, AccessGrant.access_tier_id).where(
            AccessGrant.user_id == user_id,
            AccessGrant.status.in_(["active", "to_remove"]),
        )
    )
    keys.update((row[0], row[1]) for row in result.fetchall())

    result = await db.execute(
        select(AccessRequestItem.system_instance_id, AccessRequestItem.access_tier_id)
        .join(AccessRequest, AccessRequestItem.access_request_id == AccessRequest.id)
        .where(
            AccessRequest.target_user_id == user_id,
            AccessRequest.status.in_(["requested", "approved"]),
            AccessRequestItem.status != "rejected",
        )
    )
    keys.update((row[0], row[1]) for row in result.fetchall())
    return keys


async def copy_grants_from_user(
    db: AsyncSession,
    source_user_id: str,
    target_user_id: str,
    requester_id: str,
    system_ids: list[str] | None = None,
    exclude_system_ids: list[str] | None = None,
) -> CopyGrantsResult:
    """Request the source user's active access for the target user.

    One single-item request is created per source grant the target does not
    already hold or have pending. The usual auto-approval rule applies.

    Raises:
        NotFoundError: If either user does not exist
        ForbiddenError: If the requester is neither the target's manager nor an admin
    """
    source = await users.get_user(db, source_user_id)
    target = await users.get_user(db, target_user_id)
    if target.manager_id != requester_id and not await roles.is_admin(db, requester_id):
        raise ForbiddenError(
            "Only the manager of the target user or an admin can copy grants"
        )

    query = (
        select(AccessGrant)
        .join(SystemInstance, AccessGrant.system_instance_id == SystemInstance.id)
        .where(AccessGrant.user_id == source_user_id, AccessGrant.status == "active")
        .order_by(AccessGrant.granted_at, AccessGrant.id)
    )
    if system_ids:
        query = query.where(SystemInstance.system_id.in_(system_ids))
    if exclude_system_ids:
        query = query.where(SystemInstance.system_id.not_in(exclude_system_ids))
    source_grants = list((await db.execute(query)).scalars().all())

    outcome = CopyGrantsResult(total=len(source_grants))
    if not source_grants:
        return outcome

    existing = await _existing_access_keys(db, target_user_id)
    for grant in source_grants:
        key = (grant.system_instance_id, grant.access_tier_id)
        if key in existing:
            outcome.skipped.append(
                CopySkip(
                    system_instance_id=grant.system_instance_id,
                    access_tier_id=grant.access_tier_id,
                    reason=ALREADY_HAS_ACCESS,
                )
            )
            continue

        request = await create_request(
            db,
            target_user_id=target_user_id,
            items=[RequestItemInput(grant.system_instance_id, grant.access_tier_id)],
            requester_id=requester_id,
            note=f"Copied from {source.name}",
        )
        existing.add(key)
        outcome.created.append(request)

    logger.info(
        f"Copied access {source.email} -> {target.email}: "
        f"{len(outcome.created)} created, {len(outcome.skipped)} skipped"
    )
    return outcome
