"""Tests for the grant ledger."""
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from access_portal.core.state_machine import InvalidStatusTransition
from access_portal.db.models import AccessGrant
from access_portal.services import grants, ownership
from access_portal.services.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
)


async def _active_count(db, user_id) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(AccessGrant)
        .where(AccessGrant.user_id == user_id, AccessGrant.status == "active")
    )
    return result.scalar()


class TestCreateGrant:
    """Test CreateGrant."""

    @pytest.mark.asyncio
    async def test_create_then_duplicate(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        assert grant.status == "active"
        assert grant.removed_at is None
        assert grant.granted_at is not None
        assert grant.system_instance.system.name == "Magento"
        assert grant.access_tier.name == "Admin"
        assert grant.user.email == "employee@example.com"

        with pytest.raises(ConflictError) as exc_info:
            await grants.create_grant(
                db, world.employee.id, world.ucook.id, world.magento_admin.id
            )
        assert "Active grant already exists" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_tier_from_other_system(self, db, world):
        with pytest.raises(UnprocessableError):
            await grants.create_grant(
                db, world.employee.id, world.ucook.id, world.acu_admin.id
            )

    @pytest.mark.asyncio
    async def test_missing_references(self, db, world):
        with pytest.raises(NotFoundError):
            await grants.create_grant(db, "missing", world.ucook.id, world.magento_admin.id)
        with pytest.raises(NotFoundError):
            await grants.create_grant(
                db, world.employee.id, "missing", world.magento_admin.id
            )
        with pytest.raises(NotFoundError):
            await grants.create_grant(db, world.employee.id, world.ucook.id, "missing")
        with pytest.raises(NotFoundError):
            await grants.create_grant(
                db,
                world.employee.id,
                world.ucook.id,
                world.magento_admin.id,
                granted_by_id="missing",
            )

    @pytest.mark.asyncio
    async def test_granted_by_and_granted_at(self, db, world):
        granted_at = datetime(2024, 1, 1, 9, 30)
        grant = await grants.create_grant(
            db,
            world.employee.id,
            world.ucook.id,
            world.magento_admin.id,
            granted_by_id=world.owner.id,
            granted_at=granted_at,
        )
        assert grant.granted_by.id == world.owner.id
        assert grant.granted_at == granted_at

    @pytest.mark.asyncio
    async def test_removed_grant_sets_removed_at(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id, status="removed"
        )
        assert grant.removed_at is not None

    @pytest.mark.asyncio
    async def test_non_active_skips_duplicate_check(self, db, world):
        await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        grant = await grants.create_grant(
            db,
            world.employee.id,
            world.ucook.id,
            world.magento_admin.id,
            status="to_remove",
        )
        assert grant.status == "to_remove"
        assert grant.removed_at is None

    @pytest.mark.asyncio
    async def test_invalid_status(self, db, world):
        with pytest.raises(BadRequestError):
            await grants.create_grant(
                db, world.employee.id, world.ucook.id, world.magento_admin.id, status="gone"
            )

    @pytest.mark.asyncio
    async def test_constraint_violation_reported_as_conflict(self, db, world):
        """A racing creator that slips past the lookup hits the unique index."""
        await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        with patch.object(grants, "find_active_grant", AsyncMock(return_value=None)):
            with pytest.raises(ConflictError):
                await grants.create_grant(
                    db, world.employee.id, world.ucook.id, world.magento_admin.id
                )

        # The session is still usable and the invariant held
        assert await _active_count(db, world.employee.id) == 1

    @pytest.mark.asyncio
    async def test_audited(self, db, world):
        with patch.object(grants.audit_service, "log", AsyncMock()) as log:
            grant = await grants.create_grant(
                db, world.employee.id, world.ucook.id, world.magento_admin.id
            )
        assert log.await_args.kwargs["action"] == "grant_created"
        assert log.await_args.kwargs["resource_id"] == grant.id


class TestUpdateStatus:
    """Test the generic status update."""

    @pytest.mark.asyncio
    async def test_removed_at_coupling(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )

        grant = await grants.update_status(db, grant.id, "to_remove")
        assert grant.status == "to_remove"
        assert grant.removed_at is None

        grant = await grants.update_status(db, grant.id, "active")
        assert grant.removed_at is None

        grant = await grants.update_status(db, grant.id, "removed")
        assert grant.status == "removed"
        assert grant.removed_at is not None

    @pytest.mark.asyncio
    async def test_removed_is_terminal(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        await grants.update_status(db, grant.id, "removed")
        with pytest.raises(InvalidStatusTransition):
            await grants.update_status(db, grant.id, "active")

    @pytest.mark.asyncio
    async def test_same_status_rejected(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        with pytest.raises(InvalidStatusTransition):
            await grants.update_status(db, grant.id, "active")

    @pytest.mark.asyncio
    async def test_missing_grant(self, db):
        with pytest.raises(NotFoundError):
            await grants.update_status(db, "missing", "removed")


class TestOwnerRemoval:
    """Test MarkToRemove, MarkRemoved and CancelRemoval."""

    @pytest.mark.asyncio
    async def test_full_removal(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )

        grant = await grants.mark_to_remove(db, grant.id, world.owner.id)
        assert grant.status == "to_remove"
        assert grant.removed_at is None

        grant = await grants.mark_removed(db, grant.id, world.owner.id)
        assert grant.status == "removed"
        assert grant.removed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_removal(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        await grants.mark_to_remove(db, grant.id, world.owner.id)

        grant = await grants.cancel_removal(db, grant.id, world.owner.id)
        assert grant.status == "active"
        assert grant.removed_at is None

    @pytest.mark.asyncio
    async def test_non_owner_forbidden(self, db, world):
        """Admins are not owners; removal is an owner-only operation."""
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        for actor in (world.outsider, world.admin, world.manager):
            with pytest.raises(ForbiddenError):
                await grants.mark_to_remove(db, grant.id, actor.id)

    @pytest.mark.asyncio
    async def test_owner_of_other_system_forbidden(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.acu_prod.id, world.acu_admin.id
        )
        with pytest.raises(ForbiddenError):
            await grants.mark_to_remove(db, grant.id, world.owner.id)

    @pytest.mark.asyncio
    async def test_required_status(self, db, world):
        grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        with pytest.raises(BadRequestError) as exc_info:
            await grants.mark_removed(db, grant.id, world.owner.id)
        assert "must be in 'to_remove' status" in exc_info.value.message

        with pytest.raises(BadRequestError):
            await grants.cancel_removal(db, grant.id, world.owner.id)

    @pytest.mark.asyncio
    async def test_cancel_blocked_by_newer_active_grant(self, db, world):
        flagged = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        await grants.mark_to_remove(db, flagged.id, world.owner.id)
        await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )

        with pytest.raises(ConflictError):
            await grants.cancel_removal(db, flagged.id, world.owner.id)
        assert await _active_count(db, world.employee.id) == 1

    @pytest.mark.asyncio
    async def test_find_pending_removal_filters_by_ownership(self, db, world):
        magento_grant = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        acu_grant = await grants.create_grant(
            db, world.employee.id, world.acu_prod.id, world.acu_admin.id
        )
        await grants.mark_to_remove(db, magento_grant.id, world.owner.id)
        await grants.update_status(db, acu_grant.id, "to_remove")

        pending = await grants.find_pending_removal(db, world.owner.id)
        assert [g.id for g in pending] == [magento_grant.id]
        assert await grants.find_pending_removal(db, world.outsider.id) == []


class TestBulkRemoval:
    """Test best-effort bulk removal."""

    @pytest.mark.asyncio
    async def test_mixed_batch(self, db, world):
        valid = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        removed = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_viewer.id
        )
        await grants.update_status(db, removed.id, "removed")

        result = await grants.bulk_mark_to_remove(
            db, [valid.id, removed.id], world.owner.id
        )

        assert result.successful == [valid.id]
        assert len(result.failed) == 1
        assert result.failed[0].id == removed.id
        assert "must be in 'active' status" in result.failed[0].reason

    @pytest.mark.asyncio
    async def test_failure_does_not_undo_success(self, db, world):
        first = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        second = await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_viewer.id
        )
        await grants.bulk_mark_to_remove(db, [first.id, second.id], world.owner.id)

        result = await grants.bulk_mark_removed(
            db, [first.id, "missing", second.id], world.owner.id
        )

        assert result.successful == [first.id, second.id]
        assert [f.id for f in result.failed] == ["missing"]
        assert (await grants.get_grant(db, second.id)).status == "removed"


class TestFindAll:
    """Test the grant overview query."""

    async def _seed(self, db, world):
        await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id,
            granted_at=datetime(2024, 1, 3),
        )
        await grants.create_grant(
            db, world.outsider.id, world.acu_prod.id, world.acu_admin.id,
            granted_at=datetime(2024, 1, 1),
        )
        await grants.create_grant(
            db, world.manager.id, world.ucook.id, world.magento_viewer.id,
            granted_at=datetime(2024, 1, 2), status="to_remove",
        )

    @pytest.mark.asyncio
    async def test_default_sort_newest_first(self, db, world):
        await self._seed(db, world)
        result, total = await grants.find_all(db)
        assert total == 3
        assert [g.granted_at.day for g in result] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_sort_by_user_name(self, db, world):
        await self._seed(db, world)
        result, _ = await grants.find_all(db, sort_by="userName", sort_order="asc")
        assert [g.user.name for g in result] == [
            "Eve Employee",
            "Mia Manager",
            "Oscar Outsider",
        ]

    @pytest.mark.asyncio
    async def test_filters(self, db, world):
        await self._seed(db, world)

        result, total = await grants.find_all(db, system_id=world.magento.id)
        assert total == 2

        result, total = await grants.find_all(db, status="to_remove")
        assert [g.user_id for g in result] == [world.manager.id]

        result, total = await grants.find_all(db, user_search="OSCAR")
        assert total == 1 and result[0].user_id == world.outsider.id

        result, total = await grants.find_all(
            db, access_tier_id=world.magento_admin.id, user_id=world.employee.id
        )
        assert total == 1

    @pytest.mark.asyncio
    async def test_pagination_and_limit_clamp(self, db, world):
        await self._seed(db, world)
        page_two, total = await grants.find_all(db, page=2, limit=2)
        assert total == 3
        assert len(page_two) == 1

        result, _ = await grants.find_all(db, limit=1000)
        assert len(result) == 3

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, db, world):
        same_time = datetime(2024, 2, 1)
        for tier in (world.magento_admin, world.magento_viewer):
            await grants.create_grant(
                db, world.employee.id, world.ucook.id, tier.id, granted_at=same_time
            )
        result, _ = await grants.find_all(db)
        ids = [g.id for g in result]
        assert ids == sorted(ids)

    @pytest.mark.asyncio
    async def test_invalid_sort_field(self, db):
        with pytest.raises(BadRequestError):
            await grants.find_all(db, sort_by="email")


class TestBulkCreate:
    """Test JSON bulk creation accounting."""

    @pytest.mark.asyncio
    async def test_success_skip_and_failure(self, db, world):
        await grants.create_grant(
            db, world.employee.id, world.ucook.id, world.magento_admin.id
        )
        inputs = [
            grants.GrantInput(
                user_id=world.outsider.id,
                system_instance_id=world.ucook.id,
                access_tier_id=world.magento_admin.id,
            ),
            grants.GrantInput(
                user_id=world.employee.id,
                system_instance_id=world.ucook.id,
                access_tier_id=world.magento_admin.id,
            ),
            grants.GrantInput(
                user_id=world.outsider.id,
                system_instance_id=world.ucook.id,
                access_tier_id=world.acu_admin.id,
            ),
        ]

        result = await grants.bulk_create(db, inputs, granted_by_id=world.admin.id)

        assert [r.row for r in result.results] == [1, 2, 3]
        assert (result.success, result.skipped, result.failed) == (1, 1, 1)
        assert result.results[0].grant.granted_by_id == world.admin.id
        assert result.results[1].error == grants.DUPLICATE_GRANT_ERROR
        assert "does not belong to system" in result.results[2].error

    @pytest.mark.asyncio
    async def test_duplicate_within_batch_skipped(self, db, world):
        row = dict(
            user_id=world.outsider.id,
            system_instance_id=world.ucook.id,
            access_tier_id=world.magento_admin.id,
        )
        result = await grants.bulk_create(
            db, [grants.GrantInput(**row), grants.GrantInput(**row)]
        )
        assert (result.success, result.skipped) == (1, 1)

    @pytest.mark.asyncio
    async def test_auto_creates_user_by_email(self, db, world):
        result = await grants.bulk_create(
            db,
            [
                grants.GrantInput(
                    user_email="new.starter@example.com",
                    system_instance_id=world.ucook.id,
                    access_tier_id=world.magento_viewer.id,
                )
            ],
        )
        assert result.success == 1
        assert result.results[0].grant.user.name == "New Starter"

    @pytest.mark.asyncio
    async def test_missing_user_reference(self, db, world):
        result = await grants.bulk_create(
            db,
            [
                grants.GrantInput(
                    system_instance_id=world.ucook.id,
                    access_tier_id=world.magento_viewer.id,
                )
            ],
        )
        assert result.failed == 1
        assert result.results[0].error == "User ID or email is required"
