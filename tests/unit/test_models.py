"""Tests for database models."""
import pytest
from sqlalchemy.exc import IntegrityError

from access_portal.db.models import (
    AccessGrant,
    AccessTier,
    System,
    SystemInstance,
    SystemOwner,
    User,
    UserRole,
)


async def _catalog(db):
    user = User(email="jane@example.com", name="Jane")
    system = System(name="Magento")
    db.add_all([user, system])
    await db.flush()
    instance = SystemInstance(system_id=system.id, name="UCOOK Production")
    tier = AccessTier(system_id=system.id, name="Admin")
    db.add_all([instance, tier])
    await db.flush()
    return user, instance, tier


class TestUserModel:
    """Test User model."""

    @pytest.mark.asyncio
    async def test_create_user_with_defaults(self, db):
        user = User(email="jane@example.com", name="Jane")
        db.add(user)
        await db.flush()

        assert user.id is not None
        assert user.manager_id is None
        assert user.deleted_at is None

    @pytest.mark.asyncio
    async def test_email_unique(self, db):
        db.add(User(email="jane@example.com", name="Jane"))
        await db.flush()
        db.add(User(email="jane@example.com", name="Other Jane"))
        with pytest.raises(IntegrityError):
            await db.flush()

    @pytest.mark.asyncio
    async def test_role_pair_unique(self, db):
        user = User(email="jane@example.com", name="Jane")
        db.add(user)
        await db.flush()
        db.add(UserRole(user_id=user.id, role="admin"))
        await db.flush()
        db.add(UserRole(user_id=user.id, role="admin"))
        with pytest.raises(IntegrityError):
            await db.flush()


class TestCatalogModels:
    """Test catalog uniqueness constraints."""

    @pytest.mark.asyncio
    async def test_instance_name_unique_per_system(self, db):
        _, instance, _ = await _catalog(db)
        db.add(SystemInstance(system_id=instance.system_id, name="UCOOK Production"))
        with pytest.raises(IntegrityError):
            await db.flush()

    @pytest.mark.asyncio
    async def test_same_instance_name_in_other_system(self, db):
        await _catalog(db)
        other = System(name="Acumatica")
        db.add(other)
        await db.flush()
        db.add(SystemInstance(system_id=other.id, name="UCOOK Production"))
        await db.flush()

    @pytest.mark.asyncio
    async def test_owner_pair_unique(self, db):
        user, instance, _ = await _catalog(db)
        db.add(SystemOwner(user_id=user.id, system_id=instance.system_id))
        await db.flush()
        db.add(SystemOwner(user_id=user.id, system_id=instance.system_id))
        with pytest.raises(IntegrityError):
            await db.flush()


class TestAccessGrantModel:
    """Test the partial unique index on active grants."""

    @pytest.mark.asyncio
    async def test_grant_defaults(self, db):
        user, instance, tier = await _catalog(db)
        grant = AccessGrant(
            user_id=user.id, system_instance_id=instance.id, access_tier_id=tier.id
        )
        db.add(grant)
        await db.flush()

        assert grant.status == "active"
        assert grant.removed_at is None

    @pytest.mark.asyncio
    async def test_second_active_grant_rejected(self, db):
        user, instance, tier = await _catalog(db)
        for _ in range(2):
            db.add(
                AccessGrant(
                    user_id=user.id,
                    system_instance_id=instance.id,
                    access_tier_id=tier.id,
                )
            )
        with pytest.raises(IntegrityError):
            await db.flush()

    @pytest.mark.asyncio
    async def test_removed_grants_not_constrained(self, db):
        """Historical removed rows may repeat alongside one active row."""
        user, instance, tier = await _catalog(db)
        for status in ("removed", "removed", "active", "to_remove"):
            db.add(
                AccessGrant(
                    user_id=user.id,
                    system_instance_id=instance.id,
                    access_tier_id=tier.id,
                    status=status,
                )
            )
        await db.flush()
