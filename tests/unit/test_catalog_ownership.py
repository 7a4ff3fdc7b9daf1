"""Tests for the catalog, the ownership registry and roles."""
import pytest

from access_portal.services import catalog, ownership, roles, users
from access_portal.services.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
)


class TestCatalog:
    """Test systems, instances and tiers."""

    @pytest.mark.asyncio
    async def test_system_loaded_with_children(self, db, world):
        system = await catalog.get_system(db, world.magento.id)
        assert [i.name for i in system.instances] == ["UCOOK Production"]
        assert sorted(t.name for t in system.access_tiers) == ["Admin", "Viewer"]

    @pytest.mark.asyncio
    async def test_duplicate_system_name(self, db, world):
        with pytest.raises(ConflictError):
            await catalog.create_system(db, "Magento")

    @pytest.mark.asyncio
    async def test_rename_to_taken_name(self, db, world):
        with pytest.raises(ConflictError):
            await catalog.update_system(db, world.acumatica.id, name="Magento")

    @pytest.mark.asyncio
    async def test_duplicate_instance_name(self, db, world):
        with pytest.raises(ConflictError) as exc_info:
            await catalog.create_instance(db, world.magento.id, "UCOOK Production")
        assert "Magento" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_instance_for_missing_system(self, db):
        with pytest.raises(NotFoundError):
            await catalog.create_instance(db, "missing", "Production")

    @pytest.mark.asyncio
    async def test_tier_names_scoped_to_system(self, db, world):
        """Acumatica already has Admin; Magento may too."""
        tier = await catalog.create_tier(db, world.acumatica.id, "Viewer")
        assert tier.system_id == world.acumatica.id
        with pytest.raises(ConflictError):
            await catalog.create_tier(db, world.acumatica.id, "Admin")

    @pytest.mark.asyncio
    async def test_update_instance(self, db, world):
        instance = await catalog.update_instance(
            db, world.ucook.id, region="af-south-1", environment="staging"
        )
        assert instance.region == "af-south-1"
        assert instance.environment == "staging"

    @pytest.mark.asyncio
    async def test_resolve_matching_pair(self, db, world):
        instance, tier = await catalog.resolve_instance_and_tier(
            db, world.ucook.id, world.magento_viewer.id
        )
        assert instance.id == world.ucook.id
        assert tier.id == world.magento_viewer.id

    @pytest.mark.asyncio
    async def test_resolve_mismatched_pair(self, db, world):
        with pytest.raises(UnprocessableError) as exc_info:
            await catalog.resolve_instance_and_tier(db, world.ucook.id, world.acu_admin.id)
        assert exc_info.value.status_code == 422


class TestOwnership:
    """Test the ownership registry."""

    @pytest.mark.asyncio
    async def test_is_owner(self, db, world):
        assert await ownership.is_owner(db, world.owner.id, world.magento.id)
        assert not await ownership.is_owner(db, world.owner.id, world.acumatica.id)

    @pytest.mark.asyncio
    async def test_duplicate_assignment(self, db, world):
        with pytest.raises(ConflictError) as exc_info:
            await ownership.assign_owner(db, world.owner.id, world.magento.id)
        assert "already an owner" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_remove_missing_assignment(self, db, world):
        with pytest.raises(NotFoundError) as exc_info:
            await ownership.remove_owner(db, world.owner.id, world.acumatica.id)
        assert "is not an owner" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_find_by_system_and_user(self, db, world):
        await ownership.assign_owner(db, world.owner.id, world.acumatica.id)

        by_system = await ownership.find_by_system(db, world.magento.id)
        assert [o.user.email for o in by_system] == ["owner@example.com"]

        by_user = await ownership.find_by_user(db, world.owner.id)
        assert sorted(o.system.name for o in by_user) == ["Acumatica", "Magento"]

    @pytest.mark.asyncio
    async def test_remove_owner(self, db, world):
        await ownership.remove_owner(db, world.owner.id, world.magento.id)
        assert not await ownership.is_owner(db, world.owner.id, world.magento.id)

    @pytest.mark.asyncio
    async def test_require_owner(self, db, world):
        await ownership.require_owner(db, world.owner.id, world.magento.id, "do this")
        with pytest.raises(ForbiddenError) as exc_info:
            await ownership.require_owner(
                db, world.outsider.id, world.magento.id, "do this"
            )
        assert exc_info.value.message == "Only system owners can do this"

    @pytest.mark.asyncio
    async def test_admin_passes_owner_or_admin(self, db, world):
        await ownership.require_owner_or_admin(
            db, world.admin.id, world.acumatica.id, "do this"
        )
        with pytest.raises(ForbiddenError):
            await ownership.require_owner_or_admin(
                db, world.owner.id, world.acumatica.id, "do this"
            )

    @pytest.mark.asyncio
    async def test_owners_of_systems_excludes_deleted(self, db, world):
        await ownership.assign_owner(db, world.outsider.id, world.magento.id)
        await users.soft_delete_user(db, world.outsider.id)

        owners = await ownership.owners_of_systems(db, {world.magento.id})
        assert [u.email for u in owners] == ["owner@example.com"]


class TestRoles:
    """Test explicit and derived roles."""

    @pytest.mark.asyncio
    async def test_effective_roles(self, db, world):
        assert await roles.effective_roles(db, world.admin.id) == ["admin"]
        assert await roles.effective_roles(db, world.owner.id) == ["owner"]
        assert await roles.effective_roles(db, world.manager.id) == ["manager"]
        assert await roles.effective_roles(db, world.employee.id) == []

    @pytest.mark.asyncio
    async def test_roles_never_inferred_from_email(self, db):
        user = await users.create_user(db, "admin.owner.manager@example.com", "Tricky")
        assert await roles.effective_roles(db, user.id) == []

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, db, world):
        await roles.assign_role(db, world.admin.id, "admin")
        assert await roles.effective_roles(db, world.admin.id) == ["admin"]

    @pytest.mark.asyncio
    async def test_unknown_role(self, db, world):
        with pytest.raises(BadRequestError):
            await roles.assign_role(db, world.outsider.id, "owner")

    @pytest.mark.asyncio
    async def test_revoke(self, db, world):
        assert await roles.revoke_role(db, world.admin.id, "admin") == []
        with pytest.raises(NotFoundError):
            await roles.revoke_role(db, world.admin.id, "admin")
