"""Shared test fixtures."""
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from access_portal.db.database import enable_sqlite_savepoints
from access_portal.db.models import Base
from access_portal.services import catalog, ownership, roles, users
from access_portal.services.notifications import notification_dispatcher


@pytest_asyncio.fixture
async def engine():
    """In-memory database shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


async def seed_world(db: AsyncSession) -> SimpleNamespace:
    """Two systems, their instances and tiers, and the usual cast of users.

    employee reports to manager. owner owns Magento only. admin has the
    stored admin role. outsider has no relation to anyone.
    """
    manager = await users.create_user(db, "manager@example.com", "Mia Manager")
    employee = await users.create_user(
        db, "employee@example.com", "Eve Employee", manager_id=manager.id
    )
    owner = await users.create_user(db, "owner@example.com", "Otto Owner")
    admin = await users.create_user(db, "admin@example.com", "Ada Admin")
    outsider = await users.create_user(db, "outsider@example.com", "Oscar Outsider")
    await roles.assign_role(db, admin.id, "admin")

    magento = await catalog.create_system(db, "Magento", "E-commerce platform")
    ucook = await catalog.create_instance(
        db, magento.id, "UCOOK Production", region="eu-west-1", environment="production"
    )
    magento_admin = await catalog.create_tier(db, magento.id, "Admin")
    magento_viewer = await catalog.create_tier(db, magento.id, "Viewer")

    acumatica = await catalog.create_system(db, "Acumatica", "ERP")
    acu_prod = await catalog.create_instance(db, acumatica.id, "Production")
    acu_admin = await catalog.create_tier(db, acumatica.id, "Admin")

    await ownership.assign_owner(db, owner.id, magento.id)

    return SimpleNamespace(
        manager=manager,
        employee=employee,
        owner=owner,
        admin=admin,
        outsider=outsider,
        magento=magento,
        ucook=ucook,
        magento_admin=magento_admin,
        magento_viewer=magento_viewer,
        acumatica=acumatica,
        acu_prod=acu_prod,
        acu_admin=acu_admin,
    )


@pytest_asyncio.fixture
async def world(db):
    return await seed_world(db)


@pytest.fixture
def notifications():
    """Replace the notification backend with a recording mock."""
    from unittest.mock import AsyncMock, MagicMock

    backend = MagicMock()
    backend.notify_manager = AsyncMock()
    backend.notify_system_owners = AsyncMock()
    backend.notify_requester = AsyncMock()

    previous = notification_dispatcher.backend
    notification_dispatcher.configure(backend=backend)
    yield backend
    notification_dispatcher.backend = previous


@pytest_asyncio.fixture
async def api_world(session_factory):
    """Committed seed data visible to every request session."""
    async with session_factory() as session:
        world = await seed_world(session)
        await session.commit()
    return world
