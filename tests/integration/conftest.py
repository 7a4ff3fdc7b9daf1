"""Fixtures for API tests."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from access_portal.api.dependencies.auth import create_access_token
from access_portal.db.database import get_db
from access_portal.main import app


@pytest_asyncio.fixture
async def client(session_factory):
    """Create test client with overridden database."""
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Build bearer headers for a user."""
    def headers(user) -> dict[str, str]:
        token, _ = create_access_token(user)
        return {"Authorization": f"Bearer {token}"}

    return headers
