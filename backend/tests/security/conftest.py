"""
Security test fixtures.

These fixtures enable testing security scenarios like IDOR (Insecure Direct
Object Reference) by creating multiple users and their associated data, and
clients authenticated as each of them.
"""
from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.bookmark import Bookmark
from models.user import User
from services.bookmark_store import SqlAlchemyBookmarkStore
from tasks.enrichment_scheduler import EnrichmentScheduler
from tests.tasks.conftest import FakeLinkChecker, FakeScreenshotService


@pytest.fixture
async def user_a(db_session: AsyncSession) -> User:
    """Create the first test user (User A)."""
    user = User(auth0_id="auth0|user-a", email="user-a@test.com")
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def user_b(db_session: AsyncSession) -> User:
    """Create a second test user (User B) for IDOR testing."""
    user = User(auth0_id="auth0|user-b", email="user-b@test.com")
    db_session.add(user)
    await db_session.flush()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def user_a_bookmark(db_session: AsyncSession, user_a: User) -> Bookmark:
    """Create a bookmark belonging to User A, with a captured screenshot."""
    bookmark = Bookmark(
        user_id=user_a.id,
        url="https://user-a-bookmark.example.com/",
        title="User A's Private Bookmark",
        screenshot_status="done",
        screenshot_url="/screenshots/user-a.png",
    )
    db_session.add(bookmark)
    await db_session.flush()
    await db_session.refresh(bookmark)
    return bookmark


@pytest.fixture
def link_checker() -> FakeLinkChecker:
    return FakeLinkChecker()


@pytest.fixture
def screenshots() -> FakeScreenshotService:
    return FakeScreenshotService()


@pytest.fixture
async def client_as_user_b(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    user_b: User,
    link_checker: FakeLinkChecker,
    screenshots: FakeScreenshotService,
) -> AsyncGenerator[AsyncClient]:
    """Create a test client authenticated as User B, with an enrichment scheduler attached."""
    from core.config import get_settings

    get_settings.cache_clear()

    from api.main import app
    from core.auth import get_current_user
    from db.session import get_async_session

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        yield db_session

    async def override_get_current_user() -> User:
        return user_b

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_current_user] = override_get_current_user

    store = SqlAlchemyBookmarkStore(session_factory)
    scheduler = EnrichmentScheduler(store, link_checker, screenshots)
    app.state.scheduler = scheduler
    app.state.bookmark_store = store

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    await scheduler.stop()
    del app.state.scheduler
    del app.state.bookmark_store
    app.dependency_overrides.clear()
