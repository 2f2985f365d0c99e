"""Shared fixtures for API tests."""
from collections.abc import AsyncGenerator
from dataclasses import dataclass

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.main import app
from core.auth import DEV_USER_AUTH0_ID, get_or_create_user
from models.bookmark import Bookmark
from models.user import User
from services.bookmark_store import SqlAlchemyBookmarkStore
from tasks.enrichment_scheduler import EnrichmentScheduler, SchedulerConfig
from tests.tasks.conftest import FakeLinkChecker, FakeScreenshotService


@dataclass
class Enrichment:
    """Scheduler attached to the app, with handles on its fake backends."""

    scheduler: EnrichmentScheduler
    store: SqlAlchemyBookmarkStore
    link_checker: FakeLinkChecker
    screenshots: FakeScreenshotService


@pytest.fixture
async def dev_user(db_session: AsyncSession) -> User:
    """The user DEV_MODE authenticates every request as."""
    return await get_or_create_user(db_session, auth0_id=DEV_USER_AUTH0_ID, email="dev@localhost")


@pytest.fixture
async def other_user(db_session: AsyncSession) -> User:
    """A second user whose bookmarks the dev user must not reach."""
    user = User(auth0_id="auth0|someone-else", email="someone@example.com")
    db_session.add(user)
    await db_session.flush()
    return user


async def add_bookmark(
    db_session: AsyncSession, user: User, url: str = "https://example.com/", **fields: object,
) -> Bookmark:
    """Create a bookmark for a user."""
    bookmark = Bookmark(user_id=user.id, url=url, **fields)
    db_session.add(bookmark)
    await db_session.flush()
    return bookmark


@pytest.fixture
async def enrichment(
    client: AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[Enrichment]:
    """
    Attach a scheduler with fake network backends to the app.

    ASGITransport doesn't run the lifespan, so the scheduler is created here.
    It writes through the real store, bound to the test transaction. It is
    never started, so no periodic pass runs during a test.
    """
    store = SqlAlchemyBookmarkStore(session_factory)
    link_checker = FakeLinkChecker()
    screenshots = FakeScreenshotService()
    scheduler = EnrichmentScheduler(
        store, link_checker, screenshots, config=SchedulerConfig(max_concurrent=2),
    )
    app.state.scheduler = scheduler
    app.state.bookmark_store = store

    yield Enrichment(scheduler, store, link_checker, screenshots)

    if screenshots.release is not None:
        screenshots.release.set()
    await scheduler.stop()
    del app.state.scheduler
    del app.state.bookmark_store
