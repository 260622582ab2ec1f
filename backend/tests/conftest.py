"""
Pytest fixtures for the database, notifications and the HTTP client.

Every test gets its own file-backed SQLite database, so concurrent
transactions really contend for the write lock the way they do in
production.
"""

from datetime import datetime
from functools import partial
from typing import AsyncGenerator, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gatepass.core.config import get_settings
from gatepass.db.base import Base
from gatepass.db.session import build_engine, build_session_factory, get_db, get_session_factory, run_in_transaction
from gatepass.main import app
from gatepass.services import access_code_service
from gatepass.services.allocation_service import register_free
from gatepass.services.notification_service import MessageBody, NotificationDispatcher, set_dispatcher
from gatepass.services.policy_service import update_policy

ADMIN_HEADERS = {
    "X-Admin-Key": get_settings().ADMIN_API_KEY,
    "X-Admin-Actor": "tester",
}


class RecordingSender:
    """Email sender that keeps every message instead of sending it."""

    def __init__(self):
        self.sent: List[Tuple[str, str, MessageBody]] = []

    async def send(self, to_address: str, subject: str, body: MessageBody) -> None:
        self.sent.append((to_address, subject, body))

    def subjects_for(self, email: str) -> List[str]:
        return [subject for to, subject, _ in self.sent if to == email]


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture(autouse=True)
def dispatcher(sender: RecordingSender):
    """Not started: tests call `await dispatcher.drain()` to deliver."""
    dispatcher = NotificationDispatcher(sender=sender, maxsize=1000)
    set_dispatcher(dispatcher)
    yield dispatcher
    set_dispatcher(None)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'gatepass.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Read-only session for assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def tx(session_factory: async_sessionmaker):
    """Run a service call in its own committed transaction: `await tx(fn, **kwargs)`."""

    async def run(work, **kwargs):
        return await run_in_transaction(partial(work, **kwargs), session_factory=session_factory)

    return run


@pytest.fixture
def configure(tx):
    """Apply event policy changes: `await configure(total_free_cap=2, fcfs_limit=1)`."""

    async def apply(**changes):
        return await tx(update_policy, changes=changes, actor="tester")

    return apply


@pytest.fixture
def register(tx):
    async def run(email: str, name: str = "Test User", now: Optional[datetime] = None):
        return await tx(register_free, email=email, name=name, now=now)

    return run


@pytest_asyncio.fixture
async def guest_code(tx):
    return await tx(
        access_code_service.create_guest_code,
        label="Speakers",
        actor="tester",
        max_registrations=1,
    )


@pytest_asyncio.fixture
async def client(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the per-test database."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return dict(ADMIN_HEADERS)


@pytest.fixture
def fetch(session_factory: async_sessionmaker):
    """Load a fresh copy of a row: `await fetch(Registration, reg_id)`."""

    async def load(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)

    return load
