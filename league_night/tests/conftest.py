"""
Shared pytest configuration for league night tests.

Runs against TEST_DATABASE_URL when set (PostgreSQL in CI), otherwise against
a throwaway SQLite file in the pytest temp dir. Partial unique indexes are
declared for both dialects so the store enforces the same invariants.

SAFETY: a TEST_DATABASE_URL whose database name does not contain "test" is
refused, so a misconfigured environment can never drop real tables.
"""

import os

# Must be set before the routes package is imported (disables rate limiting)
os.environ.setdefault("ENV", "test")

from datetime import date, timedelta  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from league_night.database import db  # noqa: E402
from league_night.database.db import Base  # noqa: E402
from league_night.database.models import (  # noqa: E402
    League,
    LeagueDay,
    LeagueMember,
    LeagueNightInstance,
    LeagueRole,
    InstanceStatus,
    Profile,
)
from league_night.services import push_service, realtime_manager  # noqa: E402
from league_night.services.exceptions import PushEndpointGoneError  # noqa: E402
from league_night.utils.background_tasks import wait_for_background_tasks  # noqa: E402
from league_night.utils.datetime_utils import league_today  # noqa: E402


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL.

    Raises ``RuntimeError`` if TEST_DATABASE_URL points at a database whose
    name does not contain "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'league_night_test.db'}"

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"SAFETY: Refusing to run tests against database '{db_name}'. "
            f"Set TEST_DATABASE_URL to a database whose name contains 'test'."
        )
    return url


class FakePushTransport(push_service.PushTransport):
    """Records deliveries; endpoints listed in ``gone`` answer 410, in ``failing`` raise."""

    def __init__(self):
        self.sent = []
        self.gone = set()
        self.failing = set()

    async def send(self, subscription_info, payload, ttl):
        endpoint = subscription_info["endpoint"]
        if endpoint in self.gone:
            raise PushEndpointGoneError(endpoint, 410)
        if endpoint in self.failing:
            raise ConnectionError(f"push service unreachable for {endpoint}")
        self.sent.append((endpoint, payload))


@pytest.fixture(autouse=True)
def league_timezone(monkeypatch):
    """Date math in tests runs in UTC unless a test overrides it."""
    monkeypatch.setenv("LEAGUE_TIMEZONE", "UTC")


@pytest.fixture(autouse=True)
def fresh_channel_registry(monkeypatch):
    """Each test starts with an empty realtime channel registry."""
    registry = realtime_manager.ChannelRegistry()
    monkeypatch.setattr(realtime_manager, "_channel_registry", registry)
    return registry


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine with all tables."""
    # NullPool avoids reusing connections across event loops
    engine = create_async_engine(
        _resolve_test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (push dispatcher, monitor, websocket)
    # goes through db.AsyncSessionLocal
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    yield engine

    await wait_for_background_tasks(timeout=5)
    db.AsyncSessionLocal = original_async_session_local
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def push_transport(session_factory, monkeypatch):
    """Install a dispatcher backed by a fake transport and the test database."""
    transport = FakePushTransport()
    dispatcher = push_service.PushDispatcher(transport=transport, session_factory=session_factory)
    monkeypatch.setattr(push_service, "_push_dispatcher", dispatcher)
    return transport


@pytest_asyncio.fixture
async def db_session(session_factory, push_transport):
    """Database session for a test; background work is drained before teardown."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await wait_for_background_tasks(timeout=5)
            await session.close()


@pytest_asyncio.fixture
async def league(db_session):
    """A league with one admin, one organizer, eight players and a Tuesday 18:00 slot."""
    league = League(name="Tuesday Doubles")
    db_session.add(league)

    admin = Profile(first_name="Ada", last_name="Admin", email="ada@example.com")
    organizer = Profile(first_name="Otto", last_name="Organizer")
    players = [
        Profile(first_name=first, last_name=last, skill_level="intermediate")
        for first, last in (
            ("Alice", "Alpha"),
            ("Bob", "Beta"),
            ("Carol", "Gamma"),
            ("Dave", "Delta"),
            ("Erin", "Epsilon"),
            ("Frank", "Foxtrot"),
            ("Grace", "Golf"),
            ("Hank", "Hotel"),
        )
    ]
    db_session.add_all([admin, organizer, *players])
    await db_session.flush()

    db_session.add_all(
        [
            LeagueMember(league_id=league.id, user_id=admin.id, role=LeagueRole.ADMIN.value),
            LeagueMember(league_id=league.id, user_id=organizer.id, role=LeagueRole.ORGANIZER.value),
        ]
        + [
            LeagueMember(league_id=league.id, user_id=player.id, role=LeagueRole.MEMBER.value)
            for player in players
        ]
    )
    day = LeagueDay(
        league_id=league.id,
        day_of_week=2,
        start_time="18:00",
        total_courts=2,
        court_labels=["Court A", "Court B"],
    )
    db_session.add(day)
    await db_session.commit()

    return {
        "league_id": league.id,
        "day_id": day.id,
        "admin_id": admin.id,
        "organizer_id": organizer.id,
        "players": [player.id for player in players],
    }


@pytest_asyncio.fixture
async def make_instance(db_session, league):
    """Factory for instances that will not auto-start (dated tomorrow unless given)."""

    async def _make(
        status=InstanceStatus.SCHEDULED.value,
        night_date: date = None,
        court_labels=("Court A", "Court B"),
        auto_assignment_enabled=True,
        start_time="18:00",
    ):
        instance = LeagueNightInstance(
            league_id=league["league_id"],
            league_day_id=league["day_id"],
            date=night_date or league_today() + timedelta(days=1),
            day_of_week=2,
            start_time=start_time,
            courts_available=len(court_labels),
            court_labels=list(court_labels),
            status=status,
            auto_assignment_enabled=auto_assignment_enabled,
        )
        db_session.add(instance)
        await db_session.commit()
        return instance

    return _make
