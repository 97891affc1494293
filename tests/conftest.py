from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from civictrack.infrastructure.database import Base, configure_sqlite_engine, get_session
from civictrack.issues.application import (
    EngagementService,
    EscalationService,
    IssueLifecycleService,
)
from civictrack.issues.application.services import FeedbackService
from civictrack.issues.domain import Location, SLAConfig
from civictrack.issues.infrastructure import (
    SLAConfigManager,
    IssueModel,
    SQLAlchemyIssueRepository,
    SQLAlchemyStateHistoryRepository,
    SQLAlchemyUnitOfWork,
)
from civictrack.main import create_app

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def hours(n: float) -> timedelta:
    return timedelta(hours=n)


class RecordingNotifier:
    """Collects escalation notifications instead of posting them."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def notify_escalation(self, issue, record, channels):
        if self.fail:
            raise RuntimeError("webhook down")
        self.sent.append((issue.id, record.level, record.target, list(channels)))
        return True


class InterleavedWriteRepository(SQLAlchemyIssueRepository):
    """Lands another writer's update between a service's read and its guarded save."""

    def __init__(self, session: AsyncSession, **values):
        super().__init__(session)
        self.values = values

    async def save(self, issue, expected_version, require_no_feedback=False):
        await self._session.execute(
            update(IssueModel)
            .where(IssueModel.id == UUID(issue.id))
            .values(version=IssueModel.version + 1, **self.values)
        )
        return await super().save(issue, expected_version, require_no_feedback)


def build_services(session: AsyncSession, config_provider, notifier=None, issues=None) -> SimpleNamespace:
    issues = issues or SQLAlchemyIssueRepository(session)
    history = SQLAlchemyStateHistoryRepository(session)
    uow = SQLAlchemyUnitOfWork(session)
    return SimpleNamespace(
        lifecycle=IssueLifecycleService(issues, history, config_provider, uow),
        engagement=EngagementService(issues, uow),
        feedback=FeedbackService(issues, history, uow),
        escalation=EscalationService(issues, history, config_provider, uow, notifier),
        issues=issues,
        uow=uow,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so that separate sessions use separate connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'civictrack.db'}",
        poolclass=NullPool,
    )
    configure_sqlite_engine(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def config_provider():
    return SLAConfigManager(SLAConfig())


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session, config_provider, notifier):
    return build_services(session, config_provider, notifier)


@pytest.fixture
def make_issue(services):
    """Create an issue through the lifecycle service."""

    async def _make_issue(priority="medium", now=T0, **overrides):
        fields = dict(
            title="Broken streetlight",
            description="Lamp post 14 has been dark for a week.",
            category="street-lighting",
            priority=priority,
            department="Electrical",
            reporter_id="citizen-1",
            location=Location(address="12 Lake Road", city="Pune"),
            ward="Ward 7",
            now=now,
        )
        fields.update(overrides)
        return await services.lifecycle.create_issue(**fields)

    return _make_issue


@pytest.fixture
def resolve(services):
    """Walk an issue pending -> assigned -> in-progress -> resolved."""

    async def _resolve(issue, at):
        for status in ("assigned", "in-progress", "resolved"):
            issue = await services.lifecycle.transition_issue(
                issue.id, status, actor_id="staff-1", now=at
            )
        return issue

    return _resolve


@pytest_asyncio.fixture
async def client(session_factory, config_provider, notifier):
    """HTTP client against an app wired to the test database."""
    app = create_app(use_lifespan=False)
    app.state.sla_config = config_provider
    app.state.notifier = notifier

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
