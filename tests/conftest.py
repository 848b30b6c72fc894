"""
Shared fixtures: a temporary SQLite database, a controllable clock and
fake delivery collaborators.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from helpdesk_sla.infrastructure.database import create_tables
from helpdesk_sla.sla.application import (
    INotifier, ITemplateRenderer, NotificationDispatcher, SLAEvaluationService, SLAService,
)
from helpdesk_sla.sla.domain import NotificationRule
from helpdesk_sla.sla.infrastructure import (
    ConversationModel,
    HelpdeskConfigManager,
    SQLAlchemyTeamStore,
    SQLAlchemyUnitOfWork,
    SQLAlchemyUserStore,
    TeamModel,
    UserModel,
)

# A Monday
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

ALWAYS_OPEN_ID = 1
OFFICE_HOURS_ID = 2

HELPDESK_CONFIG = {
    "app": {"business_hours_id": ALWAYS_OPEN_ID, "timezone": "UTC"},
    "business_hours": [
        {"id": ALWAYS_OPEN_ID, "name": "Always open", "is_always_open": True},
        {
            "id": OFFICE_HOURS_ID,
            "name": "Office hours",
            "hours": {
                day: {"open": "09:00", "close": "18:00"}
                for day in ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday")
            },
            "holidays": ["2026-03-04"],
        },
    ],
}


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(INotifier):
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)


class RecordingRenderer(ITemplateRenderer):
    def __init__(self):
        self.calls = []

    def render(self, name, data):
        self.calls.append((name, data))
        return f"{name} body", f"{name} subject"


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_maker):
    return lambda: SQLAlchemyUnitOfWork(session_maker)


@pytest.fixture
def config_manager():
    manager = HelpdeskConfigManager()
    manager.load_dict(HELPDESK_CONFIG)
    return manager


@pytest.fixture
async def seed(session_maker):
    """Two agents, an office-hours team and two open conversations (one unassigned)."""
    async with session_maker() as session:
        session.add_all([
            UserModel(id=1, first_name="Asha", last_name="Rao", email="asha@example.com"),
            UserModel(id=2, first_name="Ben", last_name="Ode", email="ben@example.com"),
            UserModel(id=3, first_name="Cy", email="cy@example.com", type="contact"),
            TeamModel(id=1, name="Support", business_hours_id=OFFICE_HOURS_ID, timezone="UTC"),
        ])
        await session.flush()
        session.add_all([
            ConversationModel(
                id=1, uuid="c0000000-0000-0000-0000-000000000001",
                reference_number="100", subject="Printer on fire", assigned_user_id=1,
            ),
            ConversationModel(
                id=2, uuid="c0000000-0000-0000-0000-000000000002",
                reference_number="101", subject="Password reset",
            ),
        ])
        await session.commit()


@pytest.fixture
def sla_service(uow_factory, session_maker, config_manager, clock):
    return SLAService(
        uow_factory,
        team_store=SQLAlchemyTeamStore(session_maker),
        settings_store=config_manager,
        business_hours_store=config_manager,
        clock=clock,
    )


@pytest.fixture
def evaluation_service(uow_factory, clock):
    return SLAEvaluationService(uow_factory, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def dispatcher(uow_factory, session_maker, renderer, notifier, clock):
    return NotificationDispatcher(
        uow_factory,
        user_store=SQLAlchemyUserStore(session_maker),
        renderer=renderer,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
async def policy(sla_service):
    """30m first response, 4h resolution, 1h next response; breach alerts to the assignee."""
    return await sla_service.create(
        name="Standard",
        description="Standard support",
        first_response_time="30m",
        resolution_time="4h",
        next_response_time="1h",
        notifications=[
            NotificationRule(type="breach", recipients=["assigned_user"]),
        ],
    )


async def fetch_all(session_maker, model):
    async with session_maker() as session:
        result = await session.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


async def set_conversation(session_maker, conversation_id, **values):
    async with session_maker() as session:
        conversation = await session.get(ConversationModel, conversation_id)
        for key, value in values.items():
            setattr(conversation, key, value)
        await session.commit()
