"""
Tests for SQLAlchemy repositories with foreign keys enforced
"""
from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import T0, fetch_all
from helpdesk_sla.core import RepositoryException, UnmetSLAEventAlreadyExistsException
from helpdesk_sla.infrastructure.database import create_tables
from helpdesk_sla.sla.infrastructure import AppliedSLAModel, SLAEventModel


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


async def test_open_event_for_unknown_applied_sla_is_a_repository_error(uow_factory, seed, policy, session_maker):
    """Test a foreign key violation is not reported as an existing open event"""
    with pytest.raises(RepositoryException):
        async with uow_factory() as uow:
            await uow.events.create_open_event(999, policy.id, "next_response", T0 + timedelta(hours=1), T0)

    assert await fetch_all(session_maker, SLAEventModel) == []


async def test_second_open_event_is_refused(uow_factory, sla_service, seed, policy, session_maker):
    await sla_service.apply_sla(T0, conversation_id=1, team_id=0, policy_id=policy.id)
    [applied] = await fetch_all(session_maker, AppliedSLAModel)

    async with uow_factory() as uow:
        await uow.events.create_open_event(applied.id, policy.id, "next_response", T0 + timedelta(hours=1), T0)

    with pytest.raises(UnmetSLAEventAlreadyExistsException):
        async with uow_factory() as uow:
            await uow.events.create_open_event(applied.id, policy.id, "next_response", T0 + timedelta(hours=2), T0)

    assert len(await fetch_all(session_maker, SLAEventModel)) == 1
