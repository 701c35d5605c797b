import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from connectors.errors import PersistenceError
from connectors.models import UserRecord
from models.activity_type import ActivityType
from models.jira_user import JiraUser
from services import jira_sync
from services.reconcile import Reconciler


def _users() -> Reconciler:
    return Reconciler(JiraUser, "account_id", jira_sync._merge_user, jira_sync._new_user)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def test_reconcile_inserts_then_merges_same_key(make_store) -> None:
    async def scenario():
        engine, session_factory = await make_store()
        try:
            reconciler = _users()
            async with session_factory() as session:
                first, created_first = await reconciler.reconcile(
                    session, "acc-1", UserRecord(account_id="acc-1", display_name="Ada")
                )
                second, created_second = await reconciler.reconcile(
                    session,
                    "acc-1",
                    UserRecord(account_id="acc-1", display_name="Ada L.", email="ada@example.com"),
                )
            return first, created_first, second, created_second, await _count(session_factory, JiraUser)
        finally:
            await engine.dispose()

    first, created_first, second, created_second, count = asyncio.run(scenario())

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    assert second.display_name == "Ada L."
    assert second.email == "ada@example.com"
    assert count == 1


def test_raw_duplicate_insert_is_rejected_by_store(make_store) -> None:
    async def scenario():
        engine, session_factory = await make_store()
        try:
            async with session_factory() as session:
                session.add(JiraUser(account_id="acc-1", display_name="Ada"))
                await session.commit()
                session.add(JiraUser(account_id="acc-1", display_name="Imposter"))
                with pytest.raises(IntegrityError):
                    await session.commit()
                await session.rollback()
            return await _count(session_factory, JiraUser)
        finally:
            await engine.dispose()

    assert asyncio.run(scenario()) == 1


def test_lost_insert_race_is_retried_as_merge(make_store, monkeypatch) -> None:
    reconciler = _users()
    original_lookup = reconciler.lookup
    lookups: list[str] = []

    async def racing_lookup(session, natural_key):
        lookups.append(natural_key)
        if len(lookups) == 1:
            # Another writer inserted the row after our lookup
            async with session_factory_holder[0]() as other:
                other.add(JiraUser(account_id=natural_key, display_name="Other writer"))
                await other.commit()
            return None
        return await original_lookup(session, natural_key)

    session_factory_holder: list = []
    monkeypatch.setattr(reconciler, "lookup", racing_lookup)

    async def scenario():
        engine, session_factory = await make_store()
        session_factory_holder.append(session_factory)
        try:
            async with session_factory() as session:
                entity, created = await reconciler.reconcile(
                    session, "acc-1", UserRecord(account_id="acc-1", display_name="Ada")
                )
            return entity, created, await _count(session_factory, JiraUser)
        finally:
            await engine.dispose()

    entity, created, count = asyncio.run(scenario())

    assert created is False
    assert entity.display_name == "Ada"
    assert count == 1
    assert len(lookups) == 2


def test_second_conflict_surfaces_as_persistence_error(make_store, monkeypatch) -> None:
    reconciler = Reconciler(
        ActivityType,
        "name",
        lambda entity, incoming: None,
        lambda name, incoming: ActivityType(name=name),
    )

    async def blind_lookup(session, natural_key):
        return None

    monkeypatch.setattr(reconciler, "lookup", blind_lookup)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            async with session_factory() as session:
                session.add(ActivityType(name="Changed Status"))
                await session.commit()
                with pytest.raises(PersistenceError):
                    await reconciler.reconcile(session, "Changed Status", None)
            return await _count(session_factory, ActivityType)
        finally:
            await engine.dispose()

    assert asyncio.run(scenario()) == 1
