"""
tests.conftest

Shared fixtures: a file-backed SQLite record store per test, the service façade,
and a small Campaign -> Project -> Task tree.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workitem_engine.db.init_db import init_db
from workitem_engine.db.models import WorkItem
from workitem_engine.db.session import create_engine, create_sessionmaker
from workitem_engine.services.work_item_service import WorkItemService
from workitem_engine.settings import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(env="test", database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")


@pytest_asyncio.fixture
async def sessionmaker(settings: Settings):
    engine = create_engine(settings)
    await init_db(engine)
    try:
        yield create_sessionmaker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]):
    async with sessionmaker() as s:
        yield s


@pytest.fixture
def service(session: AsyncSession, settings: Settings) -> WorkItemService:
    return WorkItemService(session=session, settings=settings)


async def fetch(
    sessionmaker: async_sessionmaker[AsyncSession], item_id: uuid.UUID
) -> WorkItem:
    """Read an item through a separate session, i.e. what other requests observe."""
    async with sessionmaker() as s:
        item = await s.get(WorkItem, item_id)
        assert item is not None
        return item


@dataclass
class Tree:
    campaign: uuid.UUID
    p1: uuid.UUID
    p2: uuid.UUID
    a: uuid.UUID
    b: uuid.UUID
    d: uuid.UUID


@pytest_asyncio.fixture
async def tree(service: WorkItemService) -> Tree:
    """
    Campaign C with Project P1 (Tasks A, B) and Project P2 (Task D).
    """

    c = (await service.create_campaign(name="Spring launch", actor="alice")).item
    p1 = (
        await service.create_project(
            campaign_id=c.id, name="Landing page", actor="alice", budget_own=Decimal("5000")
        )
    ).item
    p2 = (
        await service.create_project(
            campaign_id=c.id, name="Email series", actor="alice", budget_own=Decimal("3000")
        )
    ).item
    a = (await service.create_task(project_id=p1.id, name="Copy", actor="alice")).item
    b = (await service.create_task(project_id=p1.id, name="Design", actor="alice")).item
    d = (await service.create_task(project_id=p2.id, name="Draft emails", actor="alice")).item
    return Tree(campaign=c.id, p1=p1.id, p2=p2.id, a=a.id, b=b.id, d=d.id)
