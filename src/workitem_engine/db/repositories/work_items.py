"""
workitem_engine.db.repositories.work_items

Repository for `WorkItem` entities; the SQLAlchemy implementation of `RecordStore`.

Responsibilities:
- Point lookup, insert, update and query-by-parent.
- Translate driver/ORM failures into `StoreUnavailable`.
- Expose savepoints so a single cascade step can be undone on its own.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from workitem_engine.db.models import ItemKind, ItemState, WorkItem
from workitem_engine.engine.errors import StoreUnavailable


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        raise StoreUnavailable(f"record store {operation} failed", detail=str(e)) from e


class WorkItemRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        kind: ItemKind,
        name: str,
        state: ItemState,
        parent_id: uuid.UUID | None = None,
        campaign_id: uuid.UUID | None = None,
        segment: str = "default",
        budget_own: Decimal | None = None,
    ) -> WorkItem:
        item = WorkItem(
            kind=kind,
            name=name,
            state=state,
            parent_id=parent_id,
            campaign_id=campaign_id,
            segment=segment,
            budget_own=budget_own,
            budget_total=Decimal("0"),
        )
        self._session.add(item)
        with store_errors("insert"):
            await self._session.flush()
        return item

    async def get(self, item_id: uuid.UUID, *, for_update: bool = False) -> WorkItem | None:
        # Locked reads also bypass the identity map so racing writers are observed.
        with store_errors("get"):
            return await self._session.get(
                WorkItem,
                item_id,
                with_for_update=for_update,
                populate_existing=for_update,
            )

    async def put(self, item: WorkItem) -> WorkItem:
        self._session.add(item)
        with store_errors("put"):
            await self._session.flush()
        return item

    async def query_by_parent(self, parent_id: uuid.UUID) -> list[WorkItem]:
        stmt = (
            select(WorkItem)
            .where(WorkItem.parent_id == parent_id)
            .order_by(WorkItem.created_at, WorkItem.id)
            .execution_options(populate_existing=True)
        )
        with store_errors("query_by_parent"):
            return list((await self._session.execute(stmt)).scalars().all())

    async def reload(self, item: WorkItem) -> None:
        with store_errors("reload"):
            await self._session.refresh(item)

    def savepoint(self) -> AsyncSessionTransaction:
        return self._session.begin_nested()

    async def find_sibling_named(
        self, *, kind: ItemKind, parent_id: uuid.UUID | None, name: str
    ) -> WorkItem | None:
        stmt = select(WorkItem).where(WorkItem.kind == kind, WorkItem.name == name).limit(1)
        if parent_id is None:
            stmt = stmt.where(WorkItem.parent_id.is_(None))
        else:
            stmt = stmt.where(WorkItem.parent_id == parent_id)
        with store_errors("find_sibling_named"):
            return (await self._session.execute(stmt)).scalar_one_or_none()


# --- Module Notes -----------------------------------------------------------
# `query_by_parent` always re-reads rows: cascade decisions must never be made from
# objects cached earlier in the same session.
