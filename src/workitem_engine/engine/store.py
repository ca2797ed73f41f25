"""
workitem_engine.engine.store

Record Store contract consumed by the engine.

Responsibilities:
- Declare the minimal CRUD + query-by-parent surface the engine needs.
- Declare the audit sink the History Recorder writes to.
"""

from __future__ import annotations

import uuid
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from workitem_engine.db.models import WorkItem


class RecordStore(Protocol):
    async def get(self, item_id: uuid.UUID, *, for_update: bool = False) -> WorkItem | None: ...

    async def put(self, item: WorkItem) -> WorkItem: ...

    async def query_by_parent(self, parent_id: uuid.UUID) -> list[WorkItem]: ...

    async def reload(self, item: WorkItem) -> None:
        """Re-read `item` from storage, discarding in-memory values."""
        ...

    def savepoint(self) -> AbstractAsyncContextManager[Any]:
        """Scope a single cascade step so a failed write leaves earlier steps intact."""
        ...


class AuditSink(Protocol):
    async def add(
        self,
        *,
        item_id: uuid.UUID,
        actor: str,
        event_type: str,
        details: dict[str, Any],
    ) -> Any: ...
