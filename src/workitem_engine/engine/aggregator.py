"""
workitem_engine.engine.aggregator

Budget aggregation.

Responsibilities:
- Recompute a parent's `budget_total` from a full scan of its direct children.
- Write only when the value changed; verify the stored value afterwards.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from workitem_engine.db.models import WorkItem
from workitem_engine.engine.errors import AggregationInconsistency, OrphanedParent
from workitem_engine.engine.results import AggregateChange
from workitem_engine.engine.store import AuditSink, RecordStore
from workitem_engine.observability.logging import get_logger

log = get_logger(__name__)

_CENT = Decimal("0.01")


def contribution(child: WorkItem) -> Decimal:
    # Missing contributions count as zero.
    return child.budget_own if child.budget_own is not None else Decimal("0")


class Aggregator:
    def __init__(self, *, store: RecordStore, audit: AuditSink) -> None:
        self._store = store
        self._audit = audit

    async def recompute(
        self, parent_id: uuid.UUID, *, actor: str = "engine"
    ) -> AggregateChange | None:
        parent = await self._store.get(parent_id, for_update=True)
        if parent is None:
            raise OrphanedParent("parent not found", parent_id=parent_id)

        # Always a full rescan; no deltas, so missed or duplicated events cannot drift the total.
        children = await self._store.query_by_parent(parent_id)
        total = sum((contribution(c) for c in children), Decimal("0"))
        if not total.is_finite():
            raise AggregationInconsistency(
                "child contributions do not sum to a finite total", parent_id=parent_id
            )

        old_total = parent.budget_total if parent.budget_total is not None else Decimal("0")
        if old_total == total:
            return None

        parent.budget_total = total
        await self._store.put(parent)
        await self._store.reload(parent)
        stored = parent.budget_total if parent.budget_total is not None else Decimal("0")
        if stored.quantize(_CENT) != total.quantize(_CENT):
            log.error(
                "aggregate.inconsistent",
                parent_id=str(parent_id),
                computed=str(total),
                stored=str(stored),
            )
            raise AggregationInconsistency(
                "stored total does not match recomputed total",
                parent_id=parent_id,
                computed=str(total),
                stored=str(stored),
            )

        await self._audit.add(
            item_id=parent_id,
            actor=actor,
            event_type="BUDGET_RECOMPUTED",
            details={
                "old_total": str(old_total),
                "new_total": str(total),
                "children": len(children),
            },
        )
        log.info(
            "aggregate.recomputed",
            parent_id=str(parent_id),
            old_total=str(old_total),
            new_total=str(total),
        )
        return AggregateChange(parent_id=parent_id, old_total=old_total, new_total=total)
