"""
workitem_engine.engine.results

Result types returned by the service façade.

Responsibilities:
- Accumulate the side effects of one logical operation (closures, propagation,
  aggregate changes, failures) so callers can observe what cascaded.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from workitem_engine.db.models import WorkItem


@dataclass(frozen=True, slots=True)
class CascadeFailure:
    item_id: uuid.UUID
    error: str


@dataclass(frozen=True, slots=True)
class AggregateChange:
    parent_id: uuid.UUID
    old_total: Decimal
    new_total: Decimal


@dataclass(slots=True)
class CascadeSummary:
    parents_closed: list[uuid.UUID] = field(default_factory=list)
    children_propagated: list[uuid.UUID] = field(default_factory=list)
    children_skipped: list[uuid.UUID] = field(default_factory=list)
    children_restored: list[uuid.UUID] = field(default_factory=list)
    failures: list[CascadeFailure] = field(default_factory=list)
    aggregates: list[AggregateChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    upward_levels: int = 0
    downward_levels: int = 0

    @property
    def descendants_updated(self) -> int:
        return len(self.children_propagated)

    @property
    def partial(self) -> bool:
        # A cascade step failed; earlier steps were kept, later ones never ran.
        return bool(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parents_closed": [str(i) for i in self.parents_closed],
            "children_propagated": [str(i) for i in self.children_propagated],
            "children_skipped": [str(i) for i in self.children_skipped],
            "children_restored": [str(i) for i in self.children_restored],
            "descendants_updated": self.descendants_updated,
            "failures": [{"item_id": str(f.item_id), "error": f.error} for f in self.failures],
            "aggregates": [
                {
                    "parent_id": str(a.parent_id),
                    "old_total": str(a.old_total),
                    "new_total": str(a.new_total),
                }
                for a in self.aggregates
            ],
            "warnings": list(self.warnings),
            "upward_levels": self.upward_levels,
            "downward_levels": self.downward_levels,
            "partial": self.partial,
        }


@dataclass(slots=True)
class EngineResult:
    item: WorkItem
    summary: CascadeSummary
    changed: bool = True
