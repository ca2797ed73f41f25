"""
workitem_engine.engine.errors

Typed errors raised by the engine and its service façade.

Responsibilities:
- Give callers (gateway, scripts) one exception root to catch.
- Carry enough structured context to produce useful error responses and logs.
"""

from __future__ import annotations

import uuid
from typing import Any


class WorkItemEngineError(Exception):
    code = "ENGINE_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            **{k: str(v) if isinstance(v, uuid.UUID) else v for k, v in self.context.items()},
        }


class ItemNotFound(WorkItemEngineError):
    code = "ITEM_NOT_FOUND"


class InvalidTransition(WorkItemEngineError):
    """Target state is not reachable from the current state for this kind."""

    code = "INVALID_TRANSITION"


class OrphanedParent(WorkItemEngineError):
    """A referenced parent does not exist."""

    code = "ORPHANED_PARENT"


class InvalidHierarchy(WorkItemEngineError):
    """A parent of the wrong kind, or a root item given a parent."""

    code = "INVALID_HIERARCHY"


class CycleDetected(WorkItemEngineError):
    """
    The parent chain loops or is deeper than the fixed hierarchy depth.
    Raised before writes on reparent; mid-cascade it aborts the whole operation.
    """

    code = "CYCLE_DETECTED"


class AggregationInconsistency(WorkItemEngineError):
    code = "AGGREGATION_INCONSISTENCY"


class StoreUnavailable(WorkItemEngineError):
    """Transient record store failure (failed read or write)."""

    code = "STORE_UNAVAILABLE"
