"""
workitem_engine.engine.history

History Recorder.

Responsibilities:
- Capture the pre-transition state of an item before it enters a suspending state.
- Note whether the parent was itself suspended at that instant, so a later restore
  can tell "held because the parent was held" from "held independently".
- Append every committed state change to the audit trail.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from workitem_engine.db.models import ItemState, WorkItem
from workitem_engine.engine.errors import StoreUnavailable
from workitem_engine.engine.state_machines import is_suspending
from workitem_engine.engine.store import AuditSink, RecordStore
from workitem_engine.observability.logging import get_logger

log = get_logger(__name__)


class HistoryRecorder:
    def __init__(self, *, store: RecordStore, audit: AuditSink) -> None:
        self._store = store
        self._audit = audit

    async def snapshot(self, item: WorkItem, *, reason: str, actor: str) -> str | None:
        """
        Write `previous_state_snapshot` on `item` (in memory; the caller persists it
        together with the state change). Returns a warning when the parent could not
        be read; the snapshot is still written, without flags.
        """

        blob: dict[str, Any] = {
            "state": item.state.value,
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "actor": actor,
            "reason": reason,
        }
        warning: str | None = None

        if item.parent_id is not None:
            parent: WorkItem | None = None
            try:
                parent = await self._store.get(item.parent_id)
            except StoreUnavailable as e:
                log.warning(
                    "history.parent_lookup_failed",
                    item_id=str(item.id),
                    parent_id=str(item.parent_id),
                    error=str(e),
                )
            if parent is None:
                warning = (
                    f"parent {item.parent_id} unreachable while snapshotting {item.id}; "
                    "snapshot written without parent flags"
                )
                log.warning("history.snapshot_without_flags", item_id=str(item.id))
            else:
                blob["flags"] = {
                    "parent_state": parent.state.value,
                    "parent_suspended": is_suspending(parent.state),
                }

        item.previous_state_snapshot = blob
        return warning

    async def record_transition(
        self,
        item: WorkItem,
        *,
        from_state: ItemState,
        to_state: ItemState,
        actor: str,
        cause: str,
    ) -> None:
        await self._audit.add(
            item_id=item.id,
            actor=actor,
            event_type="STATE_CHANGED",
            details={
                "kind": item.kind.value,
                "from": from_state.value,
                "to": to_state.value,
                "cause": cause,
            },
        )


def snapshot_state(item: WorkItem) -> ItemState | None:
    snap = item.previous_state_snapshot or {}
    raw = snap.get("state")
    return ItemState(raw) if raw else None


def suspended_with_parent(item: WorkItem, parent_state: ItemState) -> bool:
    """True when `item` entered its current state because its parent was in `parent_state`."""
    flags = (item.previous_state_snapshot or {}).get("flags") or {}
    return bool(flags.get("parent_suspended")) and flags.get("parent_state") == parent_state.value


# --- Module Notes -----------------------------------------------------------
# Snapshots are never replayed by the engine. Only an explicit restore request reads them.
