"""
workitem_engine.engine.cascade

Cascade Engine: automatic state changes across the Campaign -> Project -> Task tree.

Responsibilities:
- Trigger A (bottom-up): when an item becomes terminal and all of its siblings are
  terminal too, close the parent and repeat one level up.
- Trigger B (top-down): when an item enters a propagating state (cancel, archive,
  hold), move every child to the same state and repeat one level down.
- Restore: explicit, snapshot-driven return from a suspending state, optionally
  following children that were suspended together with their parent.
- Bounded ancestor walk used to reject broken parent chains before any write.

Every cascade step runs inside its own store savepoint. A failed step is recorded in
the summary and halts the remaining fan-out; steps already taken are kept.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from workitem_engine.db.models import PARENT_KIND, ItemState, WorkItem
from workitem_engine.engine.errors import (
    CycleDetected,
    InvalidTransition,
    OrphanedParent,
    StoreUnavailable,
)
from workitem_engine.engine.history import HistoryRecorder, snapshot_state, suspended_with_parent
from workitem_engine.engine.results import CascadeFailure, CascadeSummary
from workitem_engine.engine.state_machines import is_suspending, machine_for
from workitem_engine.engine.store import RecordStore
from workitem_engine.observability.logging import get_logger

log = get_logger(__name__)

ENGINE_ACTOR = "engine"


class CascadeEngine:
    def __init__(
        self,
        *,
        store: RecordStore,
        history: HistoryRecorder,
        max_depth: int,
        propagating_states: frozenset[ItemState],
    ) -> None:
        self._store = store
        self._history = history
        self._max_depth = max_depth
        self._propagating = propagating_states

    async def apply(
        self,
        item: WorkItem,
        target: ItemState,
        *,
        actor: str,
        cause: str,
        summary: CascadeSummary,
    ) -> None:
        """
        The single write path for a state change: snapshot (suspending targets only),
        state write, audit entry.
        """

        from_state = item.state
        if is_suspending(target):
            warning = await self._history.snapshot(item, reason=cause, actor=actor)
            if warning:
                summary.warnings.append(warning)

        item.state = target
        await self._store.put(item)
        await self._history.record_transition(
            item, from_state=from_state, to_state=target, actor=actor, cause=cause
        )

    async def after_transition(
        self,
        item: WorkItem,
        *,
        actor: str,
        summary: CascadeSummary,
        up_depth: int = 1,
        down_depth: int = 1,
    ) -> None:
        """Evaluate both triggers for an item whose new state has been written."""

        if machine_for(item.kind).is_terminal(item.state):
            await self.close_upward(item, summary=summary, depth=up_depth)
        if item.state in self._propagating:
            await self.propagate_downward(
                item, item.state, actor=actor, summary=summary, depth=down_depth
            )

    # -- Trigger A ---------------------------------------------------------------

    async def close_upward(
        self, item: WorkItem, *, summary: CascadeSummary, depth: int = 1
    ) -> None:
        if summary.partial or item.parent_id is None:
            return
        if depth >= self._max_depth:
            raise _depth_violation(
                "closure climbed past the hierarchy depth", item_id=item.id, depth=depth
            )

        # Fresh, locked read: a racing request may already have closed the parent.
        parent = await self._store.get(item.parent_id, for_update=True)
        if parent is None:
            raise OrphanedParent("parent not found", item_id=item.id, parent_id=item.parent_id)
        machine = machine_for(parent.kind)
        if machine.is_terminal(parent.state):
            return

        siblings = await self._store.query_by_parent(parent.id)
        # An empty parent is never closed; "all of nothing" does not count.
        if not siblings:
            return
        if not all(machine_for(s.kind).is_terminal(s.state) for s in siblings):
            return

        parent_id = parent.id
        try:
            async with self._store.savepoint():
                if parent.actual_end_date is None:
                    parent.actual_end_date = datetime.utcnow()
                await self.apply(
                    parent,
                    machine.completed_state,
                    actor=ENGINE_ACTOR,
                    cause="cascade_close",
                    summary=summary,
                )
        except StoreUnavailable as e:
            self._record_failure(summary, parent_id, e, trigger="close")
            return

        summary.parents_closed.append(parent_id)
        summary.upward_levels = max(summary.upward_levels, depth)
        log.info(
            "cascade.parent_closed",
            parent_id=str(parent_id),
            kind=parent.kind.value,
            state=parent.state.value,
            children=len(siblings),
        )
        await self.after_transition(
            parent, actor=ENGINE_ACTOR, summary=summary, up_depth=depth + 1
        )

    # -- Trigger B ---------------------------------------------------------------

    async def propagate_downward(
        self,
        item: WorkItem,
        target: ItemState,
        *,
        actor: str,
        summary: CascadeSummary,
        depth: int = 1,
    ) -> None:
        if summary.partial:
            return
        children = await self._store.query_by_parent(item.id)
        if not children:
            return
        if depth >= self._max_depth:
            raise _depth_violation(
                "propagation descended past the hierarchy depth", item_id=item.id, depth=depth
            )
        summary.downward_levels = max(summary.downward_levels, depth)

        for child in children:
            if summary.partial:
                return
            self._check_child_kind(item, child)
            child_id = child.id

            if child.state == target:
                # Already there (e.g. a retried propagation); still walk its subtree.
                await self.propagate_downward(
                    child, target, actor=actor, summary=summary, depth=depth + 1
                )
                continue
            child_machine = machine_for(child.kind)
            # Terminal children are final for cascades; only archiving may still reach them.
            # Leaving a terminal state is reserved for an explicit restore.
            final = child_machine.is_terminal(child.state) and target != ItemState.archived
            if final or not child_machine.is_allowed(child.state, target):
                summary.children_skipped.append(child_id)
                continue

            try:
                async with self._store.savepoint():
                    await self.apply(
                        child, target, actor=actor, cause="cascade_propagate", summary=summary
                    )
            except StoreUnavailable as e:
                self._record_failure(summary, child_id, e, trigger="propagate")
                return

            summary.children_propagated.append(child_id)
            await self.after_transition(
                child, actor=actor, summary=summary, down_depth=depth + 1
            )

        log.info(
            "cascade.propagated",
            item_id=str(item.id),
            state=target.value,
            children=len(children),
            depth=depth,
        )

    # -- Restore -----------------------------------------------------------------

    async def restore(
        self,
        item: WorkItem,
        *,
        actor: str,
        summary: CascadeSummary,
        include_descendants: bool,
        depth: int = 0,
    ) -> None:
        """
        Move `item` back to the state recorded in its snapshot. Children that were
        suspended because `item` was suspended follow when `include_descendants` is set.
        """

        target = snapshot_state(item)
        if target is None:
            raise InvalidTransition("no snapshot to restore from", item_id=item.id)
        suspended_state = item.state
        if not is_suspending(suspended_state):
            raise InvalidTransition(
                "only suspended items can be restored",
                item_id=item.id,
                state=suspended_state.value,
            )
        if not machine_for(item.kind).is_allowed(suspended_state, target):
            raise InvalidTransition(
                "snapshot state is not reachable",
                item_id=item.id,
                from_state=suspended_state.value,
                to_state=target.value,
            )

        await self.apply(item, target, actor=actor, cause="restore", summary=summary)
        if machine_for(item.kind).is_terminal(target):
            await self.close_upward(item, summary=summary)
        if not include_descendants:
            return

        children = await self._store.query_by_parent(item.id)
        if children and depth + 1 >= self._max_depth:
            raise _depth_violation(
                "restore descended past the hierarchy depth", item_id=item.id, depth=depth + 1
            )
        for child in children:
            if summary.partial:
                return
            if child.state != suspended_state or not suspended_with_parent(child, suspended_state):
                continue
            child_id = child.id
            try:
                async with self._store.savepoint():
                    await self.restore(
                        child,
                        actor=actor,
                        summary=summary,
                        include_descendants=True,
                        depth=depth + 1,
                    )
            except StoreUnavailable as e:
                self._record_failure(summary, child_id, e, trigger="restore")
                return
            except InvalidTransition as e:
                # The child's own snapshot no longer leads anywhere valid; leave it suspended.
                summary.children_skipped.append(child_id)
                summary.warnings.append(f"{child_id} not restored: {e.message}")
                continue
            summary.children_restored.append(child_id)

    # -- Hierarchy checks --------------------------------------------------------

    async def ancestors(self, item: WorkItem) -> list[WorkItem]:
        """
        Parent chain of `item`, nearest first. Bounded by the hierarchy depth;
        a loop or an over-deep chain raises CycleDetected, a dangling link OrphanedParent.
        """

        chain: list[WorkItem] = []
        seen = {item.id}
        parent_id = item.parent_id
        while parent_id is not None:
            if parent_id in seen or len(chain) + 1 >= self._max_depth:
                raise _depth_violation("parent chain loops or is too deep", item_id=item.id)
            parent = await self._store.get(parent_id)
            if parent is None:
                raise OrphanedParent("parent not found", item_id=item.id, parent_id=parent_id)
            seen.add(parent_id)
            chain.append(parent)
            parent_id = parent.parent_id
        return chain

    def _check_child_kind(self, parent: WorkItem, child: WorkItem) -> None:
        if PARENT_KIND[child.kind] != parent.kind:
            raise _depth_violation(
                "child kind does not belong under parent kind",
                parent_id=parent.id,
                child_id=child.id,
            )

    def _record_failure(
        self,
        summary: CascadeSummary,
        item_id: uuid.UUID,
        error: StoreUnavailable,
        *,
        trigger: str,
    ) -> None:
        summary.failures.append(CascadeFailure(item_id=item_id, error=error.message))
        log.warning(
            "cascade.step_failed",
            item_id=str(item_id),
            trigger=trigger,
            error=error.message,
        )


def _depth_violation(message: str, **context: object) -> CycleDetected:
    log.error(
        "cascade.depth_violation",
        message=message,
        **{k: str(v) for k, v in context.items()},
    )
    return CycleDetected(message, **context)


# --- Module Notes -----------------------------------------------------------
# Trigger A only ascends and Trigger B only descends, so recursion is bounded by the
# hierarchy depth; the depth checks above are internal-consistency guards, not flow control.
