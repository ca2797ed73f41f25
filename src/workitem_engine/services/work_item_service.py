"""
workitem_engine.services.work_item_service

Engine façade (transaction owner).

Responsibilities:
- The only entry point for the Request Gateway: create, transition, reparent,
  restore, budget updates and explicit recomputation.
- Validate before writing: unknown items, disallowed transitions, dangling or
  looping parent chains are rejected with nothing written.
- Run history capture, cascades and aggregation, then commit once per operation.
  Any raised error rolls the whole operation back; contained cascade-step failures
  are reported as partial success.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from workitem_engine.db.models import PARENT_KIND, AuditEvent, ItemKind, ItemState, WorkItem
from workitem_engine.db.repositories.audit import AuditRepo
from workitem_engine.db.repositories.work_items import WorkItemRepo
from workitem_engine.engine.aggregator import Aggregator
from workitem_engine.engine.cascade import CascadeEngine
from workitem_engine.engine.errors import (
    CycleDetected,
    InvalidHierarchy,
    InvalidTransition,
    ItemNotFound,
    OrphanedParent,
)
from workitem_engine.engine.history import HistoryRecorder
from workitem_engine.engine.results import CascadeSummary, EngineResult
from workitem_engine.engine.state_machines import machine_for
from workitem_engine.engine.store import RecordStore
from workitem_engine.observability.logging import get_logger
from workitem_engine.settings import Settings

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CreationDefaults:
    """
    Explicit defaults handed to create calls (segment assignment, initial states).
    Built by the caller; the service never reads ambient configuration for these.
    """

    segment: str = "default"
    initial_states: dict[ItemKind, ItemState] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> CreationDefaults:
        return cls(segment=settings.default_segment)

    def initial_state(self, kind: ItemKind) -> ItemState:
        return self.initial_states.get(kind, machine_for(kind).initial_state)


class WorkItemService:
    def __init__(
        self,
        *,
        session: AsyncSession,
        settings: Settings,
        store: RecordStore | None = None,
    ) -> None:
        self._session = session
        self._settings = settings

        self._items = WorkItemRepo(session)
        self._store: RecordStore = store if store is not None else self._items
        self._audit = AuditRepo(session)
        self._history = HistoryRecorder(store=self._store, audit=self._audit)
        self._aggregator = Aggregator(store=self._store, audit=self._audit)
        self._cascade = CascadeEngine(
            store=self._store,
            history=self._history,
            max_depth=settings.max_hierarchy_depth,
            propagating_states=frozenset(settings.propagating_states),
        )

    # -- Reads -------------------------------------------------------------------

    async def get(self, item_id: uuid.UUID) -> WorkItem:
        return await self._require(item_id)

    async def children(self, item_id: uuid.UUID) -> list[WorkItem]:
        await self._require(item_id)
        return await self._store.query_by_parent(item_id)

    async def history(self, item_id: uuid.UUID, *, limit: int = 200) -> list[AuditEvent]:
        await self._require(item_id)
        return await self._audit.list_for_item(item_id, limit=limit)

    # -- Create ------------------------------------------------------------------

    async def create_campaign(
        self,
        *,
        name: str,
        actor: str,
        state: ItemState | None = None,
        defaults: CreationDefaults | None = None,
    ) -> EngineResult:
        return await self._create(
            kind=ItemKind.campaign,
            name=name,
            actor=actor,
            parent_id=None,
            state=state,
            budget_own=None,
            defaults=defaults,
        )

    async def create_project(
        self,
        *,
        campaign_id: uuid.UUID,
        name: str,
        actor: str,
        budget_own: Decimal | None = None,
        state: ItemState | None = None,
        defaults: CreationDefaults | None = None,
    ) -> EngineResult:
        return await self._create(
            kind=ItemKind.project,
            name=name,
            actor=actor,
            parent_id=campaign_id,
            state=state,
            budget_own=budget_own,
            defaults=defaults,
        )

    async def create_task(
        self,
        *,
        project_id: uuid.UUID,
        name: str,
        actor: str,
        budget_own: Decimal | None = None,
        state: ItemState | None = None,
        defaults: CreationDefaults | None = None,
    ) -> EngineResult:
        return await self._create(
            kind=ItemKind.task,
            name=name,
            actor=actor,
            parent_id=project_id,
            state=state,
            budget_own=budget_own,
            defaults=defaults,
        )

    async def _create(
        self,
        *,
        kind: ItemKind,
        name: str,
        actor: str,
        parent_id: uuid.UUID | None,
        state: ItemState | None,
        budget_own: Decimal | None,
        defaults: CreationDefaults | None,
    ) -> EngineResult:
        defaults = defaults or CreationDefaults.from_settings(self._settings)
        initial = state or defaults.initial_state(kind)
        if initial not in machine_for(kind).states:
            raise InvalidTransition(
                f"{initial.value} is not a {kind.value} state", kind=kind.value
            )

        summary = CascadeSummary()
        try:
            campaign_id: uuid.UUID | None = None
            if parent_id is not None:
                parent = await self._store.get(parent_id)
                if parent is None:
                    raise OrphanedParent("parent not found", parent_id=parent_id)
                if PARENT_KIND[kind] != parent.kind:
                    raise InvalidHierarchy(
                        f"a {kind.value} cannot be placed under a {parent.kind.value}",
                        parent_id=parent_id,
                    )
                chain = [parent, *await self._cascade.ancestors(parent)]
                if kind == ItemKind.task:
                    campaign_id = chain[-1].id

            duplicate = await self._items.find_sibling_named(
                kind=kind, parent_id=parent_id, name=name
            )
            if duplicate is not None:
                # Same name under the same parent is allowed, but worth flagging.
                summary.warnings.append(f"another {kind.value} named {name!r} already exists")
                log.warning("item.duplicate_name", kind=kind.value, name=name)

            item = await self._items.create(
                kind=kind,
                name=name,
                state=initial,
                parent_id=parent_id,
                campaign_id=campaign_id,
                segment=defaults.segment,
                budget_own=budget_own,
            )
            await self._audit.add(
                item_id=item.id,
                actor=actor,
                event_type="CREATED",
                details={"kind": kind.value, "state": initial.value, "parent_id": _s(parent_id)},
            )
            if parent_id is not None and budget_own is not None:
                await self._recompute_into(parent_id, actor=actor, summary=summary)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        log.info("item.created", item_id=str(item.id), kind=kind.value, state=initial.value)
        return EngineResult(item=item, summary=summary)

    # -- Transition --------------------------------------------------------------

    async def transition(
        self, item_id: uuid.UUID, target: ItemState, *, actor: str
    ) -> EngineResult:
        summary = CascadeSummary()
        try:
            item = await self._require(item_id, for_update=True)
            machine = machine_for(item.kind)
            if target not in machine.states:
                raise InvalidTransition(
                    f"{target.value} is not a {item.kind.value} state",
                    item_id=item_id,
                    to_state=target.value,
                )
            # Dangling or looping parent chains are rejected before anything is written.
            await self._cascade.ancestors(item)

            changed = item.state != target
            if changed:
                if not machine.is_allowed(item.state, target):
                    raise InvalidTransition(
                        f"{item.kind.value} cannot move from {item.state.value} to {target.value}",
                        item_id=item_id,
                        from_state=item.state.value,
                        to_state=target.value,
                    )
                await self._cascade.apply(
                    item, target, actor=actor, cause="client", summary=summary
                )

            # Both triggers are idempotent; on a retried call they only finish what a
            # previous partial run left undone.
            await self._cascade.after_transition(item, actor=actor, summary=summary)
            if item.parent_id is not None:
                await self._recompute_into(item.parent_id, actor=actor, summary=summary)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        self._log_outcome("item.transitioned", item, summary, changed=changed)
        return EngineResult(item=item, summary=summary, changed=changed)

    async def restore(
        self, item_id: uuid.UUID, *, actor: str, include_descendants: bool = True
    ) -> EngineResult:
        summary = CascadeSummary()
        try:
            item = await self._require(item_id, for_update=True)
            await self._cascade.ancestors(item)
            await self._cascade.restore(
                item, actor=actor, summary=summary, include_descendants=include_descendants
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        self._log_outcome("item.restored", item, summary, changed=True)
        return EngineResult(item=item, summary=summary)

    # -- Reparent ----------------------------------------------------------------

    async def reparent(
        self, item_id: uuid.UUID, new_parent_id: uuid.UUID, *, actor: str
    ) -> EngineResult:
        summary = CascadeSummary()
        try:
            item = await self._require(item_id, for_update=True)
            if PARENT_KIND[item.kind] is None:
                raise InvalidHierarchy(
                    f"a {item.kind.value} has no parent", item_id=item_id
                )
            if new_parent_id == item.id:
                raise CycleDetected("an item cannot be its own parent", item_id=item_id)

            new_parent = await self._store.get(new_parent_id)
            if new_parent is None:
                raise OrphanedParent("parent not found", parent_id=new_parent_id)
            chain = [new_parent, *await self._cascade.ancestors(new_parent)]
            if any(a.id == item.id for a in chain):
                raise CycleDetected(
                    "new parent is a descendant of the item",
                    item_id=item_id,
                    parent_id=new_parent_id,
                )
            if PARENT_KIND[item.kind] != new_parent.kind:
                raise InvalidHierarchy(
                    f"a {item.kind.value} cannot be placed under a {new_parent.kind.value}",
                    item_id=item_id,
                    parent_id=new_parent_id,
                )

            old_parent_id = item.parent_id
            if old_parent_id == new_parent_id:
                await self._session.commit()
                return EngineResult(item=item, summary=summary, changed=False)

            root_id = chain[-1].id
            item.parent_id = new_parent_id
            if item.kind == ItemKind.task:
                item.campaign_id = root_id
            await self._store.put(item)
            if item.kind == ItemKind.project:
                # Tasks keep a denormalized campaign reference; follow the move.
                for task in await self._store.query_by_parent(item.id):
                    if task.campaign_id != root_id:
                        task.campaign_id = root_id
                        await self._store.put(task)

            await self._audit.add(
                item_id=item.id,
                actor=actor,
                event_type="REPARENTED",
                details={"from": _s(old_parent_id), "to": str(new_parent_id)},
            )
            if old_parent_id is not None:
                await self._recompute_into(old_parent_id, actor=actor, summary=summary)
            await self._recompute_into(new_parent_id, actor=actor, summary=summary)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        log.info(
            "item.reparented",
            item_id=str(item_id),
            old_parent_id=_s(old_parent_id),
            new_parent_id=str(new_parent_id),
        )
        return EngineResult(item=item, summary=summary)

    # -- Budget ------------------------------------------------------------------

    async def set_budget(
        self, item_id: uuid.UUID, budget_own: Decimal | None, *, actor: str
    ) -> EngineResult:
        summary = CascadeSummary()
        try:
            item = await self._require(item_id, for_update=True)
            if item.kind == ItemKind.campaign:
                raise InvalidHierarchy(
                    "campaign budgets are derived from their projects", item_id=item_id
                )
            old = item.budget_own
            item.budget_own = budget_own
            await self._store.put(item)
            await self._audit.add(
                item_id=item.id,
                actor=actor,
                event_type="BUDGET_CHANGED",
                details={"old": _s(old), "new": _s(budget_own)},
            )
            if item.parent_id is not None:
                await self._recompute_into(item.parent_id, actor=actor, summary=summary)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise
        return EngineResult(item=item, summary=summary)

    async def recompute(self, item_id: uuid.UUID, *, actor: str) -> EngineResult:
        summary = CascadeSummary()
        try:
            item = await self._require(item_id)
            await self._recompute_into(item_id, actor=actor, summary=summary)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise
        return EngineResult(item=item, summary=summary, changed=bool(summary.aggregates))

    # -- Internals ---------------------------------------------------------------

    async def _require(self, item_id: uuid.UUID, *, for_update: bool = False) -> WorkItem:
        item = await self._store.get(item_id, for_update=for_update)
        if item is None:
            raise ItemNotFound("work item not found", item_id=item_id)
        return item

    async def _recompute_into(
        self, parent_id: uuid.UUID, *, actor: str, summary: CascadeSummary
    ) -> None:
        change = await self._aggregator.recompute(parent_id, actor=actor)
        if change is not None:
            summary.aggregates.append(change)

    def _log_outcome(
        self, event: str, item: WorkItem, summary: CascadeSummary, *, changed: bool
    ) -> None:
        fields = {
            "item_id": str(item.id),
            "kind": item.kind.value,
            "state": item.state.value,
            "changed": changed,
            "parents_closed": len(summary.parents_closed),
            "descendants_updated": summary.descendants_updated,
        }
        if summary.partial:
            log.warning(event, partial=True, failures=len(summary.failures), **fields)
        else:
            log.info(event, **fields)


def _s(value: object | None) -> str | None:
    return None if value is None else str(value)


# --- Module Notes -----------------------------------------------------------
# One service instance per request/session. Nothing here holds state across calls,
# so concurrent requests only meet in the database.
