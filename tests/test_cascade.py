"""
tests.test_cascade

Cascade behaviour end to end through the service façade: bottom-up closure,
top-down propagation, restore, partial failure and the depth guards.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tests.conftest import Tree, fetch
from workitem_engine.db.models import ItemKind, ItemState, WorkItem
from workitem_engine.db.repositories.audit import AuditRepo
from workitem_engine.db.repositories.work_items import WorkItemRepo
from workitem_engine.engine import cascade as cascade_module
from workitem_engine.engine.cascade import CascadeEngine
from workitem_engine.engine.errors import (
    CycleDetected,
    InvalidTransition,
    OrphanedParent,
    StoreUnavailable,
)
from workitem_engine.engine.history import HistoryRecorder
from workitem_engine.engine.results import CascadeSummary
from workitem_engine.services.work_item_service import WorkItemService
from workitem_engine.settings import Settings

S = ItemState


class FailingRepo(WorkItemRepo):
    """Record store whose writes fail for selected items."""

    def __init__(self, session: AsyncSession, fail_on: set[uuid.UUID]) -> None:
        super().__init__(session)
        self._fail_on = fail_on

    async def put(self, item: WorkItem) -> WorkItem:
        if item.id in self._fail_on:
            raise StoreUnavailable("simulated write failure", item_id=item.id)
        return await super().put(item)


class RecordingLog:
    """Stands in for the module logger and keeps every call."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def info(self, event: str, **kw) -> None:
        self.events.append(("info", event, kw))

    def warning(self, event: str, **kw) -> None:
        self.events.append(("warning", event, kw))

    def error(self, event: str, **kw) -> None:
        self.events.append(("error", event, kw))


async def _states(sessionmaker: async_sessionmaker[AsyncSession]) -> dict[uuid.UUID, ItemState]:
    async with sessionmaker() as s:
        rows = (await s.execute(select(WorkItem))).scalars().all()
        return {r.id: r.state for r in rows}


# -- Trigger A -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_completing_tasks_closes_project_then_campaign(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    r = await service.transition(tree.a, S.closed_complete, actor="alice")
    assert r.summary.parents_closed == []
    assert (await fetch(sessionmaker, tree.p1)).state == S.pending

    r = await service.transition(tree.b, S.closed_complete, actor="alice")
    assert r.summary.parents_closed == [tree.p1]
    p1 = await fetch(sessionmaker, tree.p1)
    assert p1.state == S.completed
    assert p1.actual_end_date is not None
    # P2 is still open, so the campaign check finds nothing to do.
    campaign = await fetch(sessionmaker, tree.campaign)
    assert campaign.state == S.planning
    assert campaign.actual_end_date is None

    r = await service.transition(tree.d, S.closed_complete, actor="alice")
    assert r.summary.parents_closed == [tree.p2, tree.campaign]
    assert r.summary.upward_levels == 2
    assert r.summary.downward_levels == 0
    campaign = await fetch(sessionmaker, tree.campaign)
    assert campaign.state == S.completed
    assert campaign.actual_end_date is not None


@pytest.mark.asyncio
async def test_retrying_the_last_completion_does_not_close_twice(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.closed_complete, actor="alice")
    await service.transition(tree.b, S.closed_complete, actor="alice")
    closed_at = (await fetch(sessionmaker, tree.p1)).actual_end_date

    retry = await service.transition(tree.b, S.closed_complete, actor="alice")

    assert retry.changed is False
    assert retry.summary.parents_closed == []
    assert (await fetch(sessionmaker, tree.p1)).actual_end_date == closed_at
    closures = [e for e in await service.history(tree.p1) if e.event_type == "STATE_CHANGED"]
    assert len(closures) == 1
    assert closures[0].details["cause"] == "cascade_close"


@pytest.mark.asyncio
async def test_racing_completions_close_the_parent_once(
    sessionmaker, settings: Settings, tree: Tree
) -> None:
    async with sessionmaker() as s1, sessionmaker() as s2:
        first = WorkItemService(session=s1, settings=settings)
        second = WorkItemService(session=s2, settings=settings)

        # Load P1 into the first session's identity map while it is still open.
        assert (await first.get(tree.p1)).state == S.pending
        await s1.commit()

        await first.transition(tree.a, S.closed_complete, actor="alice")
        r = await second.transition(tree.b, S.closed_complete, actor="bob")
        assert r.summary.parents_closed == [tree.p1]

        # The first session re-reads P1 rather than trusting its cached copy.
        again = await first.transition(tree.a, S.closed_complete, actor="alice")
        assert again.summary.parents_closed == []

    closures = [
        e
        for e in await _audit_of(sessionmaker, tree.p1)
        if e.details.get("cause") == "cascade_close"
    ]
    assert len(closures) == 1


async def _audit_of(sessionmaker, item_id: uuid.UUID):
    async with sessionmaker() as s:
        return await AuditRepo(s).list_for_item(item_id)


@pytest.mark.asyncio
async def test_parent_without_children_is_never_closed(
    service: WorkItemService, session: AsyncSession, settings: Settings, tree: Tree
) -> None:
    empty = (
        await service.create_project(campaign_id=tree.campaign, name="Empty", actor="alice")
    ).item
    repo = WorkItemRepo(session)
    engine = CascadeEngine(
        store=repo,
        history=HistoryRecorder(store=repo, audit=AuditRepo(session)),
        max_depth=settings.max_hierarchy_depth,
        propagating_states=settings.propagating_states,
    )
    # A terminal item pointing at the empty project, but not stored under it.
    ghost = WorkItem(
        id=uuid.uuid4(),
        kind=ItemKind.task,
        name="ghost",
        state=S.closed_complete,
        parent_id=empty.id,
    )

    for _ in range(3):
        summary = CascadeSummary()
        await engine.close_upward(ghost, summary=summary)
        assert summary.parents_closed == []

    assert (await service.get(empty.id)).state == S.pending


@pytest.mark.asyncio
async def test_canceling_the_last_open_project_closes_the_campaign(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.closed_complete, actor="alice")
    await service.transition(tree.b, S.closed_complete, actor="alice")

    r = await service.transition(tree.p2, S.canceled, actor="alice")

    assert r.summary.children_propagated == [tree.d]
    assert r.summary.parents_closed == [tree.campaign]
    assert (await fetch(sessionmaker, tree.campaign)).state == S.completed
    assert (await fetch(sessionmaker, tree.d)).state == S.canceled


# -- Trigger B -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_canceling_a_campaign_reaches_every_descendant(
    service: WorkItemService, sessionmaker
) -> None:
    campaign = (await service.create_campaign(name="Big", actor="alice")).item
    for p in range(3):
        project = (
            await service.create_project(campaign_id=campaign.id, name=f"P{p}", actor="alice")
        ).item
        for t in range(4):
            await service.create_task(project_id=project.id, name=f"T{p}.{t}", actor="alice")

    r = await service.transition(campaign.id, S.canceled, actor="alice")

    assert r.summary.descendants_updated == 3 + 12
    assert r.summary.children_skipped == []
    assert r.summary.downward_levels == 2
    assert r.summary.upward_levels == 0
    assert set((await _states(sessionmaker)).values()) == {S.canceled}


@pytest.mark.asyncio
async def test_propagation_leaves_finished_children_alone(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.closed_complete, actor="alice")

    r = await service.transition(tree.p1, S.canceled, actor="alice")

    assert r.summary.children_propagated == [tree.b]
    assert r.summary.children_skipped == [tree.a]
    assert r.summary.downward_levels == 1
    states = await _states(sessionmaker)
    assert states[tree.a] == S.closed_complete
    assert states[tree.b] == S.canceled
    assert states[tree.campaign] == S.planning


@pytest.mark.asyncio
async def test_archiving_snapshots_every_descendant(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.closed_complete, actor="alice")

    r = await service.transition(tree.campaign, S.archived, actor="alice")

    assert r.summary.descendants_updated == 5
    for item_id in (tree.p1, tree.p2, tree.a, tree.b, tree.d):
        item = await fetch(sessionmaker, item_id)
        assert item.state == S.archived
        assert item.previous_state_snapshot["flags"] == {
            "parent_state": "ARCHIVED",
            "parent_suspended": True,
        }
    assert (await fetch(sessionmaker, tree.a)).previous_state_snapshot["state"] == "CLOSED_COMPLETE"
    assert (await fetch(sessionmaker, tree.campaign)).previous_state_snapshot["state"] == "PLANNING"


@pytest.mark.asyncio
async def test_archived_child_stays_archived_when_parent_is_held_or_canceled(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.archived, actor="alice")
    archived_snapshot = (await fetch(sessionmaker, tree.a)).previous_state_snapshot

    held = await service.transition(tree.p1, S.on_hold, actor="alice")

    assert held.summary.children_propagated == [tree.b]
    assert held.summary.children_skipped == [tree.a]
    a = await fetch(sessionmaker, tree.a)
    assert a.state == S.archived
    assert a.previous_state_snapshot == archived_snapshot

    await service.restore(tree.p1, actor="alice")
    canceled = await service.transition(tree.p1, S.canceled, actor="alice")

    assert canceled.summary.children_skipped == [tree.a]
    assert (await fetch(sessionmaker, tree.a)).state == S.archived
    assert (await fetch(sessionmaker, tree.b)).state == S.canceled


@pytest.mark.asyncio
async def test_archiving_still_reaches_finished_children(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.a, S.closed_skipped, actor="alice")
    await service.transition(tree.b, S.canceled, actor="alice")

    r = await service.transition(tree.p1, S.archived, actor="alice")

    assert r.summary.children_propagated == [tree.a, tree.b]
    assert r.summary.children_skipped == []
    a = await fetch(sessionmaker, tree.a)
    assert a.state == S.archived
    assert a.previous_state_snapshot["state"] == "CLOSED_SKIPPED"
    assert (await fetch(sessionmaker, tree.b)).state == S.archived


@pytest.mark.asyncio
async def test_hold_and_restore_follow_the_parent_only(
    service: WorkItemService, tree: Tree, sessionmaker
) -> None:
    await service.transition(tree.b, S.work_in_progress, actor="alice")
    # A is put on hold on its own, before the project is.
    await service.transition(tree.a, S.on_hold, actor="alice")

    held = await service.transition(tree.p1, S.on_hold, actor="alice")
    assert held.summary.children_propagated == [tree.b]
    b = await fetch(sessionmaker, tree.b)
    assert b.state == S.on_hold
    assert b.previous_state_snapshot["state"] == "WORK_IN_PROGRESS"
    assert b.previous_state_snapshot["flags"]["parent_suspended"] is True
    a = await fetch(sessionmaker, tree.a)
    assert a.previous_state_snapshot["flags"]["parent_suspended"] is False

    restored = await service.restore(tree.p1, actor="alice")

    assert restored.item.state == S.pending
    assert restored.summary.children_restored == [tree.b]
    states = await _states(sessionmaker)
    assert states[tree.p1] == S.pending
    assert states[tree.b] == S.work_in_progress
    assert states[tree.a] == S.on_hold


@pytest.mark.asyncio
async def test_restore_requires_a_suspended_item_with_a_snapshot(
    service: WorkItemService, tree: Tree
) -> None:
    with pytest.raises(InvalidTransition):
        await service.restore(tree.a, actor="alice")

    held = (
        await service.create_task(
            project_id=tree.p1, name="Born held", actor="alice", state=S.on_hold
        )
    ).item
    with pytest.raises(InvalidTransition):
        await service.restore(held.id, actor="alice")


@pytest.mark.asyncio
async def test_failed_child_write_halts_fan_out_and_keeps_earlier_steps(
    service: WorkItemService, session: AsyncSession, settings: Settings, sessionmaker
) -> None:
    campaign = (await service.create_campaign(name="C", actor="alice")).item
    project = (
        await service.create_project(campaign_id=campaign.id, name="P", actor="alice")
    ).item
    for i in range(3):
        await service.create_task(project_id=project.id, name=f"T{i}", actor="alice")
    order = [t.id for t in await WorkItemRepo(session).query_by_parent(project.id)]
    await session.commit()

    failing = WorkItemService(
        session=session, settings=settings, store=FailingRepo(session, {order[1]})
    )
    r = await failing.transition(project.id, S.canceled, actor="alice")

    assert r.summary.partial
    assert r.summary.children_propagated == [order[0]]
    assert [f.item_id for f in r.summary.failures] == [order[1]]
    states = await _states(sessionmaker)
    assert states[project.id] == S.canceled
    assert [states[i] for i in order] == [S.canceled, S.open, S.open]

    # Retrying the same transition finishes the remaining fan-out.
    retry = await service.transition(project.id, S.canceled, actor="alice")
    assert retry.changed is False
    assert retry.summary.children_propagated == order[1:]
    states = await _states(sessionmaker)
    assert [states[i] for i in order] == [S.canceled] * 3


@pytest.mark.asyncio
async def test_failed_initiating_write_commits_nothing(
    session: AsyncSession, settings: Settings, tree: Tree, sessionmaker
) -> None:
    failing = WorkItemService(
        session=session, settings=settings, store=FailingRepo(session, {tree.p1})
    )

    with pytest.raises(StoreUnavailable):
        await failing.transition(tree.p1, S.canceled, actor="alice")

    states = await _states(sessionmaker)
    assert states[tree.p1] == S.pending
    assert states[tree.a] == S.open


@pytest.mark.asyncio
async def test_failed_parent_closure_is_reported_as_partial(
    service: WorkItemService, session: AsyncSession, settings: Settings, tree: Tree, sessionmaker
) -> None:
    failing = WorkItemService(
        session=session, settings=settings, store=FailingRepo(session, {tree.p1})
    )
    await failing.transition(tree.a, S.closed_complete, actor="alice")

    r = await failing.transition(tree.b, S.closed_complete, actor="alice")

    assert r.summary.partial
    assert r.summary.parents_closed == []
    assert [f.item_id for f in r.summary.failures] == [tree.p1]
    assert (await fetch(sessionmaker, tree.b)).state == S.closed_complete
    p1 = await fetch(sessionmaker, tree.p1)
    assert p1.state == S.pending
    assert p1.actual_end_date is None

    # Once the store recovers, repeating the request closes the parent.
    retry = await service.transition(tree.b, S.closed_complete, actor="alice")
    assert retry.summary.parents_closed == [tree.p1]
    assert (await fetch(sessionmaker, tree.p1)).state == S.completed


# -- Validation and guards -------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_transition_writes_nothing(service: WorkItemService, tree: Tree) -> None:
    await service.transition(tree.a, S.closed_complete, actor="alice")
    before = len(await service.history(tree.a))

    with pytest.raises(InvalidTransition):
        await service.transition(tree.a, S.open, actor="alice")
    with pytest.raises(InvalidTransition):
        await service.transition(tree.p1, S.closed_complete, actor="alice")

    assert len(await service.history(tree.a)) == before
    assert (await service.get(tree.a)).state == S.closed_complete


@pytest.mark.asyncio
async def test_over_deep_chain_is_rejected_before_writing(
    service: WorkItemService, session: AsyncSession, tree: Tree, sessionmaker, monkeypatch
) -> None:
    recorder = RecordingLog()
    monkeypatch.setattr(cascade_module, "log", recorder)
    rogue = await WorkItemRepo(session).create(
        kind=ItemKind.task, name="rogue", state=S.open, parent_id=tree.a
    )
    await session.commit()
    # The failed call rolls the shared session back and expires loaded rows.
    rogue_id = rogue.id

    with pytest.raises(CycleDetected):
        await service.transition(rogue_id, S.closed_complete, actor="alice")

    assert (await fetch(sessionmaker, rogue_id)).state == S.open
    assert [(level, event) for level, event, _ in recorder.events] == [
        ("error", "cascade.depth_violation")
    ]
    assert recorder.events[0][2]["item_id"] == str(rogue_id)


@pytest.mark.asyncio
async def test_looping_parent_chain_is_rejected(
    service: WorkItemService, session: AsyncSession, sessionmaker
) -> None:
    repo = WorkItemRepo(session)
    x = await repo.create(kind=ItemKind.project, name="X", state=S.active)
    y = await repo.create(kind=ItemKind.project, name="Y", state=S.active, parent_id=x.id)
    x.parent_id = y.id
    await repo.put(x)
    await session.commit()
    x_id = x.id

    with pytest.raises(CycleDetected):
        await service.transition(x_id, S.canceled, actor="alice")

    assert (await fetch(sessionmaker, x_id)).state == S.active


@pytest.mark.asyncio
async def test_dangling_parent_is_rejected(
    service: WorkItemService, session: AsyncSession, sessionmaker
) -> None:
    stray = await WorkItemRepo(session).create(
        kind=ItemKind.task, name="stray", state=S.open, parent_id=uuid.uuid4()
    )
    await session.commit()
    stray_id = stray.id

    with pytest.raises(OrphanedParent):
        await service.transition(stray_id, S.closed_complete, actor="alice")

    assert (await fetch(sessionmaker, stray_id)).state == S.open
