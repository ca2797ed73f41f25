"""
workitem_engine.engine.state_machines

Per-kind lifecycle tables.

Responsibilities:
- Enumerate the states and allowed transitions for Campaign, Project and Task.
- Classify states as terminal, suspending, and (per kind) the auto-close target.
"""

from __future__ import annotations

from dataclasses import dataclass

from workitem_engine.db.models import ItemKind, ItemState

S = ItemState

# Suspending states pause an item; they trigger a history snapshot and propagate downward.
SUSPENDING_STATES: frozenset[ItemState] = frozenset({S.on_hold, S.archived})


@dataclass(frozen=True, slots=True)
class StateMachine:
    kind: ItemKind
    initial_state: ItemState
    completed_state: ItemState
    terminal_states: frozenset[ItemState]
    transitions: dict[ItemState, frozenset[ItemState]]

    @property
    def states(self) -> frozenset[ItemState]:
        return frozenset(self.transitions)

    def is_terminal(self, state: ItemState) -> bool:
        return state in self.terminal_states

    def is_allowed(self, from_state: ItemState, to_state: ItemState) -> bool:
        return to_state in self.transitions.get(from_state, frozenset())


def _machine(
    kind: ItemKind,
    *,
    initial: ItemState,
    completed: ItemState,
    terminal: set[ItemState],
    transitions: dict[ItemState, set[ItemState]],
) -> StateMachine:
    return StateMachine(
        kind=kind,
        initial_state=initial,
        completed_state=completed,
        terminal_states=frozenset(terminal),
        transitions={k: frozenset(v) for k, v in transitions.items()},
    )


CAMPAIGN = _machine(
    ItemKind.campaign,
    initial=S.planning,
    completed=S.completed,
    terminal={S.completed, S.canceled, S.archived},
    transitions={
        S.planning: {S.active, S.on_hold, S.canceled, S.archived},
        S.active: {S.on_hold, S.completed, S.canceled, S.archived},
        S.on_hold: {S.planning, S.active, S.canceled, S.archived},
        S.completed: {S.archived},
        S.canceled: {S.archived},
        S.archived: {S.planning, S.active, S.on_hold, S.completed, S.canceled},
    },
)

PROJECT = _machine(
    ItemKind.project,
    initial=S.pending,
    completed=S.completed,
    terminal={S.completed, S.canceled, S.rejected, S.archived},
    transitions={
        S.pending: {S.active, S.on_hold, S.canceled, S.rejected, S.archived},
        S.active: {S.on_hold, S.completed, S.canceled, S.archived},
        S.on_hold: {S.pending, S.active, S.canceled, S.archived},
        S.completed: {S.archived},
        S.canceled: {S.archived},
        S.rejected: {S.archived},
        S.archived: {S.pending, S.active, S.on_hold, S.completed, S.canceled, S.rejected},
    },
)

_TASK_CLOSED = {S.closed_complete, S.closed_incomplete, S.closed_skipped}

TASK = _machine(
    ItemKind.task,
    initial=S.open,
    completed=S.closed_complete,
    terminal={*_TASK_CLOSED, S.canceled, S.archived},
    transitions={
        S.open: {S.work_in_progress, S.on_hold, S.canceled, S.archived, *_TASK_CLOSED},
        S.work_in_progress: {S.open, S.on_hold, S.canceled, S.archived, *_TASK_CLOSED},
        S.on_hold: {S.open, S.work_in_progress, S.canceled, S.archived},
        S.closed_complete: {S.archived},
        S.closed_incomplete: {S.archived},
        S.closed_skipped: {S.archived},
        S.canceled: {S.archived},
        S.archived: {S.open, S.work_in_progress, S.on_hold, S.canceled, *_TASK_CLOSED},
    },
)

MACHINES: dict[ItemKind, StateMachine] = {m.kind: m for m in (CAMPAIGN, PROJECT, TASK)}


def machine_for(kind: ItemKind) -> StateMachine:
    return MACHINES[kind]


def is_terminal(kind: ItemKind, state: ItemState) -> bool:
    return MACHINES[kind].is_terminal(state)


def is_suspending(state: ItemState) -> bool:
    return state in SUSPENDING_STATES


def is_allowed_transition(kind: ItemKind, from_state: ItemState, to_state: ItemState) -> bool:
    return MACHINES[kind].is_allowed(from_state, to_state)


# --- Module Notes -----------------------------------------------------------
# Archived and on-hold may return to any working state so an explicit restore can reach
# whatever the snapshot recorded. Completed/canceled items can only move on to archived.
