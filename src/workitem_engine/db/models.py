"""
workitem_engine.db.models

Persistence schema for the work-item hierarchy.

Responsibilities:
- Define the closed set of hierarchy kinds and lifecycle states.
- Define ORM models:
  - WorkItem: one node of the Campaign -> Project -> Task tree
  - AuditEvent: append-only trail of transitions, cascades and recomputations
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid as SAUuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from workitem_engine.db.base import Base


def _utcnow() -> datetime:
    # Persist naive UTC timestamps for simplicity; production systems may use tz-aware types.
    return datetime.utcnow()


class ItemKind(enum.StrEnum):
    campaign = "CAMPAIGN"
    project = "PROJECT"
    task = "TASK"


# Hierarchy shape: the kind a parent must have (campaigns are roots).
PARENT_KIND: dict[ItemKind, ItemKind | None] = {
    ItemKind.campaign: None,
    ItemKind.project: ItemKind.campaign,
    ItemKind.task: ItemKind.project,
}


class ItemState(enum.StrEnum):
    # Union of all lifecycle states; each kind allows a subset (see engine.state_machines).
    # Enum values are stored in DB; treat as stable API contract.
    planning = "PLANNING"
    pending = "PENDING"
    open = "OPEN"
    active = "ACTIVE"
    work_in_progress = "WORK_IN_PROGRESS"
    on_hold = "ON_HOLD"
    completed = "COMPLETED"
    closed_complete = "CLOSED_COMPLETE"
    closed_incomplete = "CLOSED_INCOMPLETE"
    closed_skipped = "CLOSED_SKIPPED"
    canceled = "CANCELED"
    rejected = "REJECTED"
    archived = "ARCHIVED"


BUDGET = Numeric(14, 2)


class WorkItem(Base):
    __tablename__ = "work_items"

    id: Mapped[uuid.UUID] = mapped_column(
        SAUuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    kind: Mapped[ItemKind] = mapped_column(Enum(ItemKind), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)

    # `parent_id` is the authoritative hierarchy link.
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), ForeignKey("work_items.id"), nullable=True, index=True
    )
    # Denormalized root reference, Task rows only; maintained by the service layer.
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        SAUuid(as_uuid=True), nullable=True, index=True
    )

    state: Mapped[ItemState] = mapped_column(Enum(ItemState), nullable=False, index=True)
    segment: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    previous_state_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    budget_own: Mapped[Decimal | None] = mapped_column(BUDGET, nullable=True)
    budget_total: Mapped[Decimal] = mapped_column(BUDGET, nullable=False, default=Decimal("0"))

    actual_end_date: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (Index("ix_work_items_parent_state", "parent_id", "state"),)

    def __repr__(self) -> str:
        return f"WorkItem(id={self.id}, kind={self.kind.value}, state={self.state.value})"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Monotonic sequence; orders events written within the same clock tick.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    item_id: Mapped[uuid.UUID] = mapped_column(SAUuid(as_uuid=True), nullable=False, index=True)

    actor: Mapped[str] = mapped_column(String(256), nullable=False)  # user id / "engine"
    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_utcnow, index=True)

    __table_args__ = (Index("ix_audit_item_created", "item_id", "created_at"),)


# --- Module Notes -----------------------------------------------------------
# Rows are never deleted by the engine: archival is a terminal state, not a row removal.
