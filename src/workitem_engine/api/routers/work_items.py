"""
workitem_engine.api.routers.work_items

Work-item endpoints (Request Gateway).

Responsibilities:
- Create campaigns, projects and tasks.
- Forward transition, restore, reparent, budget and recompute requests to the façade.
- Read items, their children and their audit trail.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from starlette.status import HTTP_201_CREATED

from workitem_engine.api.deps import actor_dep, creation_defaults, work_item_service
from workitem_engine.db.models import ItemKind, ItemState, WorkItem
from workitem_engine.engine.results import EngineResult
from workitem_engine.services.work_item_service import CreationDefaults, WorkItemService

router = APIRouter(prefix="/v1", tags=["work-items"])


class CreateCampaignRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    state: ItemState | None = None


class CreateChildRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    state: ItemState | None = None
    # Non-negative budgets are a caller-side rule; the engine sums whatever it is given.
    budget_own: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)


class TransitionRequest(BaseModel):
    state: ItemState


class RestoreRequest(BaseModel):
    include_descendants: bool = True


class ReparentRequest(BaseModel):
    parent_id: uuid.UUID


class BudgetRequest(BaseModel):
    budget_own: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)


class WorkItemResponse(BaseModel):
    id: uuid.UUID
    kind: ItemKind
    name: str
    state: ItemState
    parent_id: uuid.UUID | None
    campaign_id: uuid.UUID | None
    segment: str
    budget_own: Decimal | None
    budget_total: Decimal
    actual_end_date: datetime | None
    previous_state_snapshot: dict[str, Any] | None

    @classmethod
    def of(cls, item: WorkItem) -> WorkItemResponse:
        return cls(
            id=item.id,
            kind=item.kind,
            name=item.name,
            state=item.state,
            parent_id=item.parent_id,
            campaign_id=item.campaign_id,
            segment=item.segment,
            budget_own=item.budget_own,
            budget_total=item.budget_total,
            actual_end_date=item.actual_end_date,
            previous_state_snapshot=item.previous_state_snapshot,
        )


class EngineResultResponse(BaseModel):
    item: WorkItemResponse
    changed: bool
    summary: dict[str, Any]

    @classmethod
    def of(cls, result: EngineResult) -> EngineResultResponse:
        return cls(
            item=WorkItemResponse.of(result.item),
            changed=result.changed,
            summary=result.summary.to_dict(),
        )


@router.post("/campaigns", response_model=EngineResultResponse, status_code=HTTP_201_CREATED)
async def create_campaign(
    body: CreateCampaignRequest,
    actor: str = Depends(actor_dep),
    defaults: CreationDefaults = Depends(creation_defaults),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    result = await svc.create_campaign(
        name=body.name, actor=actor, state=body.state, defaults=defaults
    )
    return EngineResultResponse.of(result)


@router.post(
    "/campaigns/{campaign_id}/projects",
    response_model=EngineResultResponse,
    status_code=HTTP_201_CREATED,
)
async def create_project(
    campaign_id: uuid.UUID,
    body: CreateChildRequest,
    actor: str = Depends(actor_dep),
    defaults: CreationDefaults = Depends(creation_defaults),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    result = await svc.create_project(
        campaign_id=campaign_id,
        name=body.name,
        actor=actor,
        budget_own=body.budget_own,
        state=body.state,
        defaults=defaults,
    )
    return EngineResultResponse.of(result)


@router.post(
    "/projects/{project_id}/tasks",
    response_model=EngineResultResponse,
    status_code=HTTP_201_CREATED,
)
async def create_task(
    project_id: uuid.UUID,
    body: CreateChildRequest,
    actor: str = Depends(actor_dep),
    defaults: CreationDefaults = Depends(creation_defaults),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    result = await svc.create_task(
        project_id=project_id,
        name=body.name,
        actor=actor,
        budget_own=body.budget_own,
        state=body.state,
        defaults=defaults,
    )
    return EngineResultResponse.of(result)


@router.get("/items/{item_id}", response_model=WorkItemResponse)
async def get_item(
    item_id: uuid.UUID,
    svc: WorkItemService = Depends(work_item_service),
) -> WorkItemResponse:
    return WorkItemResponse.of(await svc.get(item_id))


@router.get("/items/{item_id}/children", response_model=list[WorkItemResponse])
async def list_children(
    item_id: uuid.UUID,
    svc: WorkItemService = Depends(work_item_service),
) -> list[WorkItemResponse]:
    return [WorkItemResponse.of(c) for c in await svc.children(item_id)]


@router.get("/items/{item_id}/history")
async def list_history(
    item_id: uuid.UUID,
    limit: int = Query(default=200, ge=1, le=1000),
    svc: WorkItemService = Depends(work_item_service),
) -> list[dict[str, Any]]:
    events = await svc.history(item_id, limit=limit)
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "actor": e.actor,
            "details": e.details,
            "created_at": e.created_at.isoformat(),
        }
        for e in events
    ]


@router.post("/items/{item_id}/transition", response_model=EngineResultResponse)
async def transition_item(
    item_id: uuid.UUID,
    body: TransitionRequest,
    actor: str = Depends(actor_dep),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    return EngineResultResponse.of(await svc.transition(item_id, body.state, actor=actor))


@router.post("/items/{item_id}/restore", response_model=EngineResultResponse)
async def restore_item(
    item_id: uuid.UUID,
    body: RestoreRequest,
    actor: str = Depends(actor_dep),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    result = await svc.restore(
        item_id, actor=actor, include_descendants=body.include_descendants
    )
    return EngineResultResponse.of(result)


@router.post("/items/{item_id}/reparent", response_model=EngineResultResponse)
async def reparent_item(
    item_id: uuid.UUID,
    body: ReparentRequest,
    actor: str = Depends(actor_dep),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    return EngineResultResponse.of(await svc.reparent(item_id, body.parent_id, actor=actor))


@router.put("/items/{item_id}/budget", response_model=EngineResultResponse)
async def set_budget(
    item_id: uuid.UUID,
    body: BudgetRequest,
    actor: str = Depends(actor_dep),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    return EngineResultResponse.of(await svc.set_budget(item_id, body.budget_own, actor=actor))


@router.post("/items/{item_id}/recompute", response_model=EngineResultResponse)
async def recompute_item(
    item_id: uuid.UUID,
    actor: str = Depends(actor_dep),
    svc: WorkItemService = Depends(work_item_service),
) -> EngineResultResponse:
    return EngineResultResponse.of(await svc.recompute(item_id, actor=actor))


# --- Module Notes -----------------------------------------------------------
# Every handler is a single façade call; the façade commits or rolls back before the
# response is built, so responses always describe durable state.
