"""
workitem_engine.api.routers.health

Health and readiness endpoints.

Responsibilities:
- Provide liveness check (`/healthz`).
- Provide readiness check (`/readyz`) with record store connectivity validation.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from workitem_engine.api.deps import db_session

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(session: AsyncSession = Depends(db_session)) -> dict[str, str]:
    # Readiness: the record store must answer before traffic is routed here.
    await session.execute(text("SELECT 1"))
    return {"status": "ready"}
