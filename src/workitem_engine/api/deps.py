"""
workitem_engine.api.deps

FastAPI dependency wiring for the API layer.

Responsibilities:
- Provide dependency functions for settings, DB sessions, the service façade and
  the acting identity.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workitem_engine.services.work_item_service import CreationDefaults, WorkItemService
from workitem_engine.settings import Settings, get_settings


def settings_dep(request: Request) -> Settings:
    # Prefer the settings the app was built with; fall back to the env-driven instance.
    return getattr(request.app.state, "settings", None) or get_settings()


def sessionmaker_from_app(request: Request) -> async_sessionmaker[AsyncSession]:
    # The sessionmaker is created on app startup in `workitem_engine.api.app.create_app`.
    return request.app.state.sessionmaker  # type: ignore[attr-defined]


async def db_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(sessionmaker_from_app),
) -> AsyncIterator[AsyncSession]:
    # Request-scoped DB session. Commit/rollback is managed by the service layer.
    async with session_factory() as session:
        yield session


def work_item_service(
    session: AsyncSession = Depends(db_session),
    settings: Settings = Depends(settings_dep),
) -> WorkItemService:
    return WorkItemService(session=session, settings=settings)


def creation_defaults(settings: Settings = Depends(settings_dep)) -> CreationDefaults:
    return CreationDefaults.from_settings(settings)


def actor_dep(x_actor: str = Header(default="anonymous", max_length=256)) -> str:
    # Authentication happens upstream of this service; the gateway forwards the identity.
    return x_actor
