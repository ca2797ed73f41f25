"""
workitem_engine.settings

Central configuration model (Pydantic Settings).

Responsibilities:
- Provide strongly-typed, env-driven settings for all layers.
- Describe which states propagate top-down and the fixed hierarchy depth.
- Offer a cached settings instance for dependency injection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workitem_engine.db.models import ItemState


class Settings(BaseSettings):
    """
    Strict env-driven configuration; defaults are safe for local dev.
    One instance is passed explicitly into the service layer.
    """

    model_config = SettingsConfigDict(env_prefix="WIE_", case_sensitive=False)

    env: Literal["dev", "test", "prod"] = "dev"
    service_name: str = "workitem-engine"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./workitems.db"

    # Cascade engine
    max_hierarchy_depth: int = Field(default=3, ge=1)
    propagating_states: frozenset[ItemState] = frozenset(
        {ItemState.canceled, ItemState.archived, ItemState.on_hold}
    )

    # Creation defaults (handed to create calls as an explicit CreationDefaults object)
    default_segment: str = "default"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Cache avoids re-parsing env vars for each request dependency.
    return Settings()


# --- Module Notes -----------------------------------------------------------
# `propagating_states` accepts a JSON list from the environment, e.g.
# WIE_PROPAGATING_STATES='["CANCELED", "ARCHIVED"]'.
