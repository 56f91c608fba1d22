"""Settings for sqla_querysets."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuerySetSettings(BaseSettings):
    """Library configuration, read from ``SQLA_QUERYSETS_*`` environment variables."""

    # Depth bound for ``select_related()`` without arguments
    max_related_depth: int = Field(default=5, ge=1)

    # Dialect used to render ``QuerySet.sql()`` when no driver is bound
    default_dialect: str = "sqlite"

    # Include bound parameter values in DEBUG statement logs
    log_parameters: bool = False

    model_config = SettingsConfigDict(
        env_prefix="SQLA_QUERYSETS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = QuerySetSettings()
