"""Pydantic models for the Vercel build output config (``config.json``)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class VercelRoute(BaseModel):
    """One entry of ``routes``. Unknown keys (``dest``, ``handle``...) are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    src: str | None = None
    headers: dict[str, str] | None = None
    continue_: bool | None = Field(default=None, alias="continue")


class VercelConfig(BaseModel):
    """Top-level config; only ``version`` and ``routes`` are interpreted."""

    model_config = ConfigDict(extra="allow")

    version: int
    routes: list[VercelRoute] = Field(default_factory=list)
