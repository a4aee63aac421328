from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class IntegrationFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str | None = Field(default=None, min_length=1)
    channel_id: UUID | None = None
    brand_id: UUID | None = None
    tag: str | None = Field(default=None, min_length=1)
    search_value: str | None = None


class IntegrationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    name: str
    brand_id: UUID | None
    tag_ids: set[str]
    language_code: str | None
    created_at: datetime


class BrandRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


class TagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str


class IntegrationDetailRead(IntegrationRead):
    channel_ids: list[UUID] = Field(default_factory=list)
    brand: BrandRead | None = None
    tags: list[TagRead] = Field(default_factory=list)


class IntegrationCountsRead(BaseModel):
    total: int
    by_kind: dict[str, int] = Field(default_factory=dict)
    by_brand: dict[str, int] = Field(default_factory=dict)
    by_channel: dict[str, int] = Field(default_factory=dict)
    by_tag: dict[str, int] = Field(default_factory=dict)


class IntegrationUsedTypeRead(BaseModel):
    id: str
    name: str
