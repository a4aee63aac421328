from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


CloseDateType = Literal["overdue", "nextDay", "nextWeek", "nextMonth", "noCloseDate"]
DealSortField = Literal["order", "created_at", "updated_at", "close_date", "name", "amount"]

# Patch fields that may be omitted but never explicitly cleared.
NON_NULLABLE_PATCH_FIELDS = frozenset(
    {"name", "stage_id", "order", "amount", "is_complete", "assigned_user_ids", "label_ids"}
)


class DealCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    stage_id: UUID
    order: int | None = None
    source_conversation_id: str | None = Field(default=None, min_length=1, max_length=128)
    assigned_user_ids: set[str] = Field(default_factory=set)
    watched_user_ids: set[str] = Field(default_factory=set)
    label_ids: set[str] = Field(default_factory=set)
    description: str | None = None
    priority: str | None = None
    currency_code: str | None = None
    amount: float = 0
    is_complete: bool = False
    reminder_minute: int | None = Field(default=None, ge=0)
    close_date: datetime | None = None


class DealPatch(BaseModel):
    """Partial update for a deal.

    Only fields explicitly set on the instance are written; everything else on
    the stored deal stays as it is. ``initial_stage_id`` and the watcher set are
    not patchable here.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    stage_id: UUID | None = None
    order: int | None = None
    assigned_user_ids: set[str] | None = None
    label_ids: set[str] | None = None
    description: str | None = None
    priority: str | None = None
    currency_code: str | None = None
    amount: float | None = None
    is_complete: bool | None = None
    reminder_minute: int | None = Field(default=None, ge=0)
    close_date: datetime | None = None

    @model_validator(mode="after")
    def _reject_cleared_required_fields(self) -> DealPatch:
        cleared = [
            name
            for name in self.model_fields_set
            if name in NON_NULLABLE_PATCH_FIELDS and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"fields cannot be null: {', '.join(sorted(cleared))}")
        return self

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    stage_id: UUID
    initial_stage_id: UUID
    order: int
    source_conversation_id: str | None
    assigned_user_ids: set[str]
    watched_user_ids: set[str]
    label_ids: set[str]
    description: str | None
    priority: str | None
    currency_code: str | None
    amount: float
    is_complete: bool
    reminder_minute: int | None
    close_date: datetime | None
    created_by: str | None
    modified_by: str | None
    created_at: datetime
    updated_at: datetime


class DealOrderItem(BaseModel):
    id: UUID
    order: int


class DealOrderRequest(BaseModel):
    orders: list[DealOrderItem] = Field(default_factory=list)


class DealChangeStageRequest(BaseModel):
    destination_stage_id: UUID
    order: int | None = None


class DealWatchRequest(BaseModel):
    is_add: bool


class DealFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stage_id: UUID | None = None
    initial_stage_id: UUID | None = None
    pipeline_id: UUID | None = None
    assigned_user_ids: list[str] = Field(default_factory=list)
    label_ids: list[str] = Field(default_factory=list)
    priority: list[str] = Field(default_factory=list)
    search: str | None = None
    close_date_type: CloseDateType | None = None
    sort_field: DealSortField | None = None
    sort_direction: Literal[1, -1] = 1


class DealCurrencyTotal(BaseModel):
    currency: str | None
    amount: float


class DealTotalAmountsRead(BaseModel):
    deal_count: int
    totals: list[DealCurrencyTotal] = Field(default_factory=list)
