from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealboard.api.deps import failure_response, get_current_user, require_permission
from dealboard.core.config import get_settings
from dealboard.core.database import get_db
from dealboard.core.errors import DealboardError
from dealboard.deals.schemas import (
    DealChangeStageRequest,
    DealCreate,
    DealOrderRequest,
    DealPatch,
    DealRead,
    DealTotalAmountsRead,
    DealWatchRequest,
)
from dealboard.deals.service import ActorUser, deal_service

router = APIRouter(prefix="/api/deals", tags=["deals"])
stages_router = APIRouter(prefix="/api/stages", tags=["deals.stages"])


def _filters(
    stage_id: uuid.UUID | None = Query(default=None),
    initial_stage_id: uuid.UUID | None = Query(default=None),
    pipeline_id: uuid.UUID | None = Query(default=None),
    assigned_user_ids: list[str] = Query(default=[]),
    label_ids: list[str] = Query(default=[]),
    priority: list[str] = Query(default=[]),
    search: str | None = Query(default=None),
    close_date_type: str | None = Query(default=None),
    sort_field: str | None = Query(default=None),
    sort_direction: int = Query(default=1),
) -> dict[str, Any]:
    return {
        "stage_id": stage_id,
        "initial_stage_id": initial_stage_id,
        "pipeline_id": pipeline_id,
        "assigned_user_ids": assigned_user_ids,
        "label_ids": label_ids,
        "priority": priority,
        "search": search,
        "close_date_type": close_date_type,
        "sort_field": sort_field,
        "sort_direction": sort_direction,
    }


@router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    filters: dict[str, Any] = Depends(_filters),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "deals.read")
        limit = min(limit, get_settings().deal_list_max_limit)
        return deal_service.list_deals(db, user, filters, skip=skip, limit=limit)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_list_failed")


@router.get("/total-amounts", response_model=DealTotalAmountsRead)
def deals_total_amounts(
    request: Request,
    filters: dict[str, Any] = Depends(_filters),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealTotalAmountsRead | JSONResponse:
    try:
        require_permission(user, "deals.read")
        return deal_service.deals_total_amounts(db, user, filters)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_total_amounts_failed")


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.create_deal(db, user, dto)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_create_failed")


@router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_get_failed")


@router.patch("/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealPatch,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_update_failed")


@router.delete("/{deal_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "deals.delete")
        deal_service.remove_deal(db, user, deal_id)
        return {"status": "deleted"}
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_delete_failed")


@router.post("/{deal_id}/change-stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealChangeStageRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.change_stage(db, user, deal_id, dto.destination_stage_id, dto.order)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_change_stage_failed")


@router.post("/{deal_id}/watch", response_model=DealRead)
def watch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealWatchRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.watch")
        return deal_service.set_watch(db, user, deal_id, dto.is_add)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_watch_failed")


@stages_router.post("/{stage_id}/deal-order", response_model=list[DealRead])
def update_deal_order(
    request: Request,
    stage_id: uuid.UUID,
    dto: DealOrderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.update_order(db, user, stage_id, dto.orders)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "deal_order_update_failed")
