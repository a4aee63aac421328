from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealboard.api.deps import failure_response, get_current_user, require_permission
from dealboard.core.config import get_settings
from dealboard.core.database import get_db
from dealboard.core.errors import DealboardError
from dealboard.deals.service import ActorUser
from dealboard.integrations.schemas import (
    IntegrationCountsRead,
    IntegrationDetailRead,
    IntegrationRead,
    IntegrationUsedTypeRead,
)
from dealboard.integrations.service import integration_service

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


def _filters(
    kind: str | None = Query(default=None),
    channel_id: uuid.UUID | None = Query(default=None),
    brand_id: uuid.UUID | None = Query(default=None),
    tag: str | None = Query(default=None),
    search_value: str | None = Query(default=None, alias="searchValue"),
) -> dict[str, Any]:
    return {
        "kind": kind,
        "channel_id": channel_id,
        "brand_id": brand_id,
        "tag": tag,
        "search_value": search_value,
    }


@router.get("", response_model=list[IntegrationRead])
def list_integrations(
    request: Request,
    filters: dict[str, Any] = Depends(_filters),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, alias="perPage"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[IntegrationRead] | JSONResponse:
    try:
        require_permission(user, "integrations.read")
        per_page = min(per_page, get_settings().integration_list_max_per_page)
        return integration_service.list_integrations(db, filters, page=page, per_page=per_page)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "integration_list_failed")


@router.get("/total-count", response_model=IntegrationCountsRead)
def integrations_total_count(
    request: Request,
    filters: dict[str, Any] = Depends(_filters),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntegrationCountsRead | JSONResponse:
    try:
        require_permission(user, "integrations.read")
        return integration_service.aggregate_counts(db, filters)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "integration_count_failed")


@router.get("/used-types", response_model=list[IntegrationUsedTypeRead])
def integrations_used_types(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[IntegrationUsedTypeRead] | JSONResponse:
    try:
        require_permission(user, "integrations.read")
        return integration_service.get_used_types(db)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "integration_used_types_failed")


@router.get("/{integration_id}", response_model=IntegrationDetailRead)
def get_integration(
    request: Request,
    integration_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> IntegrationDetailRead | JSONResponse:
    try:
        require_permission(user, "integrations.read")
        return integration_service.get_integration(db, integration_id)
    except (HTTPException, DealboardError) as exc:
        return failure_response(request, exc, "integration_get_failed")
