from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Sequence
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import Select, and_, func, select
from sqlalchemy.orm import Session

from dealboard.core.errors import NotFoundError, ValidationFailureError
from dealboard.integrations.kinds import KIND_CHOICES, expand_kind, kind_display_name
from dealboard.integrations.models import Brand, ChannelIntegration, Integration, Tag
from dealboard.integrations.schemas import (
    BrandRead,
    IntegrationCountsRead,
    IntegrationDetailRead,
    IntegrationFilters,
    IntegrationRead,
    IntegrationUsedTypeRead,
    TagRead,
)
from dealboard.metrics import observe_integration_aggregation


logger = logging.getLogger("dealboard.integrations")
tracer = trace.get_tracer("dealboard.integrations")


def _parse_filters(filters: IntegrationFilters | dict[str, Any] | None) -> IntegrationFilters:
    if isinstance(filters, IntegrationFilters):
        return filters
    try:
        return IntegrationFilters.model_validate(filters or {})
    except ValidationError as exc:
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ValidationFailureError("invalid IntegrationFilters", fields) from exc


class IntegrationRepository:
    def get(self, session: Session, integration_id: uuid.UUID) -> Integration:
        integration = session.get(Integration, integration_id)
        if integration is None:
            raise NotFoundError("Integration not found")
        return integration

    def filtered_query(self, filters: IntegrationFilters) -> Select[tuple[Integration]]:
        stmt: Select[tuple[Integration]] = select(Integration)
        if filters.kind:
            stmt = stmt.where(Integration.kind.in_(sorted(expand_kind(filters.kind))))
        if filters.brand_id is not None:
            stmt = stmt.where(Integration.brand_id == filters.brand_id)
        if filters.channel_id is not None:
            stmt = stmt.where(
                Integration.id.in_(
                    select(ChannelIntegration.integration_id).where(ChannelIntegration.channel_id == filters.channel_id)
                )
            )
        if filters.search_value:
            stmt = stmt.where(func.lower(Integration.name).contains(filters.search_value.strip().lower()))
        return stmt

    def scan(self, session: Session, filters: IntegrationFilters) -> list[Integration]:
        stmt = self.filtered_query(filters).order_by(Integration.created_at.asc(), Integration.id.asc())
        integrations = list(session.scalars(stmt).all())
        # Tag references live in a JSON list, so containment is checked here.
        if filters.tag:
            integrations = [integration for integration in integrations if filters.tag in (integration.tag_ids or ())]
        return integrations

    def memberships_for(
        self,
        session: Session,
        integration_ids: Sequence[uuid.UUID],
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        if not integration_ids:
            return []
        stmt = select(ChannelIntegration.channel_id, ChannelIntegration.integration_id).where(
            ChannelIntegration.integration_id.in_(list(integration_ids))
        )
        return [(channel_id, integration_id) for channel_id, integration_id in session.execute(stmt).all()]

    def used_kinds(self, session: Session) -> list[str]:
        return list(session.scalars(select(Integration.kind).distinct()).all())


class IntegrationAggregator:
    """Exact grouped counts over integrations for dashboards.

    ``by_channel`` and ``by_tag`` are membership counts: one integration may be
    counted under several channels or several tags. Only non-empty buckets are
    reported.
    """

    def __init__(self, repository: IntegrationRepository) -> None:
        self.repository = repository

    def aggregate_counts(self, session: Session, filters: IntegrationFilters) -> IntegrationCountsRead:
        with tracer.start_as_current_span("integrations.aggregate_counts") as span:
            integrations = self.repository.scan(session, filters)
            span.set_attribute("total", len(integrations))

            by_kind = Counter(integration.kind for integration in integrations)
            by_brand = Counter(str(integration.brand_id) for integration in integrations if integration.brand_id)
            by_tag: Counter[str] = Counter()
            for integration in integrations:
                by_tag.update(set(integration.tag_ids or ()))

            memberships = self.repository.memberships_for(session, [integration.id for integration in integrations])
            by_channel = Counter(str(channel_id) for channel_id, _integration_id in memberships)

        observe_integration_aggregation()
        return IntegrationCountsRead(
            total=len(integrations),
            by_kind=dict(by_kind),
            by_brand=dict(by_brand),
            by_channel=dict(by_channel),
            by_tag=dict(by_tag),
        )


class IntegrationService:
    def __init__(self, repository: IntegrationRepository | None = None) -> None:
        self.repository = repository or IntegrationRepository()
        self.aggregator = IntegrationAggregator(self.repository)

    def list_integrations(
        self,
        session: Session,
        filters: IntegrationFilters | dict[str, Any] | None = None,
        *,
        page: int = 1,
        per_page: int = 20,
    ) -> list[IntegrationRead]:
        if page < 1 or per_page < 1:
            raise ValidationFailureError("page and per_page must be positive", ["page", "per_page"])
        parsed = _parse_filters(filters)
        integrations = self.repository.scan(session, parsed)
        start = (page - 1) * per_page
        return [IntegrationRead.model_validate(item) for item in integrations[start : start + per_page]]

    def get_integration(self, session: Session, integration_id: uuid.UUID) -> IntegrationDetailRead:
        integration = self.repository.get(session, integration_id)
        detail = IntegrationDetailRead.model_validate(integration)
        detail.channel_ids = sorted(
            channel_id for channel_id, _integration_id in self.repository.memberships_for(session, [integration.id])
        )
        if integration.brand_id is not None:
            brand = session.get(Brand, integration.brand_id)
            detail.brand = BrandRead.model_validate(brand) if brand is not None else None

        tag_ids: list[uuid.UUID] = []
        for raw in integration.tag_ids or ():
            try:
                tag_ids.append(uuid.UUID(str(raw)))
            except ValueError:
                continue
        if tag_ids:
            tags = session.scalars(select(Tag).where(and_(Tag.id.in_(tag_ids), Tag.type == "integration"))).all()
            detail.tags = [TagRead.model_validate(tag) for tag in sorted(tags, key=lambda tag: tag.name)]
        return detail

    def aggregate_counts(
        self,
        session: Session,
        filters: IntegrationFilters | dict[str, Any] | None = None,
    ) -> IntegrationCountsRead:
        parsed = _parse_filters(filters)
        counts = self.aggregator.aggregate_counts(session, parsed)
        logger.info(
            "integration.counts_aggregated",
            extra={"count": counts.total, "filters": parsed.model_dump(mode="json", exclude_none=True)},
        )
        return counts

    def get_used_types(self, session: Session) -> list[IntegrationUsedTypeRead]:
        used = set(self.repository.used_kinds(session))
        catalogue_order = [kind for kind in KIND_CHOICES if kind in used]
        unknown = sorted(used.difference(KIND_CHOICES))
        return [IntegrationUsedTypeRead(id=kind, name=kind_display_name(kind)) for kind in catalogue_order + unknown]


integration_service = IntegrationService()
