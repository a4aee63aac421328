from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dealboard.core.errors import AlreadyConvertedError, DealboardError, NotFoundError, ValidationFailureError
from dealboard.deals.models import Deal, DealWatcher, PipelineStage
from dealboard.deals.schemas import DealFilters


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_SET_FIELDS = ("assigned_user_ids", "label_ids")
_SORT_COLUMNS = {
    "order": Deal.order,
    "created_at": Deal.created_at,
    "updated_at": Deal.updated_at,
    "close_date": Deal.close_date,
    "name": Deal.name,
    "amount": Deal.amount,
}


@dataclass(slots=True)
class BatchUpdateResult:
    deal_id: uuid.UUID
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class StageRepository:
    def get(self, session: Session, stage_id: uuid.UUID) -> PipelineStage:
        stage = session.get(PipelineStage, stage_id)
        if stage is None:
            raise NotFoundError("Stage not found")
        return stage

    def ids_for_pipeline(self, pipeline_id: uuid.UUID) -> Select[tuple[uuid.UUID]]:
        return select(PipelineStage.id).where(PipelineStage.pipeline_id == pipeline_id)


class DealRepository:
    """Durable store for deals.

    Writes flush but do not commit, except ``batch_update`` which commits each
    entry on its own so one failing entry never undoes its siblings.
    """

    def __init__(self, stage_repository: StageRepository | None = None) -> None:
        self.stage_repository = stage_repository or StageRepository()

    def get(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.scalar(select(Deal).where(and_(Deal.id == deal_id, Deal.deleted_at.is_(None))))
        if deal is None:
            raise NotFoundError("Deal not found")
        return deal

    def find_one(self, session: Session, **filters: Any) -> Deal | None:
        stmt = select(Deal).where(Deal.deleted_at.is_(None))
        for field_name, value in filters.items():
            stmt = stmt.where(getattr(Deal, field_name) == value)
        return session.scalars(stmt.limit(1)).first()

    def next_order(self, session: Session, stage_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.max(Deal.order)).where(and_(Deal.stage_id == stage_id, Deal.deleted_at.is_(None)))
        )
        return 0 if current is None else int(current) + 1

    def create(self, session: Session, fields: dict[str, Any], actor_user_id: str | None) -> Deal:
        payload = dict(fields)
        watched_user_ids: Iterable[str] = payload.pop("watched_user_ids", None) or ()
        stage_id = payload["stage_id"]
        self.stage_repository.get(session, stage_id)

        if payload.get("order") is None:
            payload["order"] = self.next_order(session, stage_id)
        payload.setdefault("initial_stage_id", stage_id)
        for field_name in _SET_FIELDS:
            payload[field_name] = sorted(set(payload.get(field_name) or ()))

        now = utcnow()
        deal = Deal(
            **payload,
            created_by=actor_user_id,
            modified_by=actor_user_id,
            created_at=now,
            updated_at=now,
        )
        deal.watchers = [DealWatcher(user_id=user_id) for user_id in sorted(set(watched_user_ids))]
        session.add(deal)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            source_conversation_id = payload.get("source_conversation_id")
            if source_conversation_id and self.find_one(session, source_conversation_id=source_conversation_id):
                raise AlreadyConvertedError(source_conversation_id) from exc
            raise
        return deal

    def update(
        self,
        session: Session,
        deal_id: uuid.UUID,
        changes: dict[str, Any],
        actor_user_id: str | None,
    ) -> Deal:
        deal = self.get(session, deal_id)
        if not changes:
            return deal

        if "stage_id" in changes:
            self.stage_repository.get(session, changes["stage_id"])

        for field_name, value in changes.items():
            if field_name in _SET_FIELDS:
                value = sorted(set(value or ()))
            setattr(deal, field_name, value)
        deal.modified_by = actor_user_id
        deal.updated_at = utcnow()
        session.flush()
        return deal

    def batch_update(
        self,
        session: Session,
        entries: Sequence[tuple[uuid.UUID, dict[str, Any]]],
        actor_user_id: str | None,
    ) -> list[BatchUpdateResult]:
        results: list[BatchUpdateResult] = []
        for deal_id, changes in entries:
            try:
                self.update(session, deal_id, changes, actor_user_id)
                session.commit()
            except (DealboardError, SQLAlchemyError) as exc:
                session.rollback()
                results.append(BatchUpdateResult(deal_id=deal_id, error=exc))
                continue
            results.append(BatchUpdateResult(deal_id=deal_id))
        return results

    def list_by_ids(self, session: Session, deal_ids: Sequence[uuid.UUID]) -> list[Deal]:
        if not deal_ids:
            return []
        stmt = (
            select(Deal)
            .where(and_(Deal.id.in_(list(deal_ids)), Deal.deleted_at.is_(None)))
            .order_by(Deal.order.asc(), Deal.created_at.asc(), Deal.id.asc())
        )
        return list(session.scalars(stmt).all())

    def list_deals(
        self,
        session: Session,
        filters: DealFilters,
        *,
        skip: int = 0,
        limit: int | None = 50,
        now: datetime | None = None,
    ) -> list[Deal]:
        stmt = self._filtered_query(filters, now or utcnow())
        stmt = stmt.order_by(*self._ordering(filters))
        deals = session.scalars(stmt).all()

        # JSON list containment is evaluated here so it behaves the same on every backend.
        if filters.assigned_user_ids:
            wanted = set(filters.assigned_user_ids)
            deals = [deal for deal in deals if wanted.intersection(deal.assigned_user_ids or ())]
        if filters.label_ids:
            wanted = set(filters.label_ids)
            deals = [deal for deal in deals if wanted.intersection(deal.label_ids or ())]
        if limit is None:
            return list(deals[skip:])
        return list(deals[skip : skip + limit])

    def soft_delete(self, session: Session, deal_id: uuid.UUID, actor_user_id: str | None) -> Deal:
        deal = self.get(session, deal_id)
        deal.deleted_at = utcnow()
        # A removed deal no longer holds its conversation.
        deal.source_conversation_id = None
        deal.modified_by = actor_user_id
        session.flush()
        return deal

    def add_watcher(self, session: Session, deal: Deal, user_id: str) -> bool:
        if user_id in deal.watched_user_ids:
            return False
        deal.watchers.append(DealWatcher(user_id=user_id))
        try:
            session.flush()
        except IntegrityError:
            # Another writer stored the same watcher after this deal was loaded.
            session.rollback()
            session.refresh(deal)
            if user_id in deal.watched_user_ids:
                return False
            raise
        return True

    def remove_watcher(self, session: Session, deal: Deal, user_id: str) -> bool:
        remaining = [watcher for watcher in deal.watchers if watcher.user_id != user_id]
        if len(remaining) == len(deal.watchers):
            return False
        deal.watchers = remaining
        session.flush()
        return True

    def _filtered_query(self, filters: DealFilters, now: datetime) -> Select[tuple[Deal]]:
        stmt: Select[tuple[Deal]] = select(Deal).where(Deal.deleted_at.is_(None))
        if filters.stage_id is not None:
            stmt = stmt.where(Deal.stage_id == filters.stage_id)
        if filters.initial_stage_id is not None:
            stmt = stmt.where(Deal.initial_stage_id == filters.initial_stage_id)
        if filters.pipeline_id is not None:
            stmt = stmt.where(Deal.stage_id.in_(self.stage_repository.ids_for_pipeline(filters.pipeline_id)))
        if filters.priority:
            stmt = stmt.where(Deal.priority.in_(filters.priority))
        if filters.search:
            stmt = stmt.where(func.lower(Deal.name).contains(filters.search.strip().lower()))
        if filters.close_date_type is not None:
            stmt = stmt.where(close_date_condition(filters.close_date_type, now))
        return stmt

    def _ordering(self, filters: DealFilters) -> list[Any]:
        column = _SORT_COLUMNS["order"]
        if filters.sort_field is not None:
            column = _SORT_COLUMNS[filters.sort_field]
        primary = column.asc() if filters.sort_direction == 1 else column.desc()
        return [primary, Deal.created_at.asc(), Deal.id.asc()]


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def close_date_range(close_date_type: str, now: datetime) -> tuple[datetime, datetime]:
    today = _start_of_day(now)
    if close_date_type == "nextDay":
        start = today + timedelta(days=1)
        return start, start + timedelta(days=1)
    if close_date_type == "nextWeek":
        start = today + timedelta(days=7 - today.weekday())
        return start, start + timedelta(days=7)
    if close_date_type == "nextMonth":
        first_of_month = today.replace(day=1)
        start = (first_of_month + timedelta(days=32)).replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
        return start, end
    raise ValidationFailureError(f"unsupported close date type: {close_date_type}", ["close_date_type"])


def close_date_condition(close_date_type: str, now: datetime) -> Any:
    if close_date_type == "noCloseDate":
        return Deal.close_date.is_(None)
    if close_date_type == "overdue":
        return and_(Deal.close_date.is_not(None), Deal.close_date < _start_of_day(now))
    start, end = close_date_range(close_date_type, now)
    return and_(Deal.close_date >= start, Deal.close_date < end)
