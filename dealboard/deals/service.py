from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy.orm import Session

from dealboard import audit, events
from dealboard.core.errors import AlreadyConvertedError, ValidationFailureError
from dealboard.deals.models import Deal
from dealboard.deals.repository import BatchUpdateResult, DealRepository
from dealboard.deals.schemas import (
    DealCreate,
    DealCurrencyTotal,
    DealFilters,
    DealOrderItem,
    DealPatch,
    DealRead,
    DealTotalAmountsRead,
)
from dealboard.metrics import (
    observe_deal_conversion_conflict,
    observe_deal_order_batch,
    observe_deal_stage_change,
    observe_deal_watch_change,
)


logger = logging.getLogger("dealboard.deals")
tracer = trace.get_tracer("dealboard.deals")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def _validate(model: type[Any], payload: Any) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ValidationFailureError(f"invalid {model.__name__}", fields) from exc


def to_read(deal: Deal) -> DealRead:
    return DealRead.model_validate(deal)


class ConversionGuard:
    """Rejects a deal creation whose source conversation already produced a deal.

    The lookup is check-then-act; the unique constraint on
    ``deal.source_conversation_id`` closes the remaining race and is surfaced
    by the repository as the same ``AlreadyConvertedError``.
    """

    def __init__(self, repository: DealRepository) -> None:
        self.repository = repository

    def ensure_not_converted(self, session: Session, source_conversation_id: str | None) -> None:
        if not source_conversation_id:
            return
        existing = self.repository.find_one(session, source_conversation_id=source_conversation_id)
        if existing is not None:
            raise AlreadyConvertedError(source_conversation_id)


class OrderManager:
    def __init__(self, repository: DealRepository) -> None:
        self.repository = repository

    def update_order(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        orders: Sequence[DealOrderItem],
    ) -> tuple[list[Deal], list[BatchUpdateResult]]:
        if not orders:
            return [], []

        occurrences = Counter(item.id for item in orders)
        duplicates = sorted(str(deal_id) for deal_id, count in occurrences.items() if count > 1)
        if duplicates:
            raise ValidationFailureError("deal ids must be unique within an order batch", duplicates)

        self.repository.stage_repository.get(session, stage_id)

        with tracer.start_as_current_span("deals.update_order") as span:
            span.set_attribute("stage_id", str(stage_id))
            span.set_attribute("batch_size", len(orders))
            results = self.repository.batch_update(
                session,
                [(item.id, {"stage_id": stage_id, "order": item.order}) for item in orders],
                actor_user.user_id,
            )
            failed = [result for result in results if not result.ok]
            span.set_attribute("failed", len(failed))

        for result in failed:
            logger.warning(
                "deal.order_update_failed",
                extra={"deal_id": str(result.deal_id), "stage_id": str(stage_id), "error": str(result.error)},
            )
        observe_deal_order_batch(applied=len(results) - len(failed), failed=len(failed))
        logger.info(
            "deal.order_updated",
            extra={"stage_id": str(stage_id), "count": len(results) - len(failed), "failed": len(failed)},
        )

        updated = self.repository.list_by_ids(session, [result.deal_id for result in results if result.ok])
        return updated, failed


class StageTransitionController:
    def __init__(self, repository: DealRepository) -> None:
        self.repository = repository

    def apply_patch(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, patch: DealPatch) -> Deal:
        return self.repository.update(session, deal_id, patch.changes(), actor_user.user_id)

    def move(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        destination_stage_id: uuid.UUID,
        order: int | None = None,
    ) -> tuple[Deal, uuid.UUID]:
        deal = self.repository.get(session, deal_id)
        source_stage_id = deal.stage_id
        changes: dict[str, Any] = {"stage_id": destination_stage_id}
        if order is not None:
            changes["order"] = order
        elif destination_stage_id != source_stage_id:
            self.repository.stage_repository.get(session, destination_stage_id)
            changes["order"] = self.repository.next_order(session, destination_stage_id)
        return self.repository.update(session, deal_id, changes, actor_user.user_id), source_stage_id


class WatchRegistry:
    def __init__(self, repository: DealRepository) -> None:
        self.repository = repository

    def set_watch(self, session: Session, deal_id: uuid.UUID, is_add: bool, user_id: str) -> tuple[Deal, bool]:
        deal = self.repository.get(session, deal_id)
        if is_add:
            changed = self.repository.add_watcher(session, deal, user_id)
        else:
            changed = self.repository.remove_watcher(session, deal, user_id)
        return deal, changed


class DealService:
    entity_type = "deals.deal"

    def __init__(self, repository: DealRepository | None = None) -> None:
        self.repository = repository or DealRepository()
        self.conversion_guard = ConversionGuard(self.repository)
        self.order_manager = OrderManager(self.repository)
        self.stage_transitions = StageTransitionController(self.repository)
        self.watch_registry = WatchRegistry(self.repository)

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return to_read(self.repository.get(session, deal_id))

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate | dict[str, Any]) -> DealRead:
        dto = _validate(DealCreate, dto)
        try:
            self.conversion_guard.ensure_not_converted(session, dto.source_conversation_id)
            deal = self.repository.create(session, dto.model_dump(), actor_user.user_id)
        except AlreadyConvertedError:
            observe_deal_conversion_conflict()
            logger.info(
                "deal.already_converted",
                extra={"source_conversation_id": dto.source_conversation_id},
            )
            raise

        created = to_read(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "deals.deal.created",
                actor_user.user_id,
                {
                    "deal_id": str(deal.id),
                    "stage_id": str(deal.stage_id),
                    "source_conversation_id": deal.source_conversation_id,
                },
            )
        )
        session.commit()
        return to_read(self.repository.get(session, deal.id))

    def update_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        patch: DealPatch | dict[str, Any],
    ) -> DealRead:
        patch = _validate(DealPatch, patch)
        current = to_read(self.repository.get(session, deal_id))
        if not patch.changes():
            return current
        deal = self.stage_transitions.apply_patch(session, actor_user, deal_id, patch)
        updated = to_read(deal)
        self._record_update(actor_user, "update", current, updated)
        session.commit()
        return to_read(self.repository.get(session, deal_id))

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        destination_stage_id: uuid.UUID,
        order: int | None = None,
    ) -> DealRead:
        before = to_read(self.repository.get(session, deal_id))
        deal, source_stage_id = self.stage_transitions.move(session, actor_user, deal_id, destination_stage_id, order)
        updated = to_read(deal)
        self._record_update(actor_user, "change_stage", before, updated)
        if source_stage_id != deal.stage_id:
            observe_deal_stage_change()
            events.publish(
                events.build_envelope(
                    "deals.deal.stage_changed",
                    actor_user.user_id,
                    {
                        "deal_id": str(deal.id),
                        "source_stage_id": str(source_stage_id),
                        "stage_id": str(deal.stage_id),
                        "order": deal.order,
                    },
                )
            )
        session.commit()
        return to_read(self.repository.get(session, deal_id))

    def update_order(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        orders: Sequence[DealOrderItem | dict[str, Any]],
    ) -> list[DealRead]:
        items = [_validate(DealOrderItem, item) for item in orders]
        updated, _failed = self.order_manager.update_order(session, actor_user, stage_id, items)
        return [to_read(deal) for deal in updated]

    def set_watch(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        is_add: bool,
        user_id: str | None = None,
    ) -> DealRead:
        watcher_id = user_id or actor_user.user_id
        deal, changed = self.watch_registry.set_watch(session, deal_id, is_add, watcher_id)
        if not changed:
            return to_read(deal)

        action = "watch" if is_add else "unwatch"
        observe_deal_watch_change(action)
        events.publish(
            events.build_envelope(
                "deals.deal.watch_changed",
                actor_user.user_id,
                {"deal_id": str(deal.id), "user_id": watcher_id, "is_add": is_add},
            )
        )
        logger.info("deal.watch_changed", extra={"deal_id": str(deal.id), "user_id": watcher_id})
        session.commit()
        return to_read(self.repository.get(session, deal_id))

    def list_deals(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: DealFilters | dict[str, Any] | None = None,
        *,
        skip: int = 0,
        limit: int = 50,
    ) -> list[DealRead]:
        filters = _validate(DealFilters, filters or {})
        if skip < 0 or limit < 1:
            raise ValidationFailureError("skip must be >= 0 and limit >= 1", ["skip", "limit"])
        deals = self.repository.list_deals(session, filters, skip=skip, limit=limit)
        return [to_read(deal) for deal in deals]

    def deals_total_amounts(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: DealFilters | dict[str, Any] | None = None,
    ) -> DealTotalAmountsRead:
        filters = _validate(DealFilters, filters or {})
        deals = self.repository.list_deals(session, filters, limit=None)

        totals: dict[str | None, Decimal] = {}
        for deal in deals:
            totals[deal.currency_code] = totals.get(deal.currency_code, Decimal("0")) + Decimal(str(deal.amount or 0))

        return DealTotalAmountsRead(
            deal_count=len(deals),
            totals=[
                DealCurrencyTotal(currency=currency, amount=float(amount))
                for currency, amount in sorted(totals.items(), key=lambda item: item[0] or "")
            ],
        )

    def remove_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        removed = to_read(self.repository.get(session, deal_id))
        deal = self.repository.soft_delete(session, deal_id, actor_user.user_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="remove",
            before=removed.model_dump(mode="json"),
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("deals.deal.removed", actor_user.user_id, {"deal_id": str(deal.id)}))
        session.commit()
        return removed

    def _record_update(self, actor_user: ActorUser, action: str, before: DealRead, after: DealRead) -> None:
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(after.id),
            action=action,
            before=before.model_dump(mode="json"),
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "deals.deal.updated",
                actor_user.user_id,
                {"deal_id": str(after.id), "stage_id": str(after.stage_id)},
            )
        )


deal_service = DealService()
