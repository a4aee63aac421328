from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealboard.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Board(Base):
    __tablename__ = "board"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pipelines: Mapped[list[Pipeline]] = relationship(
        "Pipeline",
        back_populates="board",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Pipeline(Base):
    __tablename__ = "pipeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    board_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("board.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    board: Mapped[Board] = relationship("Board", back_populates="pipelines")
    stages: Mapped[list[PipelineStage]] = relationship(
        "PipelineStage",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PipelineStage(Base):
    __tablename__ = "pipeline_stage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pipeline: Mapped[Pipeline] = relationship("Pipeline", back_populates="stages")


class Deal(Base):
    __tablename__ = "deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    stage_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline_stage.id", ondelete="RESTRICT"),
        nullable=False,
    )
    initial_stage_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    order: Mapped[int] = mapped_column("sort_order", Integer, nullable=False, default=0, server_default="0")
    source_conversation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assigned_user_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    label_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str | None] = mapped_column(String(32), nullable=True)
    currency_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    amount: Mapped[float] = mapped_column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    reminder_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    modified_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    stage: Mapped[PipelineStage] = relationship("PipelineStage")
    watchers: Mapped[list[DealWatcher]] = relationship(
        "DealWatcher",
        back_populates="deal",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    @property
    def watched_user_ids(self) -> frozenset[str]:
        return frozenset(watcher.user_id for watcher in self.watchers)

    __table_args__ = (
        UniqueConstraint("source_conversation_id", name="uq_deal_source_conversation_id"),
    )


class DealWatcher(Base):
    __tablename__ = "deal_watcher"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("deal.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    deal: Mapped[Deal] = relationship("Deal", back_populates="watchers")

    __table_args__ = (
        UniqueConstraint("deal_id", "user_id", name="uq_deal_watcher_deal_user"),
    )


Index("ix_pipeline_board_id", Pipeline.board_id)
Index("ix_pipeline_stage_pipeline_id", PipelineStage.pipeline_id)
Index("ix_deal_stage_order", Deal.stage_id, Deal.order, Deal.created_at)
Index("ix_deal_initial_stage_id", Deal.initial_stage_id)
Index("ix_deal_watcher_user_id", DealWatcher.user_id)
