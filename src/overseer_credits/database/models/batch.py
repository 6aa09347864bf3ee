"""Batch models: BatchJob, BatchItemResult."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, CreditAmount, _generate_uuid, utcnow


class BatchJob(Base):
    """A multi-item completion job with its own credit reservation."""

    __tablename__ = "batch_jobs"
    __table_args__ = (Index("ix_batch_jobs_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    agent_id: Mapped[str | None] = mapped_column(String(255))

    # pending, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_pre_authorized: Mapped[Decimal] = mapped_column(
        CreditAmount,
        default=Decimal(0),
        nullable=False,
    )
    credits_used: Mapped[Decimal] = mapped_column(CreditAmount, default=Decimal(0), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column()


class BatchItemResult(Base):
    """Output of one successfully processed batch item."""

    __tablename__ = "batch_item_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("batch_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Position of the item in the submitted batch
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    input_content: Mapped[str] = mapped_column(Text, nullable=False)
    output_content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
