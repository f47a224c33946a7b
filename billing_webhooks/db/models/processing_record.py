from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import DateTime, JSON, String, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from billing_webhooks.db.base import Base, BigIntPK
from billing_webhooks.db.models import TimestampMixin


class ProcessingOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"


class ProcessingRecord(Base, TimestampMixin):
    """
    One row per provider event id that has been committed.
    If external_event_id exists, the webhook was already handled;
    a failed attempt is rolled back and leaves no row.
    """
    __tablename__ = "processing_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    object_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # internal user the event was applied to, if any
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # event.created as sent by the provider
    provider_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)
    outcome: Mapped[Optional[ProcessingOutcome]] = mapped_column(
        SAEnum(ProcessingOutcome), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
