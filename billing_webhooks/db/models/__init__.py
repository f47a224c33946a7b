from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )


from .user import User
from .processing_record import ProcessingRecord, ProcessingOutcome
from .billing_audit_log import BillingAuditLog

__all__ = ["TimestampMixin", "User", "ProcessingRecord", "ProcessingOutcome", "BillingAuditLog"]
