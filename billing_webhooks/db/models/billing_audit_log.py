from typing import Optional
from sqlalchemy import BigInteger, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from billing_webhooks.db.base import Base, BigIntPK
from billing_webhooks.db.models import TimestampMixin


class BillingAuditLog(Base, TimestampMixin):
    """
    Before/after snapshot of every applied billing change.
    """
    __tablename__ = "billing_audit_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_state: Mapped[dict] = mapped_column(JSON, nullable=False)
    new_state: Mapped[dict] = mapped_column(JSON, nullable=False)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="webhook", nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
