"""Payment audit trail model. Rows are inserted, never updated."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.marketplace_service.models.enums import AuditEventType, enum_values
from sqlalchemy import JSON, BigInteger, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class PaymentAuditEvent(Base):
    __tablename__ = "payment_audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True, nullable=True
    )
    event: Mapped[AuditEventType] = mapped_column(
        SAEnum(
            AuditEventType,
            values_callable=enum_values,
            name="payment_audit_event_enum",
            validate_strings=True,
        ),
        nullable=False,
    )
    amount_kobo: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    expected_amount_kobo: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    # "metadata" is reserved by SQLAlchemy's Declarative API
    event_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", JSON, nullable=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True, nullable=False
    )

    __table_args__ = (
        Index("ix_payment_audit_events_event_timestamp", "event", "timestamp"),
    )

    def __repr__(self):
        return f"<PaymentAuditEvent {self.event} ref={self.reference}>"
