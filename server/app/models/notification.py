"""SMS delivery log used to make claim-link sends idempotent."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, utcnow


class SmsDelivery(Base):
    """One row per idempotency key; a second send with the same key is not dispatched."""

    __tablename__ = "sms_deliveries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    salon_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    recipient: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("length(idempotency_key) > 0", name="ck_sms_idempotency_key_not_empty"),
    )

    def __repr__(self) -> str:
        return f"<SmsDelivery(key='{self.idempotency_key}', status={self.status})>"
