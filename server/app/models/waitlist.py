"""Waitlist entry, offer, lifecycle event and policy model definitions."""

from datetime import date, datetime, time
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, utcnow


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    WAITING = "waiting"
    NOTIFIED = "notified"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COOLDOWN = "cooldown"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    """Waitlist offer status enumeration."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    NOTIFICATION_FAILED = "notification_failed"


class OfferTrigger(str, Enum):
    """What caused an offer to be created."""
    BOOKING_CANCELLATION = "booking_cancellation"
    MANUAL_NOTIFY = "manual_notify"
    LIFECYCLE_CHAIN = "lifecycle_chain"


class WaitlistEntry(Base):
    """Customer waiting for a service on a given date, optionally with one employee."""

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    service_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    employee_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True
    )

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    preferred_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    preferred_time_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    preferred_time_end: Mapped[time | None] = mapped_column(Time, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=WaitlistStatus.WAITING.value,
        index=True
    )
    notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    decline_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cooldown_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    # Index for FIFO ordering
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("length(customer_name) > 0", name="ck_waitlist_customer_name_not_empty"),
        CheckConstraint("decline_count >= 0", name="ck_waitlist_decline_count_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, service_id={self.service_id}, "
            f"preferred_date={self.preferred_date}, status={self.status})>"
        )


class WaitlistOffer(Base):
    """
    Time-boxed, single-use invitation for one waitlist entry to claim one freed slot.

    The partial unique indexes are the store-level guards: one pending offer per
    (salon, employee, slot_start) and one pending offer per entry.
    """

    __tablename__ = "waitlist_offers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    waitlist_entry_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("waitlist_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    service_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False
    )

    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    slot_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # HMAC of the claim token; the raw token is never stored
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=OfferStatus.PENDING.value,
        index=True
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    response_channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    booking_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("attempt_no > 0", name="ck_offer_attempt_positive"),
        CheckConstraint("slot_start < slot_end", name="ck_offer_slot_window"),
        UniqueConstraint(
            "waitlist_entry_id", "slot_start", "attempt_no",
            name="uq_offer_entry_slot_attempt"
        ),
        Index(
            "uq_offer_pending_slot",
            "salon_id", "employee_id", "slot_start",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index(
            "uq_offer_pending_entry",
            "waitlist_entry_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistOffer(id={self.id}, entry={self.waitlist_entry_id}, "
            f"slot_start={self.slot_start}, status={self.status}, attempt_no={self.attempt_no})>"
        )


class WaitlistLifecycleEvent(Base):
    """Append-only audit row for one waitlist entry status transition."""

    __tablename__ = "waitlist_lifecycle_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    waitlist_entry_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("waitlist_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    salon_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<WaitlistLifecycleEvent(entry={self.waitlist_entry_id}, "
            f"{self.from_status}->{self.to_status}, reason='{self.reason}')>"
        )


class WaitlistPolicy(Base):
    """Per-salon (service_id null) or per-service waitlist rules."""

    __tablename__ = "waitlist_policies"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    service_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=True
    )
    claim_expiry_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requeue_on_decline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requeue_on_expiry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Null falls back to the settings defaults
    cooldown_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passive_decline_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passive_cooldown_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "claim_expiry_minutes IS NULL OR claim_expiry_minutes > 0",
            name="ck_policy_claim_expiry_positive"
        ),
        CheckConstraint(
            "cooldown_minutes IS NULL OR cooldown_minutes >= 0",
            name="ck_policy_cooldown_non_negative"
        ),
        CheckConstraint(
            "passive_decline_threshold IS NULL OR passive_decline_threshold > 0",
            name="ck_policy_passive_threshold_positive"
        ),
        CheckConstraint(
            "passive_cooldown_minutes IS NULL OR passive_cooldown_minutes >= 0",
            name="ck_policy_passive_cooldown_non_negative"
        ),
        UniqueConstraint("salon_id", "service_id", name="uq_policy_salon_service"),
    )
