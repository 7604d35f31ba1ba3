"""Booking model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, utcnow


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


# Statuses whose window blocks the employee's calendar
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.SCHEDULED.value,
)


class Booking(Base):
    """Appointment occupying the half-open window [start_time, end_time)."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    employee_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("services.id", ondelete="RESTRICT"),
        nullable=False
    )

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.CONFIRMED.value,
        index=True
    )
    is_walk_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Customer details are copied onto the booking
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Set when the booking came from an accepted waitlist offer
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("waitlist_entries.id", ondelete="SET NULL"),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_booking_window"),
        CheckConstraint("length(customer_name) > 0", name="ck_booking_customer_name_not_empty"),
        Index("ix_bookings_employee_window", "employee_id", "start_time", "end_time"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, employee_id={self.employee_id}, "
            f"start_time={self.start_time}, end_time={self.end_time}, status={self.status})>"
        )
