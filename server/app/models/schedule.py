"""Opening hours, shifts, breaks and time blocks."""

from datetime import datetime, time
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base, utcnow

if TYPE_CHECKING:
    from .salon import Employee


class OpeningHours(Base):
    """Salon business hours for one weekday (0 = Monday)."""

    __tablename__ = "opening_hours"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    opens_at: Mapped[time] = mapped_column(Time, nullable=False)
    closes_at: Mapped[time] = mapped_column(Time, nullable=False)

    __table_args__ = (
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_opening_hours_weekday"),
        CheckConstraint("opens_at < closes_at", name="ck_opening_hours_window"),
    )


class Shift(Base):
    """Recurring working hours of an employee for one weekday."""

    __tablename__ = "shifts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    starts_at: Mapped[time] = mapped_column(Time, nullable=False)
    ends_at: Mapped[time] = mapped_column(Time, nullable=False)

    __table_args__ = (
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_shift_weekday"),
        CheckConstraint("starts_at < ends_at", name="ck_shift_window"),
    )

    employee: Mapped["Employee"] = relationship("Employee", back_populates="shifts")


class EmployeeBreak(Base):
    """Recurring break; a null weekday applies to every day."""

    __tablename__ = "employee_breaks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    weekday: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[time] = mapped_column(Time, nullable=False)
    ends_at: Mapped[time] = mapped_column(Time, nullable=False)
    label: Mapped[str] = mapped_column(String(128), nullable=False, default="Break")

    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="ck_break_window"),
    )

    employee: Mapped["Employee"] = relationship("Employee", back_populates="breaks")


class TimeBlock(Base):
    """One-off blocked span in an employee calendar (vacation, training, ...)."""

    __tablename__ = "time_blocks"

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
        nullable=False,
        index=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_time_block_window"),
    )

    def __repr__(self) -> str:
        return (
            f"<TimeBlock(id={self.id}, employee_id={self.employee_id}, "
            f"start_time={self.start_time}, end_time={self.end_time})>"
        )
