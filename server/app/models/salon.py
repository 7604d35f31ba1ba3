"""Salon, employee and service model definitions."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Integer, String, Table, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base, utcnow

if TYPE_CHECKING:
    from .schedule import EmployeeBreak, Shift


employee_services = Table(
    "employee_services",
    Base.metadata,
    Column("employee_id", Uuid, ForeignKey("employees.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", Uuid, ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


class Salon(Base):
    """Tenant owning employees, services, bookings and waitlists."""

    __tablename__ = "salons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    # IANA name; opening hours, shifts, breaks and waitlist dates are wall-clock in this zone
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("length(slug) > 0", name="ck_salon_slug_not_empty"),
    )

    def __repr__(self) -> str:
        return f"<Salon(id={self.id}, slug='{self.slug}')>"


class Employee(Base):
    """Staff member whose calendar holds bookings."""

    __tablename__ = "employees"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    services: Mapped[list["Service"]] = relationship(
        "Service", secondary=employee_services, back_populates="employees"
    )
    shifts: Mapped[list["Shift"]] = relationship("Shift", back_populates="employee")
    breaks: Mapped[list["EmployeeBreak"]] = relationship("EmployeeBreak", back_populates="employee")

    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, full_name='{self.full_name}')>"


class Service(Base):
    """Bookable service with its duration and surrounding buffers."""

    __tablename__ = "services"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    salon_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("salons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    prep_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cleanup_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_service_duration_positive"),
        CheckConstraint("prep_minutes >= 0", name="ck_service_prep_non_negative"),
        CheckConstraint("cleanup_minutes >= 0", name="ck_service_cleanup_non_negative"),
    )

    employees: Mapped[list["Employee"]] = relationship(
        "Employee", secondary=employee_services, back_populates="services"
    )

    def __repr__(self) -> str:
        return (
            f"<Service(id={self.id}, name='{self.name}', "
            f"duration_minutes={self.duration_minutes})>"
        )
