"""Booking-related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from .waitlist import OfferResult


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class ConflictCode(str, Enum):
    """What a proposed booking window collides with."""
    OVERLAPS_BOOKING = "overlaps_booking"
    OVERLAPS_TIME_BLOCK = "overlaps_time_block"
    OVERLAPS_BREAK = "overlaps_break"


class ValidateBookingRequest(BaseModel):
    """Request schema for validating a new or moved booking window."""

    booking_id: UUID | None = Field(None, description="Booking being moved, excluded from the check")
    employee_id: UUID = Field(..., description="Employee whose calendar is checked")
    start_time: datetime = Field(..., description="Proposed start (ISO 8601)")
    end_time: datetime = Field(..., description="Proposed end (ISO 8601)")


class Conflict(BaseModel):
    """One collision found for a proposed window."""

    message_code: ConflictCode = Field(..., description="Conflict kind")
    message: str = Field(..., description="Human-readable description")
    start_time: datetime = Field(..., description="Start of the conflicting window")
    end_time: datetime = Field(..., description="End of the conflicting window")
    booking_id: UUID | None = Field(None, description="Conflicting booking")
    customer_name: str | None = Field(None, description="Customer of the conflicting booking")
    service_name: str | None = Field(None, description="Service of the conflicting booking")
    title: str | None = Field(None, description="Time block title")
    label: str | None = Field(None, description="Break label")


class SuggestedSlot(BaseModel):
    """Alternative window of the same duration."""

    start_time: datetime
    end_time: datetime


class ValidateBookingResponse(BaseModel):
    """Conflict check result."""

    is_valid: bool = Field(..., description="True when no conflicts were found")
    conflicts: list[Conflict] = Field(default_factory=list)
    suggested_slots: list[SuggestedSlot] = Field(default_factory=list)


class CreateBookingRequest(BaseModel):
    """Request schema for creating a booking."""

    salon_id: UUID = Field(..., description="Salon the booking belongs to")
    employee_id: UUID = Field(..., description="Employee performing the service")
    service_id: UUID = Field(..., description="Service being booked")
    start_time: datetime = Field(..., description="Appointment start (ISO 8601)")
    end_time: datetime | None = Field(
        None, description="Appointment end; defaults to start plus the service duration"
    )
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_phone: str | None = Field(None, max_length=32)
    customer_email: str | None = Field(None, max_length=255)
    notes: str | None = Field(None, max_length=2000)
    is_walk_in: bool = Field(False)

    @model_validator(mode="after")
    def check_window(self) -> "CreateBookingRequest":
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: UUID = Field(..., description="Booking to cancel")
    notify_waitlist: bool = Field(True, description="Offer the freed slot to the waitlist")


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: UUID = Field(..., description="Booking to retrieve")


class Booking(BaseModel):
    """Booking response schema."""

    id: UUID = Field(..., description="Unique booking ID")
    salon_id: UUID
    employee_id: UUID
    service_id: UUID
    start_time: datetime = Field(..., description="Appointment start (ISO 8601)")
    end_time: datetime = Field(..., description="Appointment end (ISO 8601)")
    status: BookingStatus = Field(..., description="Booking status")
    is_walk_in: bool
    notes: str | None = None
    customer_name: str
    customer_phone: str | None = None
    customer_email: str | None = None
    waitlist_entry_id: UUID | None = None
    created_at: datetime = Field(..., description="Booking creation time (ISO 8601)")

    class Config:
        from_attributes = True


class CancelBookingResponse(BaseModel):
    """Cancelled booking plus the waitlist offer it triggered, if any."""

    booking: Booking
    waitlist_offer: OfferResult | None = Field(None, description="Offer sent for the freed slot")
