"""Waitlist-related Pydantic schemas."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    WAITING = "waiting"
    NOTIFIED = "notified"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COOLDOWN = "cooldown"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferOutcome(str, Enum):
    """Machine-readable result of an offer attempt."""
    SENT = "sent"
    NOTIFICATION_FAILED = "notification_failed"
    OFFER_EXISTS = "offer_exists"
    ENTRY_NOT_ELIGIBLE = "entry_not_eligible"
    MISSING_EMPLOYEE = "missing_employee"
    MISSING_CONTACT = "missing_contact"
    NO_CANDIDATE = "no_candidate"


class ClaimResultStatus(str, Enum):
    """Result of resolving a claim link."""
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    INVALID = "invalid"
    SLOT_UNAVAILABLE = "slot_unavailable"


class JoinWaitlistRequest(BaseModel):
    """Request schema for joining a waitlist."""

    salon_id: UUID = Field(..., description="Salon to wait at")
    service_id: UUID = Field(..., description="Requested service")
    employee_id: UUID | None = Field(None, description="Preferred employee, any when omitted")
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_phone: str | None = Field(None, max_length=32)
    customer_email: str | None = Field(None, max_length=255)
    preferred_date: date = Field(..., description="Day the customer wants")
    preferred_time_start: time | None = Field(None, description="Earliest acceptable start")
    preferred_time_end: time | None = Field(None, description="Latest acceptable end")

    @model_validator(mode="after")
    def check_contact_and_window(self) -> "JoinWaitlistRequest":
        if not self.customer_phone and not self.customer_email:
            raise ValueError("customer_phone or customer_email is required")
        if (
            self.preferred_time_start is not None
            and self.preferred_time_end is not None
            and self.preferred_time_end <= self.preferred_time_start
        ):
            raise ValueError("preferred_time_end must be after preferred_time_start")
        return self


class ListWaitlistRequest(BaseModel):
    """Request schema for listing waitlist entries."""

    salon_id: UUID
    status: WaitlistStatus | None = Field(None, description="Filter by status")
    preferred_date: date | None = Field(None, description="Filter by day")


class CancelWaitlistRequest(BaseModel):
    """Request schema for removing a customer from the waitlist."""

    salon_id: UUID
    entry_id: UUID


class NotifyWaitlistRequest(BaseModel):
    """Request schema for manually offering a slot to one entry."""

    salon_id: UUID
    entry_id: UUID = Field(..., description="Entry to notify")
    employee_id: UUID | None = Field(None, description="Employee of the slot; defaults to the entry's")
    slot_start: datetime = Field(..., description="Start of the offered slot")
    slot_end: datetime | None = Field(None, description="End of the offered slot; defaults to service duration")


class SweepRequest(BaseModel):
    """Request schema for the expiry and reminder sweep."""

    batch_size: int = Field(100, ge=1, le=1000)
    send_reminders: bool = Field(True)


class SweepResponse(BaseModel):
    """Counters from one sweep run."""

    expired_offers: int = 0
    released_entries: int = 0
    chained_offers: int = 0
    reactivated_entries: int = 0
    reminders_sent: int = 0


class WaitlistEntry(BaseModel):
    """Waitlist entry response schema."""

    id: UUID = Field(..., description="Unique waitlist entry ID")
    salon_id: UUID
    service_id: UUID
    employee_id: UUID | None = None
    customer_name: str
    customer_phone: str | None = None
    customer_email: str | None = None
    preferred_date: date
    preferred_time_start: time | None = None
    preferred_time_end: time | None = None
    status: WaitlistStatus
    notified_at: datetime | None = Field(None, description="Notification time (ISO 8601)")
    expires_at: datetime | None = Field(None, description="Offer deadline (ISO 8601)")
    decline_count: int = Field(0, description="Offers that timed out unanswered")
    cooldown_until: datetime | None = Field(None, description="End of the current cooldown (ISO 8601)")
    created_at: datetime = Field(..., description="Entry creation time (ISO 8601)")

    class Config:
        from_attributes = True


class ListWaitlistResponse(BaseModel):
    """Entries ordered oldest first."""

    items: list[WaitlistEntry] = Field(default_factory=list)


class OfferResult(BaseModel):
    """Outcome of creating and delivering a waitlist offer."""

    notified: bool = Field(..., description="True when at least one channel delivered")
    outcome: OfferOutcome
    entry: WaitlistEntry | None = None
    offer_id: UUID | None = None
    error: str | None = None
    warning: str | None = None


class ClaimRequest(BaseModel):
    """Request schema for resolving a claim link."""

    action: str = Field(..., max_length=16, description="accept or decline")
    token: str = Field(..., min_length=1, max_length=128)
    channel: str = Field("web", max_length=32, description="Where the response came from")


class ClaimResponse(BaseModel):
    """Claim resolution result."""

    ok: bool
    message: str
    result_status: ClaimResultStatus
