"""Slot search Pydantic schemas."""

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, Field


class SearchSlotsRequest(BaseModel):
    """Request schema for finding the first available slots of a service."""

    salon_id: UUID = Field(..., description="Salon to search")
    service_id: UUID = Field(..., description="Service to fit")
    employee_id: UUID | None = Field(None, description="Restrict the search to one employee")
    date_from: datetime | date = Field(..., description="Earliest slot start (date or ISO 8601 datetime)")
    date_to: date | None = Field(None, description="Last day searched, inclusive")
    limit: int = Field(10, ge=1, le=50, description="Maximum slots returned")


class AvailableSlot(BaseModel):
    """Bookable start time for one employee."""

    employee_id: UUID
    employee_name: str
    slot_start: datetime
    slot_end: datetime


class SearchSlotsResponse(BaseModel):
    """Slots ordered by start time, then employee."""

    items: list[AvailableSlot] = Field(default_factory=list)
