"""Derived calendar schemas."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class SegmentType(str, Enum):
    """Kind of span in an employee's day."""
    WORKING = "working"
    CLOSED = "closed"
    BREAK = "break"
    TIME_BLOCK = "time_block"
    BUFFER = "buffer"


class ScheduleSegment(BaseModel):
    """Half-open span [start_time, end_time) of one employee's day."""

    segment_type: SegmentType
    start_time: datetime
    end_time: datetime
    employee_id: UUID
    label: str | None = None


class BookedInterval(BaseModel):
    """Existing active booking in the day."""

    booking_id: UUID
    start_time: datetime
    end_time: datetime


class DaySchedule(BaseModel):
    """Everything the slot finder needs to know about one employee on one day."""

    employee_id: UUID
    day: date = Field(..., description="Salon-local calendar day")
    day_start: datetime = Field(..., description="Local midnight of the day as naive UTC")
    segments: list[ScheduleSegment] = Field(default_factory=list)
    bookings: list[BookedInterval] = Field(default_factory=list)

    def of_type(self, segment_type: SegmentType) -> list[ScheduleSegment]:
        return [s for s in self.segments if s.segment_type == segment_type]
