from datetime import date, time
from pydantic import BaseModel, Field

from .booking import Location


class RecurringLessonCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    weekday: int = Field(ge=0, le=6)
    start_time: time
    duration_minutes: int
    max_participants: int
    min_participants: int = 1
    price_per_person_cents: int
    starts_on: date
    ends_on: date | None = None
    location: Location | None = None
    coach_id: int | None = None


class RecurringLessonUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    weekday: int | None = Field(default=None, ge=0, le=6)
    start_time: time | None = None
    duration_minutes: int | None = None
    max_participants: int | None = None
    min_participants: int | None = None
    price_per_person_cents: int | None = None
    ends_on: date | None = None
    location: Location | None = None


class RecurringLessonCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class RecurringLessonResponse(BaseModel):
    template_id: int
    created_booking_ids: list[int] = []
    cancelled_booking_ids: list[int] = []
    kept_booking_ids: list[int] = []
    skipped: dict[str, str] = {}


class RecurringLesson(BaseModel):
    id: int
    coach_id: int
    title: str
    description: str | None = None
    weekday: int
    start_time: time
    duration_minutes: int
    max_participants: int
    min_participants: int
    price_per_person_cents: int
    starts_on: date
    ends_on: date | None = None
    is_active: bool
    lesson_ids: list[int] = []

    class Config:
        from_attributes = True
