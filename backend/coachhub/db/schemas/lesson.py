from datetime import datetime
from pydantic import BaseModel, Field

from .booking import Location


class PublicLessonCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    max_participants: int
    min_participants: int = 1
    price_per_person_cents: int
    location: Location | None = None
    coach_id: int | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class LessonJoin(BaseModel):
    idempotency_key: str | None = Field(default=None, max_length=128)


class Lesson(BaseModel):
    id: int
    coach_id: int
    title: str
    description: str | None = None
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    approval_status: str
    fulfillment_status: str
    capacity_status: str
    max_participants: int
    current_participants: int
    price_per_person_cents: int
    currency: str
