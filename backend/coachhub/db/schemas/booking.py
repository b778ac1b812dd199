from datetime import datetime
from pydantic import BaseModel, Field


class Location(BaseModel):
    name: str | None = None
    address: str | None = None
    notes: str | None = None


class BookingRequestBase(BaseModel):
    coach_id: int
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    location: Location | None = None
    client_message: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class IndividualBookingCreate(BookingRequestBase):
    price_cents: int


class PrivateGroupBookingCreate(BookingRequestBase):
    price_per_person_cents: int
    invitee_ids: list[int]


class BookingDecision(BaseModel):
    reason: str | None = None
    participant_id: int | None = None


class BookingCancel(BaseModel):
    reason: str | None = None


class DisputeCreate(BaseModel):
    reason: str = Field(min_length=1)


class Participant(BaseModel):
    id: int
    user_id: int
    role: str
    status: str
    payment_status: str
    amount_cents: int
    currency: str
    expires_at: datetime | None = None
    joined_at: datetime

    class Config:
        from_attributes = True


class StateTransition(BaseModel):
    id: int
    participant_id: int | None = None
    field: str
    old_value: str | None = None
    new_value: str
    changed_by: str
    actor_role: str
    reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class Booking(BaseModel):
    id: int
    booking_type: str
    coach_id: int
    approval_status: str
    fulfillment_status: str
    payment_status: str | None = None
    capacity_status: str | None = None
    scheduled_start_at: datetime
    scheduled_end_at: datetime
    duration_minutes: int
    location: Location
    response_due_at: datetime | None = None
    payment_due_at: datetime | None = None
    client_charge_cents: int | None = None
    currency: str
    cancellation_reason: str | None = None
    dispute_reason: str | None = None
    participants: list[Participant] = []


class ActionResponse(BaseModel):
    booking_id: int | None = None
    participant_id: int | None = None
    created: bool = False
    client_secret: str | None = None
