from datetime import datetime
from pydantic import BaseModel, Field


class PaymentRequest(BaseModel):
    idempotency_key: str | None = Field(default=None, max_length=128)


class RefundRequest(BaseModel):
    amount_cents: int | None = None
    participant_id: int | None = None
    reason: str | None = None


class BookingPayment(BaseModel):
    id: int
    booking_id: int
    participant_id: int | None = None
    kind: str
    gateway_ref: str
    amount_cents: int
    currency: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class SweepResult(BaseModel):
    expired_requests: int
    expired_bookings: int
    expired_participants: int
    released_authorizations: int
    reminders_sent: int
    completed: int
    locks_cleared: int
    skipped: int
    errors: int
