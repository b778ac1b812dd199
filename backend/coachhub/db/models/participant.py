from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from ..types import UTCDateTime


class ParticipantRole(str, PyEnum):
    organizer = "organizer"
    participant = "participant"


class ParticipantStatus(str, PyEnum):
    requested = "requested"
    awaiting_payment = "awaiting_payment"
    awaiting_coach = "awaiting_coach"
    accepted = "accepted"
    declined = "declined"
    cancelled = "cancelled"
    completed = "completed"


class ParticipantPaymentStatus(str, PyEnum):
    requires_payment_method = "requires_payment_method"
    authorized = "authorized"
    captured = "captured"
    refunded = "refunded"
    cancelled = "cancelled"


class BookingParticipant(Base):
    __tablename__ = "booking_participants"
    __table_args__ = (
        UniqueConstraint("booking_id", "user_id", name="uq_participant_booking_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    role: Mapped[ParticipantRole] = mapped_column(
        Enum(ParticipantRole), default=ParticipantRole.participant
    )
    status: Mapped[ParticipantStatus] = mapped_column(
        Enum(ParticipantStatus), default=ParticipantStatus.requested
    )
    payment_status: Mapped[ParticipantPaymentStatus] = mapped_column(
        Enum(ParticipantPaymentStatus), default=ParticipantPaymentStatus.requires_payment_method
    )
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    gateway_ref: Mapped[str | None] = mapped_column(String(128))

    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, index=True)
    admitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    authorized_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer)
    joined_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    booking = relationship("Booking", back_populates="participants")
