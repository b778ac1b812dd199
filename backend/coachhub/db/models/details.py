from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from ..types import UTCDateTime


class PaymentStatus(str, PyEnum):
    not_required = "not_required"
    awaiting_client_payment = "awaiting_client_payment"
    authorized = "authorized"
    captured = "captured"
    refunded = "refunded"
    failed = "failed"


class CapacityStatus(str, PyEnum):
    open = "open"
    full = "full"
    closed = "closed"


class ChargedDetailsMixin:
    """Price breakdown and single-payer payment state shared by individual and private bookings."""

    client_charge_cents: Mapped[int] = mapped_column(Integer)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    coach_payout_cents: Mapped[int] = mapped_column(Integer)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="usd")

    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.not_required
    )
    payment_due_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    payment_reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    gateway_ref: Mapped[str | None] = mapped_column(String(128))
    authorized_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refund_amount_cents: Mapped[int | None] = mapped_column(Integer)


class IndividualBookingDetails(ChargedDetailsMixin, Base):
    __tablename__ = "individual_booking_details"

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    client_id: Mapped[int] = mapped_column(Integer, index=True)

    booking = relationship("Booking", back_populates="individual_details")


class PrivateGroupBookingDetails(ChargedDetailsMixin, Base):
    __tablename__ = "private_group_booking_details"
    __table_args__ = (
        CheckConstraint("total_participants >= 2", name="ck_private_group_min_size"),
    )

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    organizer_id: Mapped[int] = mapped_column(Integer, index=True)
    total_participants: Mapped[int] = mapped_column(Integer)
    price_per_person_cents: Mapped[int] = mapped_column(Integer)

    booking = relationship("Booking", back_populates="private_group_details")


class PublicGroupLessonDetails(Base):
    __tablename__ = "public_group_lesson_details"
    __table_args__ = (
        CheckConstraint("current_participants >= 0", name="ck_public_current_non_negative"),
        CheckConstraint(
            "current_participants <= max_participants", name="ck_public_current_within_max"
        ),
        CheckConstraint("authorized_participants >= 0", name="ck_public_authorized_non_negative"),
        CheckConstraint("captured_participants >= 0", name="ck_public_captured_non_negative"),
        CheckConstraint("min_participants <= max_participants", name="ck_public_min_within_max"),
    )

    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True
    )
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    max_participants: Mapped[int] = mapped_column(Integer)
    min_participants: Mapped[int] = mapped_column(Integer, default=1)
    price_per_person_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="usd")

    capacity_status: Mapped[CapacityStatus] = mapped_column(
        Enum(CapacityStatus), default=CapacityStatus.open
    )
    current_participants: Mapped[int] = mapped_column(Integer, default=0)
    authorized_participants: Mapped[int] = mapped_column(Integer, default=0)
    captured_participants: Mapped[int] = mapped_column(Integer, default=0)

    booking = relationship("Booking", back_populates="public_group_details")
