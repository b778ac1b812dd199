from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import CheckConstraint, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from ..types import UTCDateTime


class BookingType(str, PyEnum):
    individual = "individual"
    private_group = "private_group"
    public_group = "public_group"


class ApprovalStatus(str, PyEnum):
    pending_review = "pending_review"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"
    cancelled = "cancelled"


class FulfillmentStatus(str, PyEnum):
    scheduled = "scheduled"
    completed = "completed"
    disputed = "disputed"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_booking_idempotency_key"),
        CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_booking_schedule_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coach_id: Mapped[int] = mapped_column(Integer, index=True)
    booking_type: Mapped[BookingType] = mapped_column(Enum(BookingType))

    scheduled_start_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    scheduled_end_at: Mapped[datetime] = mapped_column(UTCDateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    location_name: Mapped[str | None] = mapped_column(String(255))
    location_address: Mapped[str | None] = mapped_column(String(255))
    location_notes: Mapped[str | None] = mapped_column(Text)
    client_message: Mapped[str | None] = mapped_column(Text)
    recurring_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_lesson_templates.id", ondelete="SET NULL"), index=True
    )

    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus), default=ApprovalStatus.pending_review, index=True
    )
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        Enum(FulfillmentStatus), default=FulfillmentStatus.scheduled
    )
    response_due_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    locked_until: Mapped[datetime | None] = mapped_column(UTCDateTime)
    idempotency_key: Mapped[str | None] = mapped_column(String(128))

    coach_responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_by: Mapped[str | None] = mapped_column(String(64))
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255))
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    dispute_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    individual_details = relationship(
        "IndividualBookingDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    private_group_details = relationship(
        "PrivateGroupBookingDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    public_group_details = relationship(
        "PublicGroupLessonDetails",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    participants = relationship(
        "BookingParticipant",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingParticipant.id",
    )
    payments = relationship(
        "BookingPayment",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingPayment.id",
    )
    transitions = relationship(
        "BookingStateTransition",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingStateTransition.id",
    )
    recurring_template = relationship("RecurringLessonTemplate", back_populates="lessons")

    @property
    def details(self):
        if self.booking_type == BookingType.individual:
            return self.individual_details
        if self.booking_type == BookingType.private_group:
            return self.private_group_details
        if self.booking_type == BookingType.public_group:
            return self.public_group_details
        raise ValueError(f"Unsupported booking type {self.booking_type}")

    @property
    def payer_id(self) -> int | None:
        if self.booking_type == BookingType.individual:
            return self.individual_details.client_id
        if self.booking_type == BookingType.private_group:
            return self.private_group_details.organizer_id
        if self.booking_type == BookingType.public_group:
            return None
        raise ValueError(f"Unsupported booking type {self.booking_type}")
