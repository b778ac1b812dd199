from datetime import datetime
from enum import Enum as PyEnum
from sqlalchemy import Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from ..types import UTCDateTime


class BookingPaymentKind(str, PyEnum):
    authorization = "authorization"
    capture = "capture"
    cancellation = "cancellation"
    refund = "refund"


class BookingPayment(Base):
    """Append-only record of one gateway call; rows are never updated."""

    __tablename__ = "booking_payments"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_booking_payment_idempotency_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    participant_id: Mapped[int | None] = mapped_column(
        ForeignKey("booking_participants.id", ondelete="SET NULL")
    )
    kind: Mapped[BookingPaymentKind] = mapped_column(Enum(BookingPaymentKind))
    gateway_ref: Mapped[str] = mapped_column(String(128), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    capture_method: Mapped[str] = mapped_column(String(16), default="manual")
    status: Mapped[str] = mapped_column(String(32))
    idempotency_key: Mapped[str | None] = mapped_column(String(160))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    booking = relationship("Booking", back_populates="payments")
