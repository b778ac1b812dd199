from datetime import date, datetime, time
from sqlalchemy import Boolean, CheckConstraint, Date, Integer, String, Text, Time, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from ..session import Base
from ..types import UTCDateTime


class RecurringLessonTemplate(Base):
    """Weekly public lesson; ``weekday`` counts from Monday and ``start_time`` is UTC."""

    __tablename__ = "recurring_lesson_templates"
    __table_args__ = (
        CheckConstraint("weekday BETWEEN 0 AND 6", name="ck_recurring_lesson_weekday"),
        CheckConstraint("duration_minutes > 0", name="ck_recurring_lesson_duration_positive"),
        CheckConstraint(
            "min_participants >= 1 AND min_participants <= max_participants",
            name="ck_recurring_lesson_participant_bounds",
        ),
        CheckConstraint("ends_on IS NULL OR ends_on >= starts_on", name="ck_recurring_lesson_date_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coach_id: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    weekday: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[time] = mapped_column(Time)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    max_participants: Mapped[int] = mapped_column(Integer)
    min_participants: Mapped[int] = mapped_column(Integer, default=1)
    price_per_person_cents: Mapped[int] = mapped_column(Integer)
    location_name: Mapped[str | None] = mapped_column(String(255))
    location_address: Mapped[str | None] = mapped_column(String(255))
    location_notes: Mapped[str | None] = mapped_column(Text)
    starts_on: Mapped[date] = mapped_column(Date)
    ends_on: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # bumped on every edit so regenerated lessons get fresh idempotency keys
    revision: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    lessons = relationship("Booking", back_populates="recurring_template", order_by="Booking.scheduled_start_at")

    @property
    def location(self) -> dict[str, str]:
        values = {
            "name": self.location_name,
            "address": self.location_address,
            "notes": self.location_notes,
        }
        return {key: value for key, value in values.items() if value}
