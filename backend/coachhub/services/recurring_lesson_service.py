"""Weekly public lesson templates.

A template produces one public lesson per week between ``starts_on`` and
``ends_on`` (or ``RECURRING_HORIZON`` after ``starts_on`` when open ended).
Every lesson goes through ``booking_service.create_public_lesson`` and is
cancelled through ``booking_service.cancel_booking``, so generated lessons
follow the same lifecycle as lessons created one at a time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
import functools
import logging
from typing import Any, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.constants import (
    MAX_GROUP_SIZE,
    MAX_LESSON_MINUTES,
    MAX_RECURRING_OCCURRENCES,
    MIN_LESSON_MINUTES,
    RECURRING_CANCELLED_REASON,
    RECURRING_HORIZON,
    RECURRING_RESCHEDULED_REASON,
)
from ..core.errors import BookingError, GuardViolation, InvalidTransition, NotFound
from ..core.security import Principal, Role
from ..db import models
from ..db.models import ApprovalStatus, FulfillmentStatus
from . import booking_service, ledger
from .booking_service import ACTIVE_PARTICIPANT_STATUSES
from .notification_service import NotificationIntent
from .payments import BasePaymentGateway

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "weekday",
        "start_time",
        "duration_minutes",
        "max_participants",
        "min_participants",
        "price_per_person_cents",
        "location",
        "ends_on",
    }
)
NULLABLE_FIELDS = frozenset({"description", "ends_on", "location"})


@dataclass(slots=True)
class RecurringResult:
    ok: bool
    template_id: int | None = None
    created_booking_ids: list[int] = field(default_factory=list)
    cancelled_booking_ids: list[int] = field(default_factory=list)
    kept_booking_ids: list[int] = field(default_factory=list)
    # occurrence start (ISO) -> reason the lesson was not created or cancelled
    skipped: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    reason_code: str | None = None
    reason: str | None = None
    notifications: list[NotificationIntent] = field(default_factory=list)

    @classmethod
    def failure(cls, exc: BookingError, template_id: int | None = None) -> RecurringResult:
        return cls(
            ok=False,
            template_id=template_id,
            error_code=exc.code,
            reason_code=exc.reason_code,
            reason=exc.message,
        )


def template_action(func):
    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs) -> RecurringResult:
        try:
            return func(db, *args, **kwargs)
        except BookingError as exc:
            db.rollback()
            logger.info(
                "Recurring lesson action rejected: %s",
                exc,
                extra={"action": func.__name__, "error_code": exc.code},
            )
            return RecurringResult.failure(exc, template_id=kwargs.get("template_id"))

    return wrapper


def _validate(
    *,
    weekday: int,
    duration_minutes: int,
    max_participants: int,
    min_participants: int,
    price_per_person_cents: int,
    starts_on: date,
    ends_on: date | None,
) -> None:
    if not 0 <= weekday <= 6:
        raise GuardViolation("invalid_schedule", "Weekday must be between 0 (Monday) and 6 (Sunday)")
    if not MIN_LESSON_MINUTES <= duration_minutes <= MAX_LESSON_MINUTES:
        raise GuardViolation(
            "invalid_schedule",
            f"Lessons last between {MIN_LESSON_MINUTES} and {MAX_LESSON_MINUTES} minutes",
        )
    if ends_on is not None and ends_on < starts_on:
        raise GuardViolation("invalid_schedule", "The last date is before the first date")
    if not 1 <= min_participants <= max_participants <= MAX_GROUP_SIZE:
        raise GuardViolation(
            "invalid_group_size",
            f"Lessons take between 1 and {MAX_GROUP_SIZE} participants",
        )
    if price_per_person_cents <= 0:
        raise GuardViolation("invalid_price", "Price must be positive")


def _load_template(db: Session, principal: Principal, template_id: int) -> models.RecurringLessonTemplate:
    template = db.get(models.RecurringLessonTemplate, template_id)
    if template is None:
        raise NotFound(f"Recurring lesson {template_id} not found")
    if principal.role != Role.admin and principal.user_id != template.coach_id:
        raise GuardViolation("forbidden_role", "You do not own this recurring lesson")
    return template


def occurrences(
    template: models.RecurringLessonTemplate, *, now: datetime
) -> Iterator[tuple[datetime, datetime]]:
    """Yield ``(start, end)`` for every future week the template covers."""
    day = template.starts_on + timedelta(days=(template.weekday - template.starts_on.weekday()) % 7)
    last = template.ends_on or template.starts_on + RECURRING_HORIZON
    length = timedelta(minutes=template.duration_minutes)
    count = 0
    while day <= last and count < MAX_RECURRING_OCCURRENCES:
        start = datetime.combine(day, template.start_time, tzinfo=timezone.utc)
        if start > now:
            yield start, start + length
        count += 1
        day += timedelta(weeks=1)


def _future_lessons(
    db: Session, template: models.RecurringLessonTemplate, now: datetime
) -> list[models.Booking]:
    return list(
        db.execute(
            select(models.Booking)
            .where(
                models.Booking.recurring_template_id == template.id,
                models.Booking.approval_status == ApprovalStatus.accepted,
                models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                models.Booking.scheduled_start_at > now,
            )
            .order_by(models.Booking.scheduled_start_at)
        ).scalars()
    )


def _generate(
    db: Session,
    principal: Principal,
    template: models.RecurringLessonTemplate,
    result: RecurringResult,
    now: datetime,
    skip_days: frozenset[date] = frozenset(),
) -> None:
    for start, end in occurrences(template, now=now):
        if start.date() in skip_days:
            continue
        created = booking_service.create_public_lesson(
            db,
            principal,
            title=template.title,
            description=template.description,
            scheduled_start_at=start,
            scheduled_end_at=end,
            max_participants=template.max_participants,
            min_participants=template.min_participants,
            price_per_person_cents=template.price_per_person_cents,
            location=template.location or None,
            coach_id=template.coach_id,
            recurring_template_id=template.id,
            idempotency_key=f"recurring-{template.id}-r{template.revision}-{start:%Y%m%d}",
            now=now,
        )
        if not created.ok:
            result.skipped[start.isoformat()] = created.reason_code or created.error_code
        elif created.created:
            result.created_booking_ids.append(created.booking_id)
    if result.skipped:
        logger.warning(
            "Some recurring lessons were not created",
            extra={"template_id": template.id, "skipped": result.skipped},
        )


def _cancel_lessons(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    lessons: list[models.Booking],
    result: RecurringResult,
    reason: str,
    now: datetime,
) -> None:
    for lesson in lessons:
        cancelled = booking_service.cancel_booking(db, gateway, principal, lesson.id, reason=reason, now=now)
        if cancelled.ok:
            result.cancelled_booking_ids.append(lesson.id)
            result.notifications.extend(cancelled.notifications)
        else:
            result.skipped[lesson.scheduled_start_at.isoformat()] = cancelled.reason_code or cancelled.error_code


@template_action
def create_recurring_lesson(
    db: Session,
    principal: Principal,
    *,
    title: str,
    weekday: int,
    start_time: time,
    duration_minutes: int,
    max_participants: int,
    price_per_person_cents: int,
    starts_on: date,
    ends_on: date | None = None,
    min_participants: int = 1,
    description: str | None = None,
    location: dict[str, str] | None = None,
    coach_id: int | None = None,
    now: datetime | None = None,
) -> RecurringResult:
    now = now or ledger.utc_now()
    if principal.role == Role.admin:
        if coach_id is None:
            raise GuardViolation("coach_required", "Choose the coach who runs this lesson")
    elif principal.role == Role.coach and principal.user_id is not None:
        coach_id = principal.user_id
    else:
        raise GuardViolation("forbidden_role", "Only coaches can create lessons")
    _validate(
        weekday=weekday,
        duration_minutes=duration_minutes,
        max_participants=max_participants,
        min_participants=min_participants,
        price_per_person_cents=price_per_person_cents,
        starts_on=starts_on,
        ends_on=ends_on,
    )
    booking_service.require_payable_account(db, coach_id)

    location = location or {}
    template = models.RecurringLessonTemplate(
        coach_id=coach_id,
        title=title,
        description=description,
        weekday=weekday,
        start_time=start_time,
        duration_minutes=duration_minutes,
        max_participants=max_participants,
        min_participants=min_participants,
        price_per_person_cents=price_per_person_cents,
        location_name=location.get("name"),
        location_address=location.get("address"),
        location_notes=location.get("notes"),
        starts_on=starts_on,
        ends_on=ends_on,
        is_active=True,
        revision=1,
    )
    with ledger.atomic(db):
        db.add(template)
    logger.info("Recurring lesson created", extra={"template_id": template.id, "coach_id": coach_id})

    result = RecurringResult(ok=True, template_id=template.id)
    _generate(db, principal, template, result, now)
    return result


@template_action
def generate_lessons(
    db: Session,
    principal: Principal,
    *,
    template_id: int,
    now: datetime | None = None,
) -> RecurringResult:
    """Create any missing lessons for the template; existing ones are left alone."""
    now = now or ledger.utc_now()
    template = _load_template(db, principal, template_id)
    if not template.is_active:
        raise InvalidTransition("This recurring lesson was cancelled")
    result = RecurringResult(ok=True, template_id=template.id)
    scheduled = frozenset(lesson.scheduled_start_at.date() for lesson in _future_lessons(db, template, now))
    _generate(db, principal, template, result, now, skip_days=scheduled)
    return result


@template_action
def cancel_recurring_lesson(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    *,
    template_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> RecurringResult:
    now = now or ledger.utc_now()
    template = _load_template(db, principal, template_id)
    result = RecurringResult(ok=True, template_id=template.id)
    if template.is_active:
        with ledger.atomic(db):
            template.is_active = False
        logger.info("Recurring lesson deactivated", extra={"template_id": template.id})
    _cancel_lessons(
        db,
        gateway,
        principal,
        _future_lessons(db, template, now),
        result,
        reason or RECURRING_CANCELLED_REASON,
        now,
    )
    return result


@template_action
def edit_recurring_lesson(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    *,
    template_id: int,
    changes: dict[str, Any],
    now: datetime | None = None,
) -> RecurringResult:
    """Apply ``changes`` and rebuild the future lessons nobody has joined yet.

    Lessons that already have participants keep their original details.
    """
    now = now or ledger.utc_now()
    template = _load_template(db, principal, template_id)
    if not template.is_active:
        raise InvalidTransition("This recurring lesson was cancelled")
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise GuardViolation("invalid_field", f"Cannot change {', '.join(sorted(unknown))}")

    values = {name: getattr(template, name) for name in EDITABLE_FIELDS if name != "location"}
    values.update(
        {
            name: value
            for name, value in changes.items()
            if name != "location" and (value is not None or name in NULLABLE_FIELDS)
        }
    )
    _validate(
        weekday=values["weekday"],
        duration_minutes=values["duration_minutes"],
        max_participants=values["max_participants"],
        min_participants=values["min_participants"],
        price_per_person_cents=values["price_per_person_cents"],
        starts_on=template.starts_on,
        ends_on=values["ends_on"],
    )

    with ledger.atomic(db):
        for name, value in values.items():
            setattr(template, name, value)
        if "location" in changes:
            location = changes["location"] or {}
            template.location_name = location.get("name")
            template.location_address = location.get("address")
            template.location_notes = location.get("notes")
        template.revision += 1

    result = RecurringResult(ok=True, template_id=template.id)
    open_lessons = []
    for lesson in _future_lessons(db, template, now):
        if any(member.status in ACTIVE_PARTICIPANT_STATUSES for member in lesson.participants):
            result.kept_booking_ids.append(lesson.id)
        else:
            open_lessons.append(lesson)
    _cancel_lessons(db, gateway, principal, open_lessons, result, RECURRING_RESCHEDULED_REASON, now)

    kept_days = frozenset(lesson.scheduled_start_at.date() for lesson in _future_lessons(db, template, now))
    _generate(db, principal, template, result, now, skip_days=kept_days)
    logger.info(
        "Recurring lesson updated",
        extra={
            "template_id": template.id,
            "revision": template.revision,
            "kept": len(result.kept_booking_ids),
        },
    )
    return result
