"""Durable booking and participant ledger.

Every status write goes through :func:`apply_booking_state` or
:func:`apply_participant_state`. Both perform a compare-and-set against the
state the caller read, validate the target against the legal compound-state
table and append one ``BookingStateTransition`` per changed axis. Public
lesson counters move only here, together with the participant row whose
status implies them.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable, Iterator

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.constants import CAPACITY_FULL_REASON, LOCK_TTL, SYSTEM_ACTOR
from ..core.errors import ConcurrencyConflict, DataIntegrityViolation, GuardViolation
from ..db import models
from ..db.models import (
    ApprovalStatus,
    BookingType,
    CapacityStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
    PaymentStatus,
)
from .state_machine import (
    SEAT_HOLDING_STATUSES,
    ActorRole,
    BookingState,
    ParticipantState,
    check_compound_state,
    check_participant_state,
    private_participant_state,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    changed_by: str
    role: ActorRole


SYSTEM = Actor(SYSTEM_ACTOR, ActorRole.system)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any error; integrity errors become ``DataIntegrityViolation``."""
    try:
        yield db
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.error("Ledger integrity violation", extra={"error": str(exc.orig)})
        raise DataIntegrityViolation(str(exc.orig)) from exc
    except Exception:
        db.rollback()
        raise


def booking_state(booking: models.Booking) -> BookingState:
    details = booking.details
    if booking.booking_type == BookingType.public_group:
        return BookingState(
            booking.approval_status,
            booking.fulfillment_status,
            capacity=details.capacity_status,
        )
    if booking.booking_type in (BookingType.individual, BookingType.private_group):
        return BookingState(
            booking.approval_status,
            booking.fulfillment_status,
            payment=details.payment_status,
        )
    raise ValueError(f"Unsupported booking type {booking.booking_type}")


def participant_state(participant: models.BookingParticipant) -> ParticipantState:
    return ParticipantState(participant.status, participant.payment_status)


def get_booking(db: Session, booking_id: int) -> models.Booking | None:
    return db.get(models.Booking, booking_id)


def find_booking_by_idempotency_key(db: Session, key: str) -> models.Booking | None:
    return db.execute(
        select(models.Booking).where(models.Booking.idempotency_key == key)
    ).scalar_one_or_none()


def find_bookings_by_key_prefix(db: Session, prefix: str) -> list[models.Booking]:
    return list(
        db.execute(
            select(models.Booking)
            .where(
                or_(
                    models.Booking.idempotency_key == prefix,
                    models.Booking.idempotency_key.like(f"{prefix}-%"),
                )
            )
            .order_by(models.Booking.id)
        ).scalars()
    )


def find_participant(db: Session, booking_id: int, user_id: int) -> models.BookingParticipant | None:
    return db.execute(
        select(models.BookingParticipant).where(
            models.BookingParticipant.booking_id == booking_id,
            models.BookingParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()


def find_payment_by_key(db: Session, key: str) -> models.BookingPayment | None:
    return db.execute(
        select(models.BookingPayment).where(models.BookingPayment.idempotency_key == key)
    ).scalar_one_or_none()


def has_coach_conflict(
    db: Session,
    coach_id: int,
    starts_at: datetime,
    ends_at: datetime,
) -> bool:
    conflict = db.execute(
        select(models.Booking.id)
        .where(
            models.Booking.coach_id == coach_id,
            models.Booking.approval_status.in_(
                [ApprovalStatus.pending_review, ApprovalStatus.accepted]
            ),
            models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
            models.Booking.scheduled_start_at < ends_at,
            models.Booking.scheduled_end_at > starts_at,
        )
        .limit(1)
    ).first()
    return conflict is not None


def record_transition(
    db: Session,
    booking_id: int,
    field: str,
    old_value,
    new_value,
    *,
    actor: Actor,
    reason: str | None = None,
    participant_id: int | None = None,
) -> models.BookingStateTransition | None:
    if old_value == new_value:
        return None
    row = models.BookingStateTransition(
        booking_id=booking_id,
        participant_id=participant_id,
        field=field,
        old_value=getattr(old_value, "value", old_value),
        new_value=getattr(new_value, "value", new_value),
        changed_by=actor.changed_by,
        actor_role=actor.role.value,
        reason=reason,
    )
    db.add(row)
    return row


def record_payment(
    db: Session,
    *,
    booking_id: int,
    kind: models.BookingPaymentKind,
    gateway_ref: str,
    amount_cents: int,
    currency: str,
    status: str,
    idempotency_key: str | None,
    participant_id: int | None = None,
) -> models.BookingPayment:
    row = models.BookingPayment(
        booking_id=booking_id,
        participant_id=participant_id,
        kind=kind,
        gateway_ref=gateway_ref,
        amount_cents=amount_cents,
        currency=currency,
        capture_method="manual",
        status=status,
        idempotency_key=idempotency_key,
    )
    db.add(row)
    return row


def _attach_details(booking: models.Booking, details) -> None:
    if booking.booking_type == BookingType.individual:
        booking.individual_details = details
    elif booking.booking_type == BookingType.private_group:
        booking.private_group_details = details
    elif booking.booking_type == BookingType.public_group:
        booking.public_group_details = details
    else:
        raise ValueError(f"Unsupported booking type {booking.booking_type}")


def create_booking(
    db: Session,
    booking: models.Booking,
    details,
    participants: Iterable[models.BookingParticipant] = (),
    *,
    actor: Actor,
    reason: str | None = None,
) -> tuple[models.Booking, bool]:
    """Insert booking, detail row and member rows together.

    Returns ``(booking, created)``; a duplicate idempotency key yields the
    booking that already holds it.
    """
    participants = list(participants)
    _attach_details(booking, details)
    check_compound_state(booking.booking_type, booking_state(booking))
    for participant in participants:
        check_participant_state(participant_state(participant))
    try:
        with atomic(db):
            booking.participants.extend(participants)
            db.add(booking)
            db.flush()
            state = booking_state(booking)
            record_transition(db, booking.id, "approval_status", None, state.approval, actor=actor, reason=reason)
            record_transition(db, booking.id, "fulfillment_status", None, state.fulfillment, actor=actor, reason=reason)
            if state.payment is not None:
                record_transition(db, booking.id, "payment_status", None, state.payment, actor=actor, reason=reason)
            if state.capacity is not None:
                record_transition(db, booking.id, "capacity_status", None, state.capacity, actor=actor, reason=reason)
            for participant in participants:
                record_transition(
                    db,
                    booking.id,
                    "participant_status",
                    None,
                    participant.status,
                    actor=actor,
                    reason=reason,
                    participant_id=participant.id,
                )
    except DataIntegrityViolation:
        if booking.idempotency_key:
            existing = find_booking_by_idempotency_key(db, booking.idempotency_key)
            if existing is not None:
                return existing, False
        raise
    db.refresh(booking)
    return booking, True


def add_participant(
    db: Session,
    booking: models.Booking,
    participant: models.BookingParticipant,
    *,
    actor: Actor,
    reason: str | None = None,
) -> models.BookingParticipant:
    check_participant_state(participant_state(participant))
    if participant.status in SEAT_HOLDING_STATUSES:
        raise DataIntegrityViolation("New participants cannot start out holding a seat")
    with atomic(db):
        participant.booking_id = booking.id
        db.add(participant)
        db.flush()
        record_transition(
            db,
            booking.id,
            "participant_status",
            None,
            participant.status,
            actor=actor,
            reason=reason,
            participant_id=participant.id,
        )
    db.refresh(participant)
    return participant


def _booking_stamps(old: BookingState, new: BookingState, actor: Actor, reason: str | None, now: datetime) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if new.approval == ApprovalStatus.cancelled and old.approval != ApprovalStatus.cancelled:
        values.update(cancelled_at=now, cancelled_by=actor.changed_by, cancellation_reason=reason)
    if new.fulfillment == FulfillmentStatus.completed and old.fulfillment != FulfillmentStatus.completed:
        values["completed_at"] = now
    if new.fulfillment == FulfillmentStatus.disputed and old.fulfillment != FulfillmentStatus.disputed:
        values["disputed_at"] = now
    return values


def _payment_stamps(old, new, now: datetime) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if old == new:
        return values
    if new.value == "authorized":
        values["authorized_at"] = now
    elif new.value == "captured":
        values["captured_at"] = now
    elif new.value == "refunded":
        values["refunded_at"] = now
    return values


def apply_booking_state(
    db: Session,
    booking: models.Booking,
    new_state: BookingState,
    *,
    actor: Actor,
    reason: str | None = None,
    booking_values: dict[str, Any] | None = None,
    detail_values: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> BookingState:
    """Compare-and-set the booking and its detail row; must run inside ``atomic``."""
    now = now or utc_now()
    old = booking_state(booking)
    check_compound_state(booking.booking_type, new_state)

    values = _booking_stamps(old, new_state, actor, reason, now)
    values.update(booking_values or {})
    result = db.execute(
        update(models.Booking)
        .where(
            models.Booking.id == booking.id,
            models.Booking.approval_status == old.approval,
            models.Booking.fulfillment_status == old.fulfillment,
        )
        .values(
            approval_status=new_state.approval,
            fulfillment_status=new_state.fulfillment,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(f"Booking {booking.id} changed concurrently")

    details = booking.details
    model = type(details)
    if booking.booking_type == BookingType.public_group:
        condition = model.capacity_status == old.capacity
        extra = dict(detail_values or {})
        extra["capacity_status"] = new_state.capacity
    else:
        condition = model.payment_status == old.payment
        extra = _payment_stamps(old.payment, new_state.payment, now)
        extra.update(detail_values or {})
        extra["payment_status"] = new_state.payment
    result = db.execute(
        update(model)
        .where(model.booking_id == booking.id, condition)
        .values(**extra)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(f"Booking {booking.id} details changed concurrently")

    record_transition(db, booking.id, "approval_status", old.approval, new_state.approval, actor=actor, reason=reason)
    record_transition(db, booking.id, "fulfillment_status", old.fulfillment, new_state.fulfillment, actor=actor, reason=reason)
    record_transition(db, booking.id, "payment_status", old.payment, new_state.payment, actor=actor, reason=reason)
    record_transition(db, booking.id, "capacity_status", old.capacity, new_state.capacity, actor=actor, reason=reason)

    db.refresh(booking)
    db.refresh(details)
    return new_state


def write_booking_transition(
    db: Session,
    booking: models.Booking,
    new_state: BookingState,
    *,
    actor: Actor,
    reason: str | None = None,
    booking_values: dict[str, Any] | None = None,
    detail_values: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> BookingState:
    """Booking write plus private-group member propagation, inside ``atomic``."""
    now = now or utc_now()
    apply_booking_state(
        db,
        booking,
        new_state,
        actor=actor,
        reason=reason,
        booking_values=booking_values,
        detail_values=detail_values,
        now=now,
    )
    if booking.booking_type == BookingType.private_group:
        cascade_private_participants(db, booking, actor=actor, reason=reason, now=now)
    return new_state


def cascade_private_participants(
    db: Session,
    booking: models.Booking,
    *,
    actor: Actor,
    reason: str | None = None,
    now: datetime | None = None,
) -> None:
    parent = booking_state(booking)
    for participant in list(booking.participants):
        db.refresh(participant)
        current = participant_state(participant)
        target = private_participant_state(parent, current)
        if target != current:
            apply_participant_state(
                db, booking, participant, target, actor=actor, reason=reason, now=now
            )


def _participant_stamps(old: ParticipantState, new: ParticipantState, reason: str | None, now: datetime) -> dict[str, Any]:
    values = _payment_stamps(old.payment, new.payment, now)
    if new.status == ParticipantStatus.cancelled and old.status != ParticipantStatus.cancelled:
        values.update(cancelled_at=now, cancellation_reason=reason)
    return values


def apply_participant_state(
    db: Session,
    booking: models.Booking,
    participant: models.BookingParticipant,
    new_state: ParticipantState,
    *,
    actor: Actor,
    reason: str | None = None,
    values: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ParticipantState:
    """Compare-and-set one participant and move lesson counters with it; must run inside ``atomic``."""
    now = now or utc_now()
    old = participant_state(participant)
    check_participant_state(new_state)

    row_values = _participant_stamps(old, new_state, reason, now)
    row_values.update(values or {})
    result = db.execute(
        update(models.BookingParticipant)
        .where(
            models.BookingParticipant.id == participant.id,
            models.BookingParticipant.status == old.status,
            models.BookingParticipant.payment_status == old.payment,
        )
        .values(status=new_state.status, payment_status=new_state.payment, **row_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(f"Participant {participant.id} changed concurrently")

    if booking.booking_type == BookingType.public_group:
        _apply_counter_deltas(db, booking, old, new_state, actor=actor, reason=reason)

    record_transition(
        db,
        booking.id,
        "participant_status",
        old.status,
        new_state.status,
        actor=actor,
        reason=reason,
        participant_id=participant.id,
    )
    record_transition(
        db,
        booking.id,
        "participant_payment_status",
        old.payment,
        new_state.payment,
        actor=actor,
        reason=reason,
        participant_id=participant.id,
    )
    db.refresh(participant)
    return new_state


def _apply_counter_deltas(
    db: Session,
    booking: models.Booking,
    old: ParticipantState,
    new: ParticipantState,
    *,
    actor: Actor,
    reason: str | None,
) -> None:
    seats = int(new.status in SEAT_HOLDING_STATUSES) - int(old.status in SEAT_HOLDING_STATUSES)
    authorized = int(new.payment == ParticipantPaymentStatus.authorized) - int(
        old.payment == ParticipantPaymentStatus.authorized
    )
    captured = int(new.payment == ParticipantPaymentStatus.captured) - int(
        old.payment == ParticipantPaymentStatus.captured
    )
    if not (seats or authorized or captured):
        return

    model = models.PublicGroupLessonDetails
    statement = update(model).where(model.booking_id == booking.id)
    if seats > 0:
        # check-and-increment in one statement so concurrent joins cannot oversell
        statement = statement.where(
            model.current_participants + seats <= model.max_participants,
            model.capacity_status == CapacityStatus.open,
        )
    result = db.execute(
        statement.values(
            current_participants=model.current_participants + seats,
            authorized_participants=model.authorized_participants + authorized,
            captured_participants=model.captured_participants + captured,
        ).execution_options(synchronize_session=False)
    )
    details = booking.public_group_details
    db.refresh(details)
    if result.rowcount != 1:
        if details.capacity_status == CapacityStatus.closed:
            raise GuardViolation("registration_closed", "Registration for this lesson is closed")
        raise GuardViolation("capacity_full", CAPACITY_FULL_REASON)
    _sync_capacity(db, booking, details, actor=actor, reason=reason)


def _sync_capacity(
    db: Session,
    booking: models.Booking,
    details: models.PublicGroupLessonDetails,
    *,
    actor: Actor,
    reason: str | None,
) -> None:
    current = details.capacity_status
    if current == CapacityStatus.closed:
        return
    target = (
        CapacityStatus.full
        if details.current_participants >= details.max_participants
        else CapacityStatus.open
    )
    if target == current:
        return
    model = models.PublicGroupLessonDetails
    db.execute(
        update(model)
        .where(model.booking_id == booking.id, model.capacity_status == current)
        .values(capacity_status=target)
        .execution_options(synchronize_session=False)
    )
    record_transition(db, booking.id, "capacity_status", current, target, actor=actor, reason=reason)
    db.refresh(details)


def mark_admitted(db: Session, participant: models.BookingParticipant, *, now: datetime) -> None:
    with atomic(db):
        db.execute(
            update(models.BookingParticipant)
            .where(
                models.BookingParticipant.id == participant.id,
                models.BookingParticipant.admitted_at.is_(None),
            )
            .values(admitted_at=now)
            .execution_options(synchronize_session=False)
        )
    db.refresh(participant)


def mark_payment_reminder_sent(db: Session, booking: models.Booking, *, now: datetime) -> bool:
    details = booking.details
    model = type(details)
    with atomic(db):
        result = db.execute(
            update(model)
            .where(
                model.booking_id == booking.id,
                model.payment_reminder_sent_at.is_(None),
                model.payment_status == PaymentStatus.awaiting_client_payment,
            )
            .values(payment_reminder_sent_at=now)
            .execution_options(synchronize_session=False)
        )
    db.refresh(details)
    return result.rowcount == 1


@contextmanager
def booking_lock(
    db: Session,
    booking_id: int,
    *,
    ttl: timedelta = LOCK_TTL,
    now: datetime | None = None,
) -> Iterator[datetime]:
    """Hold ``locked_until`` for the duration of a multi-step payment sequence.

    Acquisition is a conditional UPDATE that only succeeds when the lock is
    free or its TTL has lapsed. Release clears the lock only if it still
    carries this holder's token and runs on every exit path.
    """
    now = now or utc_now()
    token = now + ttl
    result = db.execute(
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            or_(models.Booking.locked_until.is_(None), models.Booking.locked_until <= now),
        )
        .values(locked_until=token)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise ConcurrencyConflict(f"Booking {booking_id} is locked by another operation")
    db.commit()
    try:
        yield token
    except BaseException:
        db.rollback()
        raise
    finally:
        release_lock(db, booking_id, token)


def release_lock(db: Session, booking_id: int, token: datetime) -> bool:
    result = db.execute(
        update(models.Booking)
        .where(models.Booking.id == booking_id, models.Booking.locked_until == token)
        .values(locked_until=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def clear_expired_locks(db: Session, now: datetime | None = None) -> int:
    now = now or utc_now()
    with atomic(db):
        result = db.execute(
            update(models.Booking)
            .where(models.Booking.locked_until.is_not(None), models.Booking.locked_until <= now)
            .values(locked_until=None)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount
