"""Time-driven transitions.

``run_sweep`` walks every deadline the booking lifecycle depends on. Each
candidate is re-read and handled in its own transaction so one failure never
blocks the rest of the batch, and candidates that moved on since they were
selected are skipped rather than overwritten.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.constants import (
    AUTHORIZATION_TIMEOUT_REASON,
    AUTO_COMPLETE_REASON,
    PAYMENT_TIMEOUT_REASON,
    RESPONSE_TIMEOUT_REASON,
)
from ..core.errors import ConcurrencyConflict, GuardViolation, InvalidTransition
from ..db import models
from ..db.models import (
    ApprovalStatus,
    BookingType,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
    PaymentStatus,
)
from ..services import booking_service, ledger, notification_service, payment_orchestrator
from ..services.ledger import SYSTEM
from ..services.notification_service import NotificationIntent
from ..services.payments import BasePaymentGateway
from ..services.state_machine import Effect, Event, TransitionContext, next_booking_state, next_participant_state

logger = logging.getLogger(__name__)

CHARGED_DETAILS = (models.IndividualBookingDetails, models.PrivateGroupBookingDetails)


@dataclass
class SweepReport:
    expired_requests: int = 0
    expired_bookings: int = 0
    expired_participants: int = 0
    released_authorizations: int = 0
    reminders_sent: int = 0
    completed: int = 0
    locks_cleared: int = 0
    skipped: int = 0
    errors: int = 0
    notifications: list[NotificationIntent] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "expired_requests": self.expired_requests,
            "expired_bookings": self.expired_bookings,
            "expired_participants": self.expired_participants,
            "released_authorizations": self.released_authorizations,
            "reminders_sent": self.reminders_sent,
            "completed": self.completed,
            "locks_cleared": self.locks_cleared,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _system_context(booking: models.Booking, now: datetime, **extra) -> TransitionContext:
    payment_due_at = None
    if booking.booking_type in (BookingType.individual, BookingType.private_group):
        payment_due_at = booking.details.payment_due_at
    return TransitionContext(
        role=SYSTEM.role,
        now=now,
        scheduled_start_at=booking.scheduled_start_at,
        scheduled_end_at=booking.scheduled_end_at,
        response_due_at=booking.response_due_at,
        payment_due_at=payment_due_at,
        **extra,
    )


def _fresh_booking(db: Session, booking_id: int) -> models.Booking:
    db.expire_all()
    return db.get(models.Booking, booking_id)


def _fresh_participant(db: Session, participant_id: int) -> tuple[models.Booking, models.BookingParticipant]:
    db.expire_all()
    participant = db.get(models.BookingParticipant, participant_id)
    return participant.booking, participant


def _process(
    db: Session,
    report: SweepReport,
    pass_name: str,
    candidate_ids: Iterable[int],
    handler: Callable[[int], list[NotificationIntent] | None],
) -> int:
    handled = 0
    for candidate_id in candidate_ids:
        try:
            notifications = handler(candidate_id)
        except (InvalidTransition, GuardViolation, ConcurrencyConflict) as exc:
            db.rollback()
            report.skipped += 1
            logger.info(
                "Sweep candidate skipped: %s",
                exc,
                extra={"sweep_pass": pass_name, "candidate_id": candidate_id},
            )
            continue
        except Exception:
            db.rollback()
            report.errors += 1
            logger.exception(
                "Sweep candidate failed",
                extra={"sweep_pass": pass_name, "candidate_id": candidate_id},
            )
            continue
        if notifications is None:
            report.skipped += 1
            continue
        handled += 1
        report.notifications.extend(notifications)
    return handled


def expire_unanswered_requests(db: Session, report: SweepReport, now: datetime) -> None:
    candidate_ids = db.scalars(
        select(models.Booking.id).where(
            models.Booking.booking_type.in_([BookingType.individual, BookingType.private_group]),
            models.Booking.approval_status == ApprovalStatus.pending_review,
            models.Booking.response_due_at <= now,
        )
    ).all()

    def handle(booking_id: int):
        booking = _fresh_booking(db, booking_id)
        transition = next_booking_state(
            booking.booking_type,
            ledger.booking_state(booking),
            Event.expire_unanswered,
            _system_context(booking, now),
        )
        with ledger.atomic(db):
            ledger.write_booking_transition(
                db, booking, transition.state, actor=SYSTEM, reason=RESPONSE_TIMEOUT_REASON, now=now
            )
        return [notification_service.booking_expired(booking, booking.payer_id, RESPONSE_TIMEOUT_REASON)]

    report.expired_requests += _process(db, report, "expire_unanswered", candidate_ids, handle)


def expire_unpaid_bookings(
    db: Session, gateway: BasePaymentGateway, report: SweepReport, now: datetime, settings: Settings
) -> None:
    candidate_ids: list[int] = []
    for model in CHARGED_DETAILS:
        candidate_ids.extend(
            db.scalars(
                select(model.booking_id)
                .join(models.Booking, models.Booking.id == model.booking_id)
                .where(
                    models.Booking.approval_status == ApprovalStatus.accepted,
                    models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                    model.payment_status.in_([PaymentStatus.awaiting_client_payment, PaymentStatus.authorized]),
                    model.payment_due_at < now,
                )
            ).all()
        )

    def handle(booking_id: int):
        booking = _fresh_booking(db, booking_id)
        ttl = timedelta(seconds=settings.lock_ttl_seconds)
        with ledger.booking_lock(db, booking.id, ttl=ttl, now=now):
            db.refresh(booking)
            db.refresh(booking.details)
            transition = next_booking_state(
                booking.booking_type,
                ledger.booking_state(booking),
                Event.expire_unpaid,
                _system_context(booking, now),
            )
            if transition.noop:
                return None
            if transition.has(Effect.release_authorization):
                released = payment_orchestrator.release_authorization(
                    db, gateway, booking, transition.state, actor=SYSTEM, reason=PAYMENT_TIMEOUT_REASON, now=now
                )
                if not released:
                    return None
            else:
                with ledger.atomic(db):
                    ledger.write_booking_transition(
                        db, booking, transition.state, actor=SYSTEM, reason=PAYMENT_TIMEOUT_REASON, now=now
                    )
        return [notification_service.booking_cancelled(booking, booking.payer_id, PAYMENT_TIMEOUT_REASON)]

    report.expired_bookings += _process(db, report, "expire_unpaid", candidate_ids, handle)


def expire_unpaid_participants(db: Session, report: SweepReport, now: datetime) -> None:
    candidate_ids = db.scalars(
        select(models.BookingParticipant.id)
        .join(models.Booking, models.Booking.id == models.BookingParticipant.booking_id)
        .where(
            models.Booking.booking_type == BookingType.public_group,
            models.BookingParticipant.status == ParticipantStatus.awaiting_payment,
            models.BookingParticipant.expires_at <= now,
        )
    ).all()

    def handle(participant_id: int):
        booking, participant = _fresh_participant(db, participant_id)
        transition = next_participant_state(
            ledger.participant_state(participant),
            Event.expire_unpaid,
            _system_context(booking, now, expires_at=participant.expires_at),
        )
        with ledger.atomic(db):
            ledger.apply_participant_state(
                db, booking, participant, transition.state, actor=SYSTEM, reason=PAYMENT_TIMEOUT_REASON, now=now
            )
        return [
            notification_service.participant_update(
                booking,
                participant,
                "participation_expired",
                f"Your place in the lesson was released. {PAYMENT_TIMEOUT_REASON}.",
            )
        ]

    report.expired_participants += _process(db, report, "expire_unpaid_participants", candidate_ids, handle)


def expire_unadmitted_authorizations(
    db: Session, gateway: BasePaymentGateway, report: SweepReport, now: datetime
) -> None:
    candidate_ids = db.scalars(
        select(models.BookingParticipant.id)
        .join(models.Booking, models.Booking.id == models.BookingParticipant.booking_id)
        .where(
            models.Booking.booking_type == BookingType.public_group,
            models.BookingParticipant.status == ParticipantStatus.awaiting_coach,
            models.BookingParticipant.payment_status == ParticipantPaymentStatus.authorized,
            models.BookingParticipant.expires_at <= now,
        )
    ).all()

    def handle(participant_id: int):
        booking, participant = _fresh_participant(db, participant_id)
        transition = next_participant_state(
            ledger.participant_state(participant),
            Event.expire_unadmitted_authorization,
            _system_context(booking, now, expires_at=participant.expires_at),
        )
        released = payment_orchestrator.release_authorization(
            db,
            gateway,
            booking,
            transition.state,
            actor=SYSTEM,
            reason=AUTHORIZATION_TIMEOUT_REASON,
            participant=participant,
            now=now,
        )
        if not released:
            return None
        return [
            notification_service.participant_update(
                booking,
                participant,
                "authorization_released",
                f"The coach did not confirm your spot in time. {AUTHORIZATION_TIMEOUT_REASON}.",
            )
        ]

    report.released_authorizations += _process(
        db, report, "expire_unadmitted_authorizations", candidate_ids, handle
    )


def send_payment_reminders(db: Session, report: SweepReport, now: datetime, settings: Settings) -> None:
    window_end = now + timedelta(minutes=settings.payment_reminder_minutes)
    candidate_ids: list[int] = []
    for model in CHARGED_DETAILS:
        candidate_ids.extend(
            db.scalars(
                select(model.booking_id)
                .join(models.Booking, models.Booking.id == model.booking_id)
                .where(
                    models.Booking.approval_status == ApprovalStatus.accepted,
                    model.payment_status == PaymentStatus.awaiting_client_payment,
                    model.payment_reminder_sent_at.is_(None),
                    model.payment_due_at > now,
                    model.payment_due_at <= window_end,
                )
            ).all()
        )

    def handle(booking_id: int):
        booking = _fresh_booking(db, booking_id)
        if not ledger.mark_payment_reminder_sent(db, booking, now=now):
            return None
        return [notification_service.payment_reminder(booking, booking.payer_id, booking.details.payment_due_at)]

    report.reminders_sent += _process(db, report, "payment_reminders", candidate_ids, handle)


def complete_finished_bookings(
    db: Session, gateway: BasePaymentGateway, report: SweepReport, now: datetime, settings: Settings
) -> None:
    cutoff = now - timedelta(hours=settings.auto_complete_grace_hours)
    candidate_ids: list[int] = []
    for model in CHARGED_DETAILS:
        candidate_ids.extend(
            db.scalars(
                select(model.booking_id)
                .join(models.Booking, models.Booking.id == model.booking_id)
                .where(
                    models.Booking.approval_status == ApprovalStatus.accepted,
                    models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                    models.Booking.scheduled_end_at <= cutoff,
                    model.payment_status == PaymentStatus.captured,
                )
            ).all()
        )
    candidate_ids.extend(
        db.scalars(
            select(models.Booking.id).where(
                models.Booking.booking_type == BookingType.public_group,
                models.Booking.approval_status == ApprovalStatus.accepted,
                models.Booking.fulfillment_status == FulfillmentStatus.scheduled,
                models.Booking.scheduled_end_at <= cutoff,
            )
        ).all()
    )

    def handle(booking_id: int):
        booking = _fresh_booking(db, booking_id)
        return booking_service.complete_booking(
            db, gateway, booking, actor=SYSTEM, reason=AUTO_COMPLETE_REASON, now=now
        )

    report.completed += _process(db, report, "auto_complete", candidate_ids, handle)


def run_sweep(
    db: Session,
    gateway: BasePaymentGateway,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> SweepReport:
    now = now or ledger.utc_now()
    settings = settings or get_settings()
    report = SweepReport()
    expire_unanswered_requests(db, report, now)
    expire_unpaid_bookings(db, gateway, report, now, settings)
    expire_unpaid_participants(db, report, now)
    expire_unadmitted_authorizations(db, gateway, report, now)
    send_payment_reminders(db, report, now, settings)
    complete_finished_bookings(db, gateway, report, now, settings)
    report.locks_cleared = ledger.clear_expired_locks(db, now)
    logger.info("Sweep finished", extra=report.summary())
    return report
