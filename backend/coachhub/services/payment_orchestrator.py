"""Sequences payment gateway calls with ledger writes.

Each operation makes at most one gateway call per step and then persists the
result in a single ledger transaction. A failed gateway call leaves the
ledger untouched; a failed commit is recovered by retrying with the same
idempotency key, which the gateway resolves to the original payment.
"""

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..core.constants import CAPACITY_FULL_REASON
from ..core.errors import (
    AlreadyCaptured,
    GatewayError,
    GuardViolation,
    InvalidTransition,
)
from ..db import models
from ..db.models import (
    ApprovalStatus,
    BookingPaymentKind,
    BookingType,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
    PaymentStatus,
)
from . import ledger
from .ledger import Actor
from .payments import BasePaymentGateway
from .state_machine import BookingState, ParticipantState

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PaymentOutcome:
    gateway_ref: str | None
    client_secret: str | None
    status: str
    reused: bool = False


def _require_charged(booking: models.Booking) -> None:
    if booking.booking_type not in (BookingType.individual, BookingType.private_group):
        raise ValueError(f"Unsupported booking type {booking.booking_type}")


def _require_lesson_participant(
    booking: models.Booking, participant: models.BookingParticipant | None
) -> models.BookingParticipant:
    if booking.booking_type != BookingType.public_group:
        raise ValueError(f"Unsupported booking type {booking.booking_type}")
    if participant is None or participant.booking_id != booking.id:
        raise InvalidTransition("Lesson payments are made per participant")
    return participant


def _refund_count(db: Session, booking_id: int) -> int:
    return db.scalar(
        select(func.count(models.BookingPayment.id)).where(
            models.BookingPayment.booking_id == booking_id,
            models.BookingPayment.kind == BookingPaymentKind.refund,
        )
    )


def authorize_or_charge(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    amount_cents: int,
    idempotency_key: str,
    *,
    actor: Actor,
    participant: models.BookingParticipant | None = None,
    destination_account_id: str | None = None,
    capture: bool = False,
    hold_until: datetime | None = None,
    now: datetime | None = None,
) -> PaymentOutcome:
    """Authorize with manual capture and persist the reference.

    Individual and private bookings are already accepted when paid, so they
    proceed straight to capture. Lesson participants stop at ``authorized``
    and take a seat, unless ``capture`` is set because the coach admitted
    them up front.
    """
    now = now or ledger.utc_now()
    if booking.booking_type == BookingType.public_group:
        participant = _require_lesson_participant(booking, participant)
        return _authorize_participant(
            db,
            gateway,
            booking,
            participant,
            amount_cents,
            idempotency_key,
            actor=actor,
            destination_account_id=destination_account_id,
            capture=capture,
            hold_until=hold_until,
            now=now,
        )
    _require_charged(booking)
    return _authorize_booking(
        db,
        gateway,
        booking,
        amount_cents,
        idempotency_key,
        actor=actor,
        destination_account_id=destination_account_id,
        now=now,
    )


def _authorize_booking(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    amount_cents: int,
    idempotency_key: str,
    *,
    actor: Actor,
    destination_account_id: str | None,
    now: datetime,
) -> PaymentOutcome:
    details = booking.details
    if booking.approval_status != ApprovalStatus.accepted:
        raise InvalidTransition("Payment is only taken for accepted bookings")
    if details.payment_status == PaymentStatus.captured:
        return PaymentOutcome(details.gateway_ref, None, PaymentStatus.captured.value, reused=True)

    client_secret = None
    reused = True
    if details.payment_status != PaymentStatus.authorized or not details.gateway_ref:
        if details.payment_status != PaymentStatus.awaiting_client_payment:
            raise InvalidTransition(f"Cannot authorize while payment is {details.payment_status.value}")
        if ledger.find_payment_by_key(db, idempotency_key) is not None:
            raise GuardViolation("idempotency_key_reused", "This payment attempt was already used")
        authorization = gateway.create_authorization(
            amount_cents,
            details.currency,
            destination_account_id,
            {"booking_id": booking.id, "booking_type": booking.booking_type.value},
            idempotency_key,
        )
        with ledger.atomic(db):
            ledger.apply_booking_state(
                db,
                booking,
                BookingState(ApprovalStatus.accepted, FulfillmentStatus.scheduled, PaymentStatus.authorized),
                actor=actor,
                reason="Payment authorized",
                detail_values={"gateway_ref": authorization.gateway_ref},
                now=now,
            )
            ledger.record_payment(
                db,
                booking_id=booking.id,
                kind=BookingPaymentKind.authorization,
                gateway_ref=authorization.gateway_ref,
                amount_cents=amount_cents,
                currency=details.currency,
                status=authorization.status,
                idempotency_key=idempotency_key,
            )
        logger.info(
            "Payment authorized",
            extra={"booking_id": booking.id, "gateway_ref": authorization.gateway_ref},
        )
        client_secret = authorization.client_secret
        reused = False

    outcome = capture_on_acceptance(db, gateway, booking, actor=actor, now=now)
    return PaymentOutcome(outcome.gateway_ref, client_secret, outcome.status, reused=reused)


def _authorize_participant(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    participant: models.BookingParticipant,
    amount_cents: int,
    idempotency_key: str,
    *,
    actor: Actor,
    destination_account_id: str | None,
    capture: bool,
    hold_until: datetime | None,
    now: datetime,
) -> PaymentOutcome:
    if booking.approval_status != ApprovalStatus.accepted:
        raise InvalidTransition("This lesson is not accepting payments")
    if participant.payment_status in (
        ParticipantPaymentStatus.authorized,
        ParticipantPaymentStatus.captured,
    ) and participant.gateway_ref:
        if capture and participant.payment_status == ParticipantPaymentStatus.authorized:
            return capture_on_acceptance(
                db, gateway, booking, participant=participant, actor=actor, now=now
            )
        return PaymentOutcome(
            participant.gateway_ref, None, participant.payment_status.value, reused=True
        )
    if participant.status != ParticipantStatus.awaiting_payment:
        raise InvalidTransition(f"Cannot pay while participation is {participant.status.value}")
    if ledger.find_payment_by_key(db, idempotency_key) is not None:
        raise GuardViolation("idempotency_key_reused", "This payment attempt was already used")

    authorization = gateway.create_authorization(
        amount_cents,
        participant.currency,
        destination_account_id,
        {"booking_id": booking.id, "participant_id": participant.id},
        idempotency_key,
    )
    try:
        with ledger.atomic(db):
            ledger.apply_participant_state(
                db,
                booking,
                participant,
                ParticipantState(ParticipantStatus.awaiting_coach, ParticipantPaymentStatus.authorized),
                actor=actor,
                reason="Payment authorized",
                values={"gateway_ref": authorization.gateway_ref, "expires_at": hold_until},
                now=now,
            )
            ledger.record_payment(
                db,
                booking_id=booking.id,
                participant_id=participant.id,
                kind=BookingPaymentKind.authorization,
                gateway_ref=authorization.gateway_ref,
                amount_cents=amount_cents,
                currency=participant.currency,
                status=authorization.status,
                idempotency_key=idempotency_key,
            )
    except GuardViolation as exc:
        _abandon_authorization(
            db,
            gateway,
            booking,
            participant,
            authorization.gateway_ref,
            amount_cents,
            idempotency_key,
            actor=actor,
            reason=exc.message,
            now=now,
        )
        raise
    logger.info(
        "Participant payment authorized",
        extra={"booking_id": booking.id, "participant_id": participant.id},
    )

    if capture:
        outcome = capture_on_acceptance(db, gateway, booking, participant=participant, actor=actor, now=now)
        return PaymentOutcome(outcome.gateway_ref, authorization.client_secret, outcome.status)
    return PaymentOutcome(
        authorization.gateway_ref,
        authorization.client_secret,
        ParticipantPaymentStatus.authorized.value,
    )


def _abandon_authorization(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    participant: models.BookingParticipant,
    gateway_ref: str,
    amount_cents: int,
    idempotency_key: str,
    *,
    actor: Actor,
    reason: str,
    now: datetime,
) -> None:
    """Undo an authorization whose seat reservation lost the capacity race."""
    cancel_key = f"{gateway_ref}-cancel"
    cancel_status = None
    try:
        cancel_status = gateway.cancel_authorization(gateway_ref, idempotency_key=cancel_key)
    except GatewayError:
        logger.exception(
            "Could not release authorization after losing a seat",
            extra={"booking_id": booking.id, "participant_id": participant.id, "gateway_ref": gateway_ref},
        )
    db.refresh(participant)
    with ledger.atomic(db):
        ledger.record_payment(
            db,
            booking_id=booking.id,
            participant_id=participant.id,
            kind=BookingPaymentKind.authorization,
            gateway_ref=gateway_ref,
            amount_cents=amount_cents,
            currency=participant.currency,
            status="requires_capture",
            idempotency_key=idempotency_key,
        )
        if cancel_status is not None:
            ledger.record_payment(
                db,
                booking_id=booking.id,
                participant_id=participant.id,
                kind=BookingPaymentKind.cancellation,
                gateway_ref=gateway_ref,
                amount_cents=amount_cents,
                currency=participant.currency,
                status=cancel_status,
                idempotency_key=cancel_key,
            )
        if participant.status == ParticipantStatus.awaiting_payment:
            ledger.apply_participant_state(
                db,
                booking,
                participant,
                ParticipantState(ParticipantStatus.cancelled, ParticipantPaymentStatus.requires_payment_method),
                actor=actor,
                reason=reason or CAPACITY_FULL_REASON,
                now=now,
            )


def capture_on_acceptance(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    *,
    actor: Actor,
    participant: models.BookingParticipant | None = None,
    now: datetime | None = None,
) -> PaymentOutcome:
    now = now or ledger.utc_now()
    if booking.booking_type == BookingType.public_group:
        participant = _require_lesson_participant(booking, participant)
        return _capture_participant(db, gateway, booking, participant, actor=actor, now=now)
    _require_charged(booking)

    details = booking.details
    if booking.approval_status != ApprovalStatus.accepted:
        raise InvalidTransition("Cannot capture payment for a booking that is not accepted")
    if details.payment_status == PaymentStatus.captured:
        return PaymentOutcome(details.gateway_ref, None, PaymentStatus.captured.value, reused=True)
    if details.payment_status != PaymentStatus.authorized or not details.gateway_ref:
        raise InvalidTransition("There is no authorization to capture")

    capture_key = f"{details.gateway_ref}-capture"
    status = _capture(gateway, details.gateway_ref, capture_key, booking_id=booking.id)
    with ledger.atomic(db):
        ledger.write_booking_transition(
            db,
            booking,
            BookingState(ApprovalStatus.accepted, FulfillmentStatus.scheduled, PaymentStatus.captured),
            actor=actor,
            reason="Payment captured",
            now=now,
        )
        if ledger.find_payment_by_key(db, capture_key) is None:
            ledger.record_payment(
                db,
                booking_id=booking.id,
                kind=BookingPaymentKind.capture,
                gateway_ref=details.gateway_ref,
                amount_cents=details.client_charge_cents,
                currency=details.currency,
                status=status,
                idempotency_key=capture_key,
            )
    logger.info("Payment captured", extra={"booking_id": booking.id})
    return PaymentOutcome(details.gateway_ref, None, PaymentStatus.captured.value)


def _capture(gateway: BasePaymentGateway, gateway_ref: str, capture_key: str, *, booking_id: int) -> str:
    try:
        return gateway.capture(gateway_ref, idempotency_key=capture_key)
    except AlreadyCaptured:
        logger.warning(
            "Authorization was already captured; reconciling ledger",
            extra={"booking_id": booking_id, "gateway_ref": gateway_ref},
        )
        return "succeeded"


def _capture_participant(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    participant: models.BookingParticipant,
    *,
    actor: Actor,
    now: datetime,
) -> PaymentOutcome:
    if (
        booking.approval_status != ApprovalStatus.accepted
        or booking.fulfillment_status != FulfillmentStatus.scheduled
    ):
        raise InvalidTransition("Cannot capture payment for a lesson that is not running")
    if participant.payment_status == ParticipantPaymentStatus.captured:
        return PaymentOutcome(participant.gateway_ref, None, participant.payment_status.value, reused=True)
    if (
        participant.status != ParticipantStatus.awaiting_coach
        or participant.payment_status != ParticipantPaymentStatus.authorized
        or not participant.gateway_ref
    ):
        raise InvalidTransition("There is no authorization to capture")

    capture_key = f"{participant.gateway_ref}-capture"
    status = _capture(gateway, participant.gateway_ref, capture_key, booking_id=booking.id)
    with ledger.atomic(db):
        ledger.apply_participant_state(
            db,
            booking,
            participant,
            ParticipantState(ParticipantStatus.accepted, ParticipantPaymentStatus.captured),
            actor=actor,
            reason="Admitted by coach",
            values={"expires_at": None},
            now=now,
        )
        if ledger.find_payment_by_key(db, capture_key) is None:
            ledger.record_payment(
                db,
                booking_id=booking.id,
                participant_id=participant.id,
                kind=BookingPaymentKind.capture,
                gateway_ref=participant.gateway_ref,
                amount_cents=participant.amount_cents,
                currency=participant.currency,
                status=status,
                idempotency_key=capture_key,
            )
    logger.info(
        "Participant payment captured",
        extra={"booking_id": booking.id, "participant_id": participant.id},
    )
    return PaymentOutcome(participant.gateway_ref, None, ParticipantPaymentStatus.captured.value)


def release_authorization(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    new_state: BookingState | ParticipantState,
    *,
    actor: Actor,
    reason: str | None = None,
    participant: models.BookingParticipant | None = None,
    booking_values: dict | None = None,
    now: datetime | None = None,
) -> bool:
    """Cancel a held authorization and write ``new_state``.

    Returns ``False`` when the gateway reports the payment was captured in
    the meantime; the ledger is then reconciled to the captured state and
    ``new_state`` is not applied.
    """
    now = now or ledger.utc_now()
    if booking.booking_type == BookingType.public_group:
        participant = _require_lesson_participant(booking, participant)
        return _release_participant(
            db, gateway, booking, participant, new_state, actor=actor, reason=reason, now=now
        )
    _require_charged(booking)

    details = booking.details
    cancel_status = None
    cancel_key = None
    if details.payment_status == PaymentStatus.authorized and details.gateway_ref:
        cancel_key = f"{details.gateway_ref}-cancel"
        try:
            cancel_status = gateway.cancel_authorization(details.gateway_ref, idempotency_key=cancel_key)
        except AlreadyCaptured:
            logger.warning(
                "Authorization was captured before it could be released; reconciling",
                extra={"booking_id": booking.id},
            )
            if booking.approval_status == ApprovalStatus.accepted:
                with ledger.atomic(db):
                    ledger.write_booking_transition(
                        db,
                        booking,
                        BookingState(ApprovalStatus.accepted, booking.fulfillment_status, PaymentStatus.captured),
                        actor=actor,
                        reason="Reconciled captured payment",
                        now=now,
                    )
            return False

    with ledger.atomic(db):
        ledger.write_booking_transition(
            db,
            booking,
            new_state,
            actor=actor,
            reason=reason,
            booking_values=booking_values,
            now=now,
        )
        if cancel_status is not None:
            ledger.record_payment(
                db,
                booking_id=booking.id,
                kind=BookingPaymentKind.cancellation,
                gateway_ref=details.gateway_ref,
                amount_cents=details.client_charge_cents,
                currency=details.currency,
                status=cancel_status,
                idempotency_key=cancel_key,
            )
    logger.info("Authorization released", extra={"booking_id": booking.id, "reason": reason})
    return True


def _release_participant(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    participant: models.BookingParticipant,
    new_state: ParticipantState,
    *,
    actor: Actor,
    reason: str | None,
    now: datetime,
) -> bool:
    cancel_status = None
    cancel_key = None
    if participant.payment_status == ParticipantPaymentStatus.authorized and participant.gateway_ref:
        cancel_key = f"{participant.gateway_ref}-cancel"
        try:
            cancel_status = gateway.cancel_authorization(participant.gateway_ref, idempotency_key=cancel_key)
        except AlreadyCaptured:
            logger.warning(
                "Participant authorization was captured before it could be released; reconciling",
                extra={"booking_id": booking.id, "participant_id": participant.id},
            )
            with ledger.atomic(db):
                ledger.apply_participant_state(
                    db,
                    booking,
                    participant,
                    ParticipantState(ParticipantStatus.accepted, ParticipantPaymentStatus.captured),
                    actor=actor,
                    reason="Reconciled captured payment",
                    values={"expires_at": None},
                    now=now,
                )
            return False

    with ledger.atomic(db):
        ledger.apply_participant_state(
            db,
            booking,
            participant,
            new_state,
            actor=actor,
            reason=reason,
            values={"expires_at": None},
            now=now,
        )
        if cancel_status is not None:
            ledger.record_payment(
                db,
                booking_id=booking.id,
                participant_id=participant.id,
                kind=BookingPaymentKind.cancellation,
                gateway_ref=participant.gateway_ref,
                amount_cents=participant.amount_cents,
                currency=participant.currency,
                status=cancel_status,
                idempotency_key=cancel_key,
            )
    logger.info(
        "Participant authorization released",
        extra={"booking_id": booking.id, "participant_id": participant.id, "reason": reason},
    )
    return True


def refund(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    new_state: BookingState | ParticipantState,
    *,
    actor: Actor,
    reason: str | None = None,
    amount_cents: int | None = None,
    participant: models.BookingParticipant | None = None,
    booking_values: dict | None = None,
    now: datetime | None = None,
) -> PaymentOutcome:
    """Refund a captured payment; ``amount_cents=None`` refunds it in full."""
    now = now or ledger.utc_now()
    if booking.booking_type == BookingType.public_group:
        participant = _require_lesson_participant(booking, participant)
        if participant.payment_status != ParticipantPaymentStatus.captured or not participant.gateway_ref:
            raise InvalidTransition("Only captured payments can be refunded")
        gateway_ref = participant.gateway_ref
        charged = participant.amount_cents
        currency = participant.currency
    else:
        _require_charged(booking)
        details = booking.details
        if details.payment_status != PaymentStatus.captured or not details.gateway_ref:
            raise InvalidTransition("Only captured payments can be refunded")
        gateway_ref = details.gateway_ref
        charged = details.client_charge_cents
        currency = details.currency
    if amount_cents is not None and not 0 < amount_cents <= charged:
        raise GuardViolation("invalid_refund_amount", "Refund amount must be positive and within the charge")

    refunded_cents = charged if amount_cents is None else amount_cents
    refund_key = f"{gateway_ref}-refund-{_refund_count(db, booking.id) + 1}"
    refund_ref = gateway.refund(gateway_ref, amount_cents, idempotency_key=refund_key)
    with ledger.atomic(db):
        if participant is not None:
            ledger.apply_participant_state(
                db,
                booking,
                participant,
                new_state,
                actor=actor,
                reason=reason,
                values={"refund_amount_cents": refunded_cents},
                now=now,
            )
        else:
            ledger.write_booking_transition(
                db,
                booking,
                new_state,
                actor=actor,
                reason=reason,
                booking_values=booking_values,
                detail_values={"refund_amount_cents": refunded_cents},
                now=now,
            )
        ledger.record_payment(
            db,
            booking_id=booking.id,
            participant_id=participant.id if participant is not None else None,
            kind=BookingPaymentKind.refund,
            gateway_ref=refund_ref,
            amount_cents=refunded_cents,
            currency=currency,
            status="refunded",
            idempotency_key=refund_key,
        )
    logger.info(
        "Payment refunded",
        extra={"booking_id": booking.id, "amount_cents": refunded_cents, "reason": reason},
    )
    return PaymentOutcome(gateway_ref, None, "refunded")
