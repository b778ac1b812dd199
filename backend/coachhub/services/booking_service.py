"""User actions on bookings.

Every public action resolves the caller's role on the booking, asks the state
machine for the transition and carries it out through the ledger and the
payment orchestrator. Failures from the booking error taxonomy are caught at
this boundary and reported through ``ActionResult``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import functools
import hashlib
import inspect
import json
import logging
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..config import get_settings
from ..core.constants import (
    AUTO_COMPLETE_REASON,
    LESSON_CANCELLED_REASON,
    MAX_GROUP_SIZE,
    MIN_GROUP_SIZE,
)
from ..core.errors import (
    BookingError,
    ConcurrencyConflict,
    DataIntegrityViolation,
    GatewayError,
    GuardViolation,
    InvalidTransition,
    NotFound,
)
from ..core.security import Principal, Role
from ..db import models
from ..db.models import (
    ApprovalStatus,
    BookingType,
    CapacityStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantRole,
    ParticipantStatus,
)
from . import ledger, notification_service, payment_orchestrator
from .ledger import Actor
from .notification_service import NotificationIntent
from .payments import BasePaymentGateway
from .pricing import get_pricing_policy
from .state_machine import (
    ActorRole,
    Effect,
    Event,
    ParticipantState,
    TransitionContext,
    next_booking_state,
    next_participant_state,
    private_participant_state,
)

logger = logging.getLogger(__name__)

ACTIVE_PARTICIPANT_STATUSES = (
    ParticipantStatus.awaiting_payment,
    ParticipantStatus.awaiting_coach,
    ParticipantStatus.accepted,
)

OPEN_APPROVAL_STATUSES = (ApprovalStatus.pending_review, ApprovalStatus.accepted)


@dataclass(slots=True)
class ActionResult:
    ok: bool
    booking_id: int | None = None
    participant_id: int | None = None
    created: bool = False
    client_secret: str | None = None
    error_code: str | None = None
    reason_code: str | None = None
    reason: str | None = None
    notifications: list[NotificationIntent] = field(default_factory=list)

    @classmethod
    def failure(cls, exc: BookingError, booking_id: int | None = None) -> ActionResult:
        return cls(
            ok=False,
            booking_id=booking_id,
            error_code=exc.code,
            reason_code=exc.reason_code,
            reason=exc.message,
        )


def user_action(func):
    signature = inspect.signature(func)

    @functools.wraps(func)
    def wrapper(db: Session, *args, **kwargs) -> ActionResult:
        try:
            return func(db, *args, **kwargs)
        except BookingError as exc:
            db.rollback()
            booking_id = signature.bind_partial(db, *args, **kwargs).arguments.get("booking_id")
            extra = {"action": func.__name__, "booking_id": booking_id, "error_code": exc.code}
            if isinstance(exc, DataIntegrityViolation):
                logger.error("Booking action aborted: %s", exc, extra=extra)
            elif isinstance(exc, GatewayError):
                logger.warning("Payment gateway failure: %s", exc.detail, extra=extra)
            else:
                logger.info("Booking action rejected: %s", exc, extra=extra)
            return ActionResult.failure(exc, booking_id=booking_id)

    return wrapper


def _now(now: datetime | None) -> datetime:
    return now or ledger.utc_now()


def _load_booking(db: Session, booking_id: int) -> models.Booking:
    booking = ledger.get_booking(db, booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return booking


def _load_participant(
    db: Session, booking: models.Booking, participant_id: int | None
) -> models.BookingParticipant:
    if participant_id is None:
        raise InvalidTransition("Choose a participant for this lesson")
    participant = db.get(models.BookingParticipant, participant_id)
    if participant is None or participant.booking_id != booking.id:
        raise NotFound(f"Participant {participant_id} not found")
    return participant


def _own_participant(
    db: Session, booking: models.Booking, principal: Principal
) -> models.BookingParticipant:
    participant = ledger.find_participant(db, booking.id, principal.user_id)
    if participant is None:
        raise InvalidTransition("You have not joined this lesson")
    return participant


def _requester_role(principal: Principal, role: ActorRole) -> ActorRole:
    if principal.role == Role.admin:
        return ActorRole.admin
    if principal.role == Role.system:
        return ActorRole.system
    if principal.user_id is None:
        raise GuardViolation("forbidden_role", "Unknown user")
    return role


def resolve_role(principal: Principal, booking: models.Booking) -> ActorRole:
    if principal.role == Role.admin:
        return ActorRole.admin
    if principal.role == Role.system:
        return ActorRole.system
    if principal.user_id is None:
        raise GuardViolation("forbidden_role", "Unknown user")
    if principal.user_id == booking.coach_id:
        return ActorRole.coach
    if booking.booking_type == BookingType.individual:
        if principal.user_id == booking.individual_details.client_id:
            return ActorRole.client
    elif booking.booking_type == BookingType.private_group:
        if principal.user_id == booking.private_group_details.organizer_id:
            return ActorRole.organizer
        if any(member.user_id == principal.user_id for member in booking.participants):
            return ActorRole.participant
    elif booking.booking_type == BookingType.public_group:
        return ActorRole.participant
    else:
        raise ValueError(f"Unsupported booking type {booking.booking_type}")
    raise GuardViolation("forbidden_role", "You are not a party to this booking")


def _actor(principal: Principal, role: ActorRole) -> Actor:
    return Actor(principal.actor, role)


def _context(booking: models.Booking, role: ActorRole, now: datetime, **extra: Any) -> TransitionContext:
    payment_due_at = None
    if booking.booking_type in (BookingType.individual, BookingType.private_group):
        payment_due_at = booking.details.payment_due_at
    return TransitionContext(
        role=role,
        now=now,
        scheduled_start_at=booking.scheduled_start_at,
        scheduled_end_at=booking.scheduled_end_at,
        response_due_at=booking.response_due_at,
        payment_due_at=payment_due_at,
        **extra,
    )


def _participant_context(
    booking: models.Booking,
    participant: models.BookingParticipant | None,
    role: ActorRole,
    now: datetime,
) -> TransitionContext:
    return _context(
        booking,
        role,
        now,
        expires_at=participant.expires_at if participant is not None else None,
        admitted=participant is not None and participant.admitted_at is not None,
        lesson=ledger.booking_state(booking),
    )


def require_payable_account(db: Session, coach_id: int) -> models.CoachPaymentAccount:
    account = db.execute(
        select(models.CoachPaymentAccount).where(models.CoachPaymentAccount.coach_id == coach_id)
    ).scalar_one_or_none()
    if account is None or not account.charges_enabled:
        raise GuardViolation("coach_not_payable", "This coach cannot accept payments yet")
    return account


def _request_fingerprint(*parts: Any) -> str:
    raw = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _request_key(
    db: Session, idempotency_key: str | None, *parts: Any
) -> tuple[str, models.Booking | None]:
    """Resolve the key for a new request and the booking it repeats, if any.

    A caller-supplied key always replays its booking. A derived key only
    matches a booking that is still open; once that booking is closed the
    next attempt gets a numbered key of its own.
    """
    if idempotency_key:
        return idempotency_key, ledger.find_booking_by_idempotency_key(db, idempotency_key)
    fingerprint = _request_fingerprint(*parts)
    earlier = ledger.find_bookings_by_key_prefix(db, fingerprint)
    for booking in earlier:
        if (
            booking.approval_status in OPEN_APPROVAL_STATUSES
            and booking.fulfillment_status == FulfillmentStatus.scheduled
        ):
            return booking.idempotency_key, booking
    if not earlier:
        return fingerprint, None
    return f"{fingerprint}-{len(earlier)}", None


def _require_schedule_free(db: Session, coach_id: int, starts_at: datetime, ends_at: datetime) -> None:
    if ledger.has_coach_conflict(db, coach_id, starts_at, ends_at):
        raise GuardViolation("time_conflict", "The coach is not available at this time")


def _require_price(price_cents: int) -> None:
    if price_cents <= 0:
        raise GuardViolation("invalid_price", "Price must be positive")


def _capped(deadline: datetime, booking_start: datetime) -> datetime:
    return min(deadline, booking_start)


def _new_booking(
    *,
    coach_id: int,
    booking_type: BookingType,
    state,
    scheduled_start_at: datetime,
    scheduled_end_at: datetime,
    location: dict[str, str] | None,
    client_message: str | None,
    idempotency_key: str,
    response_due_at: datetime | None,
) -> models.Booking:
    location = location or {}
    return models.Booking(
        coach_id=coach_id,
        booking_type=booking_type,
        approval_status=state.approval,
        fulfillment_status=state.fulfillment,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
        duration_minutes=int((scheduled_end_at - scheduled_start_at).total_seconds() // 60),
        location_name=location.get("name"),
        location_address=location.get("address"),
        location_notes=location.get("notes"),
        client_message=client_message,
        idempotency_key=idempotency_key,
        response_due_at=response_due_at,
    )


def _recipients(booking: models.Booking, exclude: int | None) -> list[int]:
    recipients = [booking.coach_id]
    if booking.booking_type == BookingType.individual:
        recipients.append(booking.individual_details.client_id)
    elif booking.booking_type == BookingType.private_group:
        recipients.extend(member.user_id for member in booking.participants)
    elif booking.booking_type == BookingType.public_group:
        recipients.extend(
            member.user_id
            for member in booking.participants
            if member.status in ACTIVE_PARTICIPANT_STATUSES or member.status == ParticipantStatus.completed
        )
    else:
        raise ValueError(f"Unsupported booking type {booking.booking_type}")
    seen: list[int] = []
    for user_id in recipients:
        if user_id != exclude and user_id not in seen:
            seen.append(user_id)
    return seen


@user_action
def request_individual_booking(
    db: Session,
    principal: Principal,
    *,
    coach_id: int,
    scheduled_start_at: datetime,
    scheduled_end_at: datetime,
    price_cents: int,
    location: dict[str, str] | None = None,
    client_message: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    settings = get_settings()
    role = _requester_role(principal, ActorRole.client)
    if principal.user_id == coach_id:
        raise GuardViolation("self_booking", "You cannot book your own session")
    key, existing = _request_key(
        db,
        idempotency_key,
        "individual",
        principal.user_id,
        coach_id,
        scheduled_start_at,
        scheduled_end_at,
        location,
    )
    if existing is not None:
        return ActionResult(ok=True, booking_id=existing.id, created=False)

    ctx = TransitionContext(
        role=role,
        now=now,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
    )
    transition = next_booking_state(BookingType.individual, None, Event.request, ctx)
    _require_price(price_cents)
    require_payable_account(db, coach_id)
    _require_schedule_free(db, coach_id, scheduled_start_at, scheduled_end_at)

    breakdown = get_pricing_policy(settings).quote(price_cents)
    booking = _new_booking(
        coach_id=coach_id,
        booking_type=BookingType.individual,
        state=transition.state,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
        location=location,
        client_message=client_message,
        idempotency_key=key,
        response_due_at=_capped(
            now + timedelta(hours=settings.coach_response_window_hours), scheduled_start_at
        ),
    )
    details = models.IndividualBookingDetails(
        client_id=principal.user_id,
        payment_status=transition.state.payment,
        currency=settings.payment_currency,
        **breakdown.as_columns(),
    )
    booking, created = ledger.create_booking(
        db, booking, details, actor=_actor(principal, role), reason="Requested by client"
    )
    notifications = [notification_service.booking_requested(booking)] if created else []
    return ActionResult(ok=True, booking_id=booking.id, created=created, notifications=notifications)


@user_action
def request_private_group_booking(
    db: Session,
    principal: Principal,
    *,
    coach_id: int,
    scheduled_start_at: datetime,
    scheduled_end_at: datetime,
    price_per_person_cents: int,
    invitee_ids: Iterable[int],
    location: dict[str, str] | None = None,
    client_message: str | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    settings = get_settings()
    role = _requester_role(principal, ActorRole.organizer)
    invitees = list(invitee_ids)
    if principal.user_id == coach_id or coach_id in invitees:
        raise GuardViolation("self_booking", "The coach cannot be part of the group")
    total = len(invitees) + 1
    if not MIN_GROUP_SIZE <= total <= MAX_GROUP_SIZE:
        raise GuardViolation(
            "invalid_group_size",
            f"Groups must have between {MIN_GROUP_SIZE} and {MAX_GROUP_SIZE} people",
        )
    key, existing = _request_key(
        db,
        idempotency_key,
        "private_group",
        principal.user_id,
        coach_id,
        scheduled_start_at,
        scheduled_end_at,
        location,
        sorted(invitees),
    )
    if existing is not None:
        return ActionResult(ok=True, booking_id=existing.id, created=False)

    ctx = TransitionContext(
        role=role,
        now=now,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
    )
    transition = next_booking_state(BookingType.private_group, None, Event.request, ctx)
    _require_price(price_per_person_cents)
    require_payable_account(db, coach_id)
    _require_schedule_free(db, coach_id, scheduled_start_at, scheduled_end_at)

    breakdown = get_pricing_policy(settings).quote(price_per_person_cents * total)
    booking = _new_booking(
        coach_id=coach_id,
        booking_type=BookingType.private_group,
        state=transition.state,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
        location=location,
        client_message=client_message,
        idempotency_key=key,
        response_due_at=_capped(
            now + timedelta(hours=settings.coach_response_window_hours), scheduled_start_at
        ),
    )
    details = models.PrivateGroupBookingDetails(
        organizer_id=principal.user_id,
        total_participants=total,
        price_per_person_cents=price_per_person_cents,
        payment_status=transition.state.payment,
        currency=settings.payment_currency,
        **breakdown.as_columns(),
    )
    member_state = private_participant_state(
        transition.state,
        ParticipantState(ParticipantStatus.requested, ParticipantPaymentStatus.requires_payment_method),
    )
    members = [
        models.BookingParticipant(
            user_id=principal.user_id,
            role=ParticipantRole.organizer,
            status=member_state.status,
            payment_status=member_state.payment,
            amount_cents=breakdown.client_charge_cents,
            currency=settings.payment_currency,
            joined_at=now,
        )
    ]
    members.extend(
        models.BookingParticipant(
            user_id=user_id,
            role=ParticipantRole.participant,
            status=member_state.status,
            payment_status=member_state.payment,
            amount_cents=0,
            currency=settings.payment_currency,
            joined_at=now,
        )
        for user_id in invitees
    )
    booking, created = ledger.create_booking(
        db, booking, details, members, actor=_actor(principal, role), reason="Requested by organizer"
    )
    notifications = [notification_service.booking_requested(booking)] if created else []
    return ActionResult(ok=True, booking_id=booking.id, created=created, notifications=notifications)


@user_action
def create_public_lesson(
    db: Session,
    principal: Principal,
    *,
    title: str,
    scheduled_start_at: datetime,
    scheduled_end_at: datetime,
    max_participants: int,
    price_per_person_cents: int,
    min_participants: int = 1,
    description: str | None = None,
    location: dict[str, str] | None = None,
    coach_id: int | None = None,
    recurring_template_id: int | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    settings = get_settings()
    if principal.role == Role.admin:
        role = ActorRole.admin
        if coach_id is None:
            raise GuardViolation("coach_required", "Choose the coach who runs this lesson")
    elif principal.role == Role.coach:
        role = _requester_role(principal, ActorRole.coach)
        coach_id = principal.user_id
    else:
        raise GuardViolation("forbidden_role", "Only coaches can create lessons")
    if not 1 <= min_participants <= max_participants <= MAX_GROUP_SIZE:
        raise GuardViolation(
            "invalid_group_size",
            f"Lessons take between 1 and {MAX_GROUP_SIZE} participants",
        )
    key, existing = _request_key(
        db, idempotency_key, "public_group", coach_id, scheduled_start_at, scheduled_end_at, title
    )
    if existing is not None:
        return ActionResult(ok=True, booking_id=existing.id, created=False)

    ctx = TransitionContext(
        role=role,
        now=now,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
    )
    transition = next_booking_state(BookingType.public_group, None, Event.create_lesson, ctx)
    _require_price(price_per_person_cents)
    require_payable_account(db, coach_id)
    _require_schedule_free(db, coach_id, scheduled_start_at, scheduled_end_at)

    booking = _new_booking(
        coach_id=coach_id,
        booking_type=BookingType.public_group,
        state=transition.state,
        scheduled_start_at=scheduled_start_at,
        scheduled_end_at=scheduled_end_at,
        location=location,
        client_message=None,
        idempotency_key=key,
        response_due_at=None,
    )
    booking.coach_responded_at = now
    booking.recurring_template_id = recurring_template_id
    details = models.PublicGroupLessonDetails(
        title=title,
        description=description,
        max_participants=max_participants,
        min_participants=min_participants,
        price_per_person_cents=price_per_person_cents,
        currency=settings.payment_currency,
        capacity_status=transition.state.capacity,
        current_participants=0,
        authorized_participants=0,
        captured_participants=0,
    )
    booking, created = ledger.create_booking(
        db, booking, details, actor=_actor(principal, role), reason="Lesson created"
    )
    return ActionResult(ok=True, booking_id=booking.id, created=created)


def _join_request(
    db: Session,
    principal: Principal,
    booking: models.Booking,
    now: datetime,
) -> models.BookingParticipant:
    if booking.booking_type != BookingType.public_group:
        raise InvalidTransition("Only public lessons can be joined")
    role = resolve_role(principal, booking)
    if role != ActorRole.participant:
        raise GuardViolation("forbidden_role", "Only clients can join a lesson")
    settings = get_settings()
    participant = ledger.find_participant(db, booking.id, principal.user_id)
    transition = next_participant_state(
        ledger.participant_state(participant) if participant is not None else None,
        Event.request,
        _participant_context(booking, None, role, now),
    )
    details = booking.public_group_details
    hold = _capped(now + timedelta(hours=settings.payment_deadline_hours), booking.scheduled_start_at)
    actor = _actor(principal, role)
    if participant is None:
        participant = models.BookingParticipant(
            user_id=principal.user_id,
            role=ParticipantRole.participant,
            status=transition.state.status,
            payment_status=transition.state.payment,
            amount_cents=details.price_per_person_cents,
            currency=details.currency,
            joined_at=now,
            expires_at=hold,
        )
        return ledger.add_participant(db, booking, participant, actor=actor, reason="Joined lesson")
    with ledger.atomic(db):
        ledger.apply_participant_state(
            db,
            booking,
            participant,
            transition.state,
            actor=actor,
            reason="Rejoined lesson",
            values={
                "joined_at": now,
                "expires_at": hold,
                "amount_cents": details.price_per_person_cents,
                "gateway_ref": None,
                "admitted_at": None,
                "authorized_at": None,
                "captured_at": None,
                "refunded_at": None,
                "refund_amount_cents": None,
                "cancelled_at": None,
                "cancellation_reason": None,
            },
            now=now,
        )
    return participant


def _participant_payment_key(db: Session, participant: models.BookingParticipant) -> str:
    # one key per payment attempt; a retry after a lost commit reuses it
    attempts = db.scalar(
        select(func.count(models.BookingPayment.id)).where(
            models.BookingPayment.participant_id == participant.id,
            models.BookingPayment.kind == models.BookingPaymentKind.authorization,
        )
    )
    return f"participant-{participant.id}-{attempts + 1}"


def _pay_participation(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking: models.Booking,
    participant: models.BookingParticipant,
    idempotency_key: str | None,
    now: datetime,
) -> ActionResult:
    if participant.user_id != principal.user_id:
        raise GuardViolation("forbidden_role", "Participants pay for themselves")
    settings = get_settings()
    role = ActorRole.participant
    transition = next_participant_state(
        ledger.participant_state(participant),
        Event.client_pay,
        _participant_context(booking, participant, role, now),
    )
    if transition.noop:
        return ActionResult(ok=True, booking_id=booking.id, participant_id=participant.id)
    account = require_payable_account(db, booking.coach_id)
    outcome = payment_orchestrator.authorize_or_charge(
        db,
        gateway,
        booking,
        participant.amount_cents,
        idempotency_key or _participant_payment_key(db, participant),
        actor=_actor(principal, role),
        participant=participant,
        destination_account_id=account.gateway_account_id,
        capture=transition.has(Effect.capture),
        hold_until=_capped(
            now + timedelta(hours=settings.authorization_hold_hours), booking.scheduled_start_at
        ),
        now=now,
    )
    if participant.status == ParticipantStatus.accepted:
        notifications = [
            notification_service.participant_update(
                booking, participant, "participant_confirmed", "Payment received. Your spot is confirmed."
            )
        ]
    else:
        notifications = [
            notification_service.participant_update(
                booking,
                participant,
                "participant_authorized",
                "Your card was authorized. You will only be charged once the coach confirms your spot.",
            ),
            notification_service.NotificationIntent(
                kind="participant_awaiting_coach",
                recipient_id=booking.coach_id,
                booking_id=booking.id,
                participant_id=participant.id,
                message="A participant is waiting for your confirmation.",
            ),
        ]
    return ActionResult(
        ok=True,
        booking_id=booking.id,
        participant_id=participant.id,
        client_secret=outcome.client_secret,
        notifications=notifications,
    )


@user_action
def request_to_join(
    db: Session,
    principal: Principal,
    booking_id: int,
    *,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    participant = _join_request(db, principal, booking, now)
    return ActionResult(ok=True, booking_id=booking.id, participant_id=participant.id, created=True)


@user_action
def join_public_lesson(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    """Request a spot and authorize payment in one step."""
    now = _now(now)
    booking = _load_booking(db, booking_id)
    participant = None
    if principal.user_id is not None:
        participant = ledger.find_participant(db, booking.id, principal.user_id)
    if participant is None or participant.status == ParticipantStatus.cancelled:
        participant = _join_request(db, principal, booking, now)
    return _pay_participation(db, gateway, principal, booking, participant, idempotency_key, now)


@user_action
def client_pay(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    settings = get_settings()
    booking = _load_booking(db, booking_id)
    if booking.booking_type == BookingType.public_group:
        participant = _own_participant(db, booking, principal)
        return _pay_participation(db, gateway, principal, booking, participant, idempotency_key, now)

    role = resolve_role(principal, booking)
    transition = next_booking_state(
        booking.booking_type, ledger.booking_state(booking), Event.client_pay, _context(booking, role, now)
    )
    if transition.noop:
        return ActionResult(ok=True, booking_id=booking.id)
    account = require_payable_account(db, booking.coach_id)
    actor = _actor(principal, role)
    key = idempotency_key or f"booking-{booking.id}-payment"
    with ledger.booking_lock(db, booking.id, ttl=timedelta(seconds=settings.lock_ttl_seconds), now=now):
        db.refresh(booking)
        db.refresh(booking.details)
        transition = next_booking_state(
            booking.booking_type,
            ledger.booking_state(booking),
            Event.client_pay,
            _context(booking, role, now),
        )
        if transition.noop:
            return ActionResult(ok=True, booking_id=booking.id)
        outcome = payment_orchestrator.authorize_or_charge(
            db,
            gateway,
            booking,
            booking.details.client_charge_cents,
            key,
            actor=actor,
            destination_account_id=account.gateway_account_id,
            now=now,
        )
    notifications = [
        notification_service.payment_captured(booking, booking.payer_id),
        notification_service.NotificationIntent(
            kind="booking_paid",
            recipient_id=booking.coach_id,
            booking_id=booking.id,
            message="The client has paid. The session is confirmed.",
        ),
    ]
    return ActionResult(
        ok=True,
        booking_id=booking.id,
        client_secret=outcome.client_secret,
        notifications=notifications,
    )


def _admit_participant(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking: models.Booking,
    role: ActorRole,
    participant_id: int | None,
    now: datetime,
) -> ActionResult:
    participant = _load_participant(db, booking, participant_id)
    transition = next_participant_state(
        ledger.participant_state(participant),
        Event.coach_accept,
        _participant_context(booking, participant, role, now),
    )
    if transition.noop:
        notifications = []
        if participant.status == ParticipantStatus.awaiting_payment and participant.admitted_at is None:
            ledger.mark_admitted(db, participant, now=now)
            notifications.append(
                notification_service.participant_update(
                    booking,
                    participant,
                    "participant_admitted",
                    "The coach approved your spot. Complete payment to confirm it.",
                )
            )
        return ActionResult(
            ok=True, booking_id=booking.id, participant_id=participant.id, notifications=notifications
        )
    payment_orchestrator.capture_on_acceptance(
        db, gateway, booking, participant=participant, actor=_actor(principal, role), now=now
    )
    notification = notification_service.participant_update(
        booking, participant, "participant_confirmed", "The coach confirmed your spot. Payment was captured."
    )
    return ActionResult(
        ok=True, booking_id=booking.id, participant_id=participant.id, notifications=[notification]
    )


@user_action
def coach_accept(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    participant_id: int | None = None,
    now: datetime | None = None,
) -> ActionResult:
    """Accept a booking request, or admit one participant of a public lesson."""
    now = _now(now)
    settings = get_settings()
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    if booking.booking_type == BookingType.public_group:
        return _admit_participant(db, gateway, principal, booking, role, participant_id, now)

    transition = next_booking_state(
        booking.booking_type, ledger.booking_state(booking), Event.coach_accept, _context(booking, role, now)
    )
    due_at = _capped(now + timedelta(hours=settings.payment_deadline_hours), booking.scheduled_start_at)
    with ledger.atomic(db):
        ledger.write_booking_transition(
            db,
            booking,
            transition.state,
            actor=_actor(principal, role),
            reason="Accepted by coach",
            booking_values={"coach_responded_at": now},
            detail_values={"payment_due_at": due_at},
            now=now,
        )
    notification = notification_service.booking_accepted(booking, booking.payer_id, due_at)
    return ActionResult(ok=True, booking_id=booking.id, notifications=[notification])


def _decline_participant(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking: models.Booking,
    role: ActorRole,
    participant_id: int | None,
    reason: str,
    now: datetime,
) -> ActionResult:
    participant = _load_participant(db, booking, participant_id)
    transition = next_participant_state(
        ledger.participant_state(participant),
        Event.coach_decline,
        _participant_context(booking, participant, role, now),
    )
    actor = _actor(principal, role)
    if transition.has(Effect.release_authorization):
        released = payment_orchestrator.release_authorization(
            db, gateway, booking, transition.state, actor=actor, reason=reason, participant=participant, now=now
        )
        if not released:
            raise ConcurrencyConflict("The participant was confirmed while declining; cancel to refund")
    else:
        with ledger.atomic(db):
            ledger.apply_participant_state(
                db, booking, participant, transition.state, actor=actor, reason=reason, now=now
            )
    notification = notification_service.participant_update(
        booking, participant, "participant_declined", f"The coach declined your request. Reason: {reason}"
    )
    return ActionResult(
        ok=True, booking_id=booking.id, participant_id=participant.id, notifications=[notification]
    )


@user_action
def coach_decline(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    reason: str | None = None,
    participant_id: int | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    reason = reason or "Declined by coach"
    if booking.booking_type == BookingType.public_group:
        return _decline_participant(db, gateway, principal, booking, role, participant_id, reason, now)

    transition = next_booking_state(
        booking.booking_type, ledger.booking_state(booking), Event.coach_decline, _context(booking, role, now)
    )
    booking_values = {"coach_responded_at": now, "cancellation_reason": reason}
    actor = _actor(principal, role)
    if transition.has(Effect.release_authorization):
        payment_orchestrator.release_authorization(
            db, gateway, booking, transition.state, actor=actor, reason=reason, booking_values=booking_values, now=now
        )
    else:
        with ledger.atomic(db):
            ledger.write_booking_transition(
                db, booking, transition.state, actor=actor, reason=reason, booking_values=booking_values, now=now
            )
    notification = notification_service.booking_declined(booking, booking.payer_id, reason)
    return ActionResult(ok=True, booking_id=booking.id, notifications=[notification])


def cancel_participant(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    participant: models.BookingParticipant,
    *,
    actor: Actor,
    reason: str,
    now: datetime,
) -> NotificationIntent:
    """Cancel one lesson participant, refunding or releasing what they paid."""
    transition = next_participant_state(
        ledger.participant_state(participant),
        Event.cancel,
        _participant_context(booking, participant, actor.role, now),
    )
    refunded = False
    if transition.has(Effect.refund):
        payment_orchestrator.refund(
            db, gateway, booking, transition.state, actor=actor, reason=reason, participant=participant, now=now
        )
        refunded = True
    elif transition.has(Effect.release_authorization):
        released = payment_orchestrator.release_authorization(
            db, gateway, booking, transition.state, actor=actor, reason=reason, participant=participant, now=now
        )
        if not released:
            # captured meanwhile; cancel again from the reconciled state
            return cancel_participant(
                db, gateway, booking, participant, actor=actor, reason=reason, now=now
            )
    else:
        with ledger.atomic(db):
            ledger.apply_participant_state(
                db, booking, participant, transition.state, actor=actor, reason=reason, now=now
            )
    message = f"Your place in the lesson was cancelled. Reason: {reason}"
    if refunded:
        message = f"{message} A refund has been issued."
    return notification_service.participant_update(booking, participant, "participation_cancelled", message)


def _cancel_lesson(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking: models.Booking,
    role: ActorRole,
    reason: str | None,
    now: datetime,
) -> ActionResult:
    ctx = _context(booking, role, now)
    transition = next_booking_state(booking.booking_type, ledger.booking_state(booking), Event.cancel, ctx)
    actor = _actor(principal, role)
    reason = reason or LESSON_CANCELLED_REASON
    if booking.public_group_details.capacity_status != CapacityStatus.closed:
        closing = next_booking_state(
            booking.booking_type, ledger.booking_state(booking), Event.close_registration, ctx
        )
        with ledger.atomic(db):
            ledger.apply_booking_state(db, booking, closing.state, actor=actor, reason=reason, now=now)
    notifications = []
    for participant in list(booking.participants):
        db.refresh(participant)
        if participant.status in ACTIVE_PARTICIPANT_STATUSES:
            notifications.append(
                cancel_participant(db, gateway, booking, participant, actor=actor, reason=reason, now=now)
            )
    with ledger.atomic(db):
        ledger.apply_booking_state(db, booking, transition.state, actor=actor, reason=reason, now=now)
    return ActionResult(ok=True, booking_id=booking.id, notifications=notifications)


@user_action
def cancel_booking(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    """Cancel a booking; on a public lesson a participant leaves and the coach cancels the lesson."""
    now = _now(now)
    settings = get_settings()
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    if booking.booking_type == BookingType.public_group:
        if role == ActorRole.participant:
            return _leave(db, gateway, principal, booking, reason, now)
        return _cancel_lesson(db, gateway, principal, booking, role, reason, now)

    next_booking_state(
        booking.booking_type, ledger.booking_state(booking), Event.cancel, _context(booking, role, now)
    )
    reason = reason or f"Cancelled by {role.value}"
    actor = _actor(principal, role)
    refunded = False
    with ledger.booking_lock(db, booking.id, ttl=timedelta(seconds=settings.lock_ttl_seconds), now=now):
        db.refresh(booking)
        db.refresh(booking.details)
        transition = next_booking_state(
            booking.booking_type, ledger.booking_state(booking), Event.cancel, _context(booking, role, now)
        )
        if transition.has(Effect.refund):
            payment_orchestrator.refund(
                db, gateway, booking, transition.state, actor=actor, reason=reason, now=now
            )
            refunded = True
        elif transition.has(Effect.release_authorization):
            released = payment_orchestrator.release_authorization(
                db, gateway, booking, transition.state, actor=actor, reason=reason, now=now
            )
            if not released:
                raise ConcurrencyConflict("Payment completed while cancelling; please retry")
        else:
            with ledger.atomic(db):
                ledger.write_booking_transition(
                    db, booking, transition.state, actor=actor, reason=reason, now=now
                )
    notifications = [
        notification_service.booking_cancelled(booking, user_id, reason, refunded=refunded)
        for user_id in _recipients(booking, exclude=principal.user_id)
    ]
    return ActionResult(ok=True, booking_id=booking.id, notifications=notifications)


def _leave(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking: models.Booking,
    reason: str | None,
    now: datetime,
) -> ActionResult:
    participant = _own_participant(db, booking, principal)
    notification = cancel_participant(
        db,
        gateway,
        booking,
        participant,
        actor=_actor(principal, ActorRole.participant),
        reason=reason or "Left the lesson",
        now=now,
    )
    return ActionResult(
        ok=True, booking_id=booking.id, participant_id=participant.id, notifications=[notification]
    )


@user_action
def leave_lesson(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    if booking.booking_type != BookingType.public_group:
        raise InvalidTransition("Only public lessons can be left; cancel the booking instead")
    return _leave(db, gateway, principal, booking, reason, now)


@user_action
def close_registration(
    db: Session,
    principal: Principal,
    booking_id: int,
    *,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    transition = next_booking_state(
        booking.booking_type,
        ledger.booking_state(booking),
        Event.close_registration,
        _context(booking, role, now),
    )
    if not transition.noop:
        with ledger.atomic(db):
            ledger.apply_booking_state(
                db, booking, transition.state, actor=_actor(principal, role), reason="Registration closed", now=now
            )
    return ActionResult(ok=True, booking_id=booking.id)


def complete_booking(
    db: Session,
    gateway: BasePaymentGateway,
    booking: models.Booking,
    *,
    actor: Actor,
    reason: str = AUTO_COMPLETE_REASON,
    now: datetime,
) -> list[NotificationIntent]:
    """Mark a finished session complete; unconfirmed lesson participants are released."""
    ctx = _context(booking, actor.role, now)
    transition = next_booking_state(booking.booking_type, ledger.booking_state(booking), Event.mark_complete, ctx)
    notifications: list[NotificationIntent] = []
    if booking.booking_type == BookingType.public_group:
        for participant in list(booking.participants):
            db.refresh(participant)
            if participant.status == ParticipantStatus.accepted:
                done = next_participant_state(
                    ledger.participant_state(participant), Event.mark_complete, ctx
                )
                with ledger.atomic(db):
                    ledger.apply_participant_state(
                        db, booking, participant, done.state, actor=actor, reason=reason, now=now
                    )
                notifications.append(notification_service.booking_completed(booking, participant.user_id))
            elif participant.status in ACTIVE_PARTICIPANT_STATUSES:
                notifications.append(
                    cancel_participant(
                        db,
                        gateway,
                        booking,
                        participant,
                        actor=actor,
                        reason="Not confirmed before the lesson ended",
                        now=now,
                    )
                )
    with ledger.atomic(db):
        ledger.write_booking_transition(db, booking, transition.state, actor=actor, reason=reason, now=now)
    if booking.booking_type != BookingType.public_group:
        notifications.append(notification_service.booking_completed(booking, booking.payer_id))
    return notifications


@user_action
def mark_complete(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    notifications = complete_booking(
        db, gateway, booking, actor=_actor(principal, role), reason="Marked complete", now=now
    )
    return ActionResult(ok=True, booking_id=booking.id, notifications=notifications)


@user_action
def open_dispute(
    db: Session,
    principal: Principal,
    booking_id: int,
    *,
    reason: str,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    if booking.booking_type == BookingType.public_group and role == ActorRole.participant:
        participant = _own_participant(db, booking, principal)
        if participant.payment_status != ParticipantPaymentStatus.captured:
            raise GuardViolation("not_a_paying_participant", "Only participants who paid can open a dispute")
    transition = next_booking_state(
        booking.booking_type, ledger.booking_state(booking), Event.dispute, _context(booking, role, now)
    )
    with ledger.atomic(db):
        ledger.write_booking_transition(
            db,
            booking,
            transition.state,
            actor=_actor(principal, role),
            reason=reason,
            booking_values={"dispute_reason": reason},
            now=now,
        )
    notifications = [
        notification_service.dispute_opened(booking, user_id)
        for user_id in _recipients(booking, exclude=principal.user_id)
    ]
    return ActionResult(ok=True, booking_id=booking.id, notifications=notifications)


@user_action
def refund_booking(
    db: Session,
    gateway: BasePaymentGateway,
    principal: Principal,
    booking_id: int,
    *,
    amount_cents: int | None = None,
    participant_id: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> ActionResult:
    """Apply a dispute-resolution refund decided outside this service."""
    now = _now(now)
    settings = get_settings()
    booking = _load_booking(db, booking_id)
    role = resolve_role(principal, booking)
    ctx = _context(booking, role, now)
    transition = next_booking_state(booking.booking_type, ledger.booking_state(booking), Event.refund, ctx)
    actor = _actor(principal, role)
    reason = reason or "Refund after dispute review"

    if booking.booking_type == BookingType.public_group:
        if participant_id is not None:
            targets = [_load_participant(db, booking, participant_id)]
        else:
            if amount_cents is not None:
                raise GuardViolation("participant_required", "Partial refunds are issued per participant")
            targets = [
                member
                for member in booking.participants
                if member.payment_status == ParticipantPaymentStatus.captured
            ]
        notifications = []
        for participant in targets:
            step = next_participant_state(ledger.participant_state(participant), Event.refund, ctx)
            payment_orchestrator.refund(
                db,
                gateway,
                booking,
                step.state,
                actor=actor,
                reason=reason,
                amount_cents=amount_cents,
                participant=participant,
                now=now,
            )
            notifications.append(
                notification_service.participant_update(
                    booking, participant, "refund_issued", "A refund has been issued for your lesson."
                )
            )
        return ActionResult(ok=True, booking_id=booking.id, notifications=notifications)

    with ledger.booking_lock(db, booking.id, ttl=timedelta(seconds=settings.lock_ttl_seconds), now=now):
        db.refresh(booking)
        db.refresh(booking.details)
        transition = next_booking_state(booking.booking_type, ledger.booking_state(booking), Event.refund, ctx)
        payment_orchestrator.refund(
            db,
            gateway,
            booking,
            transition.state,
            actor=actor,
            reason=reason,
            amount_cents=amount_cents,
            now=now,
        )
    notification = NotificationIntent(
        kind="refund_issued",
        recipient_id=booking.payer_id,
        booking_id=booking.id,
        message="A refund has been issued for your session.",
    )
    return ActionResult(ok=True, booking_id=booking.id, notifications=[notification])
