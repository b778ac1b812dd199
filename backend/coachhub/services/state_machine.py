"""Pure transition logic for bookings and public-group participants.

Nothing here touches the database or the payment gateway. Callers pass the
current compound state, the event and an explicit context (acting role,
clock, deadlines) and receive the next state together with the side effects
the transition requires, or an ``InvalidTransition`` / ``GuardViolation``.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum as PyEnum

from ..core.errors import DataIntegrityViolation, GuardViolation, InvalidTransition
from ..db.models import (
    ApprovalStatus,
    BookingType,
    CapacityStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
    PaymentStatus,
)


class ActorRole(str, PyEnum):
    client = "client"
    organizer = "organizer"
    participant = "participant"
    coach = "coach"
    admin = "admin"
    system = "system"


class Event(str, PyEnum):
    request = "request"
    create_lesson = "create_lesson"
    coach_accept = "coach_accept"
    coach_decline = "coach_decline"
    client_pay = "client_pay"
    expire_unanswered = "expire_unanswered"
    expire_unpaid = "expire_unpaid"
    expire_unadmitted_authorization = "expire_unadmitted_authorization"
    cancel = "cancel"
    mark_complete = "mark_complete"
    dispute = "dispute"
    refund = "refund"
    close_registration = "close_registration"


class Effect(str, PyEnum):
    authorize = "authorize"
    capture = "capture"
    release_authorization = "release_authorization"
    refund = "refund"
    cascade_participants = "cascade_participants"


@dataclass(frozen=True)
class BookingState:
    approval: ApprovalStatus
    fulfillment: FulfillmentStatus
    payment: PaymentStatus | None = None
    capacity: CapacityStatus | None = None


@dataclass(frozen=True)
class ParticipantState:
    status: ParticipantStatus
    payment: ParticipantPaymentStatus


@dataclass(frozen=True)
class TransitionContext:
    role: ActorRole
    now: datetime
    scheduled_start_at: datetime | None = None
    scheduled_end_at: datetime | None = None
    response_due_at: datetime | None = None
    payment_due_at: datetime | None = None
    expires_at: datetime | None = None
    admitted: bool = False
    lesson: BookingState | None = None


@dataclass(frozen=True)
class Transition:
    state: BookingState | ParticipantState
    effects: tuple[Effect, ...] = ()
    noop: bool = False

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


A = ApprovalStatus
F = FulfillmentStatus
P = PaymentStatus
C = CapacityStatus
PS = ParticipantStatus
PP = ParticipantPaymentStatus

_CHARGED_LEGAL: dict[tuple[ApprovalStatus, FulfillmentStatus], frozenset[PaymentStatus]] = {
    (A.pending_review, F.scheduled): frozenset({P.not_required}),
    (A.accepted, F.scheduled): frozenset({P.awaiting_client_payment, P.authorized, P.captured}),
    (A.accepted, F.completed): frozenset({P.captured}),
    (A.accepted, F.disputed): frozenset({P.captured, P.refunded}),
    (A.declined, F.scheduled): frozenset({P.not_required}),
    (A.expired, F.scheduled): frozenset({P.not_required}),
    (A.cancelled, F.scheduled): frozenset({P.not_required, P.failed, P.refunded}),
}

_PUBLIC_LEGAL: dict[tuple[ApprovalStatus, FulfillmentStatus], frozenset[CapacityStatus]] = {
    (A.accepted, F.scheduled): frozenset({C.open, C.full, C.closed}),
    (A.accepted, F.completed): frozenset({C.closed}),
    (A.accepted, F.disputed): frozenset({C.open, C.full, C.closed}),
    (A.cancelled, F.scheduled): frozenset({C.closed}),
}

_PARTICIPANT_LEGAL: dict[ParticipantStatus, frozenset[ParticipantPaymentStatus]] = {
    PS.requested: frozenset({PP.requires_payment_method}),
    PS.awaiting_payment: frozenset({PP.requires_payment_method}),
    PS.awaiting_coach: frozenset({PP.authorized}),
    PS.accepted: frozenset({PP.captured, PP.refunded}),
    PS.declined: frozenset({PP.requires_payment_method, PP.cancelled}),
    PS.cancelled: frozenset({PP.requires_payment_method, PP.cancelled, PP.refunded}),
    PS.completed: frozenset({PP.captured, PP.refunded}),
}

# Participant statuses that hold a seat in a public lesson
SEAT_HOLDING_STATUSES = frozenset({PS.awaiting_coach, PS.accepted, PS.completed})

COACH_ROLES = frozenset({ActorRole.coach, ActorRole.admin})
CLOSING_ROLES = frozenset({ActorRole.coach, ActorRole.admin, ActorRole.system})


def check_compound_state(booking_type: BookingType, state: BookingState) -> None:
    """Raise ``DataIntegrityViolation`` for a combination outside the legal table."""
    key = (state.approval, state.fulfillment)
    if booking_type in (BookingType.individual, BookingType.private_group):
        allowed = _CHARGED_LEGAL.get(key)
        if state.capacity is not None or allowed is None or state.payment not in allowed:
            raise DataIntegrityViolation(f"Illegal {booking_type.value} state {_describe(state)}")
        return
    if booking_type == BookingType.public_group:
        allowed = _PUBLIC_LEGAL.get(key)
        if state.payment is not None or allowed is None or state.capacity not in allowed:
            raise DataIntegrityViolation(f"Illegal public_group state {_describe(state)}")
        return
    raise ValueError(f"Unsupported booking type {booking_type}")


def check_participant_state(state: ParticipantState) -> None:
    if state.payment not in _PARTICIPANT_LEGAL.get(state.status, frozenset()):
        raise DataIntegrityViolation(
            f"Illegal participant state {state.status.value}/{state.payment.value}"
        )


def next_booking_state(
    booking_type: BookingType,
    state: BookingState | None,
    event: Event,
    ctx: TransitionContext,
) -> Transition:
    if booking_type in (BookingType.individual, BookingType.private_group):
        transition = _charged_transition(booking_type, state, event, ctx)
    elif booking_type == BookingType.public_group:
        transition = _public_lesson_transition(state, event, ctx)
    else:
        raise ValueError(f"Unsupported booking type {booking_type}")
    check_compound_state(booking_type, transition.state)
    return transition


def next_participant_state(
    state: ParticipantState | None,
    event: Event,
    ctx: TransitionContext,
) -> Transition:
    transition = _participant_transition(state, event, ctx)
    check_participant_state(transition.state)
    return transition


def private_participant_state(booking: BookingState, current: ParticipantState) -> ParticipantState:
    """Member row state implied by the parent private-group booking."""
    if current.status in (PS.cancelled, PS.declined):
        return current
    if booking.approval == A.pending_review:
        return ParticipantState(PS.requested, PP.requires_payment_method)
    if booking.approval == A.declined:
        return ParticipantState(PS.declined, PP.requires_payment_method)
    if booking.approval == A.expired:
        return ParticipantState(PS.cancelled, PP.requires_payment_method)
    if booking.approval == A.cancelled:
        if booking.payment == P.refunded:
            return ParticipantState(PS.cancelled, PP.refunded)
        return ParticipantState(PS.cancelled, PP.requires_payment_method)
    if booking.approval == A.accepted:
        if booking.payment == P.refunded:
            return ParticipantState(current.status, PP.refunded)
        if booking.fulfillment == F.completed or current.status == PS.completed:
            return ParticipantState(PS.completed, PP.captured)
        if booking.payment == P.captured:
            return ParticipantState(PS.accepted, PP.captured)
        return ParticipantState(PS.awaiting_payment, PP.requires_payment_method)
    raise ValueError(f"Unsupported approval status {booking.approval}")


def _describe(state: BookingState) -> str:
    parts = [state.approval.value, state.fulfillment.value]
    if state.payment is not None:
        parts.append(state.payment.value)
    if state.capacity is not None:
        parts.append(state.capacity.value)
    return "/".join(parts)


def _require_role(ctx: TransitionContext, *allowed: ActorRole) -> None:
    if ctx.role not in allowed:
        raise GuardViolation("forbidden_role", f"{ctx.role.value} may not perform this action")


def _require_future_start(ctx: TransitionContext) -> None:
    if ctx.scheduled_start_at is None or ctx.scheduled_start_at <= ctx.now:
        raise GuardViolation("start_in_past", "Session start time is in the past")


def _require_valid_schedule(ctx: TransitionContext) -> None:
    if ctx.scheduled_end_at is None or ctx.scheduled_start_at is None:
        raise GuardViolation("invalid_schedule", "Session start and end are required")
    if ctx.scheduled_end_at <= ctx.scheduled_start_at:
        raise GuardViolation("invalid_schedule", "Session must end after it starts")
    _require_future_start(ctx)


def _require_session_not_started(ctx: TransitionContext) -> None:
    if ctx.role == ActorRole.admin:
        return
    if ctx.scheduled_start_at is not None and ctx.scheduled_start_at <= ctx.now:
        raise GuardViolation("session_started", "The session has already started")


def _require_session_finished(ctx: TransitionContext) -> None:
    if ctx.scheduled_end_at is None or ctx.scheduled_end_at > ctx.now:
        raise GuardViolation("session_not_finished", "The session has not ended yet")


def _require_state(state, *, message: str):
    if state is None:
        raise InvalidTransition(message)
    return state


def _charged_transition(
    booking_type: BookingType,
    state: BookingState | None,
    event: Event,
    ctx: TransitionContext,
) -> Transition:
    payer = ActorRole.client if booking_type == BookingType.individual else ActorRole.organizer
    cascade: tuple[Effect, ...] = ()
    if booking_type == BookingType.private_group:
        cascade = (Effect.cascade_participants,)

    if event == Event.request:
        if state is not None:
            raise InvalidTransition("Booking already exists")
        _require_role(ctx, payer)
        _require_valid_schedule(ctx)
        return Transition(BookingState(A.pending_review, F.scheduled, P.not_required), cascade)

    state = _require_state(state, message=f"Cannot {event.value} a booking that does not exist")

    if event == Event.coach_accept:
        _require_role(ctx, *COACH_ROLES)
        if state.approval != A.pending_review:
            raise InvalidTransition(f"Cannot accept a booking that is {state.approval.value}")
        if ctx.response_due_at is not None and ctx.response_due_at <= ctx.now:
            raise GuardViolation("response_window_elapsed", "The response window has closed")
        _require_future_start(ctx)
        return Transition(
            BookingState(A.accepted, F.scheduled, P.awaiting_client_payment), cascade
        )

    if event == Event.coach_decline:
        _require_role(ctx, *COACH_ROLES)
        if state.approval != A.pending_review:
            raise InvalidTransition(f"Cannot decline a booking that is {state.approval.value}")
        return Transition(BookingState(A.declined, F.scheduled, P.not_required), cascade)

    if event == Event.client_pay:
        _require_role(ctx, payer)
        if state.approval != A.accepted or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Cannot pay for a booking that is {state.approval.value}")
        if state.payment == P.captured:
            return Transition(state, noop=True)
        if state.payment not in (P.awaiting_client_payment, P.authorized):
            raise InvalidTransition(f"Cannot pay while payment is {state.payment.value}")
        if ctx.payment_due_at is not None and ctx.payment_due_at < ctx.now:
            raise GuardViolation("payment_deadline_passed", "Payment deadline has passed")
        effects = (Effect.capture,) if state.payment == P.authorized else (Effect.authorize, Effect.capture)
        return Transition(BookingState(A.accepted, F.scheduled, P.captured), effects + cascade)

    if event == Event.expire_unanswered:
        _require_role(ctx, ActorRole.system)
        if state.approval != A.pending_review:
            raise InvalidTransition(f"Booking is {state.approval.value}, not awaiting a response")
        if ctx.response_due_at is None or ctx.response_due_at > ctx.now:
            raise GuardViolation("not_yet_due", "Response window is still open")
        return Transition(BookingState(A.expired, F.scheduled, P.not_required), cascade)

    if event == Event.expire_unpaid:
        _require_role(ctx, ActorRole.system)
        if state.approval != A.accepted or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Booking is {state.approval.value}, not awaiting payment")
        if state.payment == P.captured:
            return Transition(state, noop=True)
        if state.payment not in (P.awaiting_client_payment, P.authorized):
            raise InvalidTransition(f"Cannot expire payment that is {state.payment.value}")
        if ctx.payment_due_at is None or ctx.payment_due_at >= ctx.now:
            raise GuardViolation("not_yet_due", "Payment window is still open")
        effects = (Effect.release_authorization,) if state.payment == P.authorized else ()
        return Transition(BookingState(A.cancelled, F.scheduled, P.failed), effects + cascade)

    if event == Event.cancel:
        _require_role(ctx, payer, *COACH_ROLES)
        if state.approval not in (A.pending_review, A.accepted) or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Cannot cancel a booking that is {_describe(state)}")
        _require_session_not_started(ctx)
        if state.payment == P.captured:
            return Transition(
                BookingState(A.cancelled, F.scheduled, P.refunded), (Effect.refund,) + cascade
            )
        effects = (Effect.release_authorization,) if state.payment == P.authorized else ()
        return Transition(BookingState(A.cancelled, F.scheduled, P.not_required), effects + cascade)

    if event == Event.mark_complete:
        _require_role(ctx, *CLOSING_ROLES)
        if (
            state.approval != A.accepted
            or state.fulfillment != F.scheduled
            or state.payment != P.captured
        ):
            raise InvalidTransition(f"Cannot complete a booking that is {_describe(state)}")
        _require_session_finished(ctx)
        return Transition(BookingState(A.accepted, F.completed, P.captured), cascade)

    if event == Event.dispute:
        _require_role(ctx, payer, ActorRole.admin)
        if (
            state.approval != A.accepted
            or state.fulfillment not in (F.scheduled, F.completed)
            or state.payment != P.captured
        ):
            raise InvalidTransition(f"Cannot dispute a booking that is {_describe(state)}")
        return Transition(BookingState(A.accepted, F.disputed, P.captured))

    if event == Event.refund:
        _require_role(ctx, ActorRole.admin)
        if state.fulfillment != F.disputed or state.payment != P.captured:
            raise InvalidTransition(f"Cannot refund a booking that is {_describe(state)}")
        return Transition(BookingState(A.accepted, F.disputed, P.refunded), (Effect.refund,) + cascade)

    raise InvalidTransition(f"{event.value} does not apply to {booking_type.value} bookings")


def _public_lesson_transition(
    state: BookingState | None,
    event: Event,
    ctx: TransitionContext,
) -> Transition:
    if event == Event.create_lesson:
        if state is not None:
            raise InvalidTransition("Lesson already exists")
        _require_role(ctx, *COACH_ROLES)
        _require_valid_schedule(ctx)
        return Transition(BookingState(A.accepted, F.scheduled, capacity=C.open))

    state = _require_state(state, message=f"Cannot {event.value} a lesson that does not exist")

    if event == Event.close_registration:
        _require_role(ctx, *COACH_ROLES)
        if state.approval != A.accepted or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Cannot close registration for a lesson that is {_describe(state)}")
        if state.capacity == C.closed:
            return Transition(state, noop=True)
        return Transition(BookingState(A.accepted, F.scheduled, capacity=C.closed))

    if event == Event.cancel:
        _require_role(ctx, *COACH_ROLES)
        if state.approval != A.accepted or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Cannot cancel a lesson that is {_describe(state)}")
        _require_session_not_started(ctx)
        return Transition(
            BookingState(A.cancelled, F.scheduled, capacity=C.closed),
            (Effect.cascade_participants,),
        )

    if event == Event.mark_complete:
        _require_role(ctx, *CLOSING_ROLES)
        if state.approval != A.accepted or state.fulfillment != F.scheduled:
            raise InvalidTransition(f"Cannot complete a lesson that is {_describe(state)}")
        _require_session_finished(ctx)
        return Transition(
            BookingState(A.accepted, F.completed, capacity=C.closed),
            (Effect.cascade_participants,),
        )

    if event == Event.dispute:
        _require_role(ctx, ActorRole.participant, ActorRole.admin)
        if state.approval != A.accepted or state.fulfillment not in (F.scheduled, F.completed):
            raise InvalidTransition(f"Cannot dispute a lesson that is {_describe(state)}")
        return Transition(BookingState(A.accepted, F.disputed, capacity=state.capacity))

    if event == Event.refund:
        _require_role(ctx, ActorRole.admin)
        if state.fulfillment != F.disputed:
            raise InvalidTransition(f"Cannot refund a lesson that is {_describe(state)}")
        return Transition(state, (Effect.refund, Effect.cascade_participants))

    raise InvalidTransition(
        f"{event.value} does not apply to a public lesson; participants are admitted individually"
    )


def _require_lesson_open(ctx: TransitionContext) -> None:
    lesson = ctx.lesson
    if lesson is None or lesson.approval != A.accepted or lesson.fulfillment != F.scheduled:
        raise InvalidTransition("Lesson is not accepting participants")
    if lesson.capacity == C.full:
        raise GuardViolation("capacity_full", "This lesson is full")
    if lesson.capacity == C.closed:
        raise GuardViolation("registration_closed", "Registration for this lesson is closed")


def _participant_transition(
    state: ParticipantState | None,
    event: Event,
    ctx: TransitionContext,
) -> Transition:
    if event == Event.request:
        _require_role(ctx, ActorRole.participant)
        if state is not None and state.status != PS.cancelled:
            raise InvalidTransition(f"Already {state.status.value} for this lesson")
        _require_lesson_open(ctx)
        _require_future_start(ctx)
        return Transition(ParticipantState(PS.awaiting_payment, PP.requires_payment_method))

    state = _require_state(state, message="Not a participant of this lesson")

    if event == Event.client_pay:
        _require_role(ctx, ActorRole.participant)
        if state.status in (PS.awaiting_coach, PS.accepted):
            return Transition(state, noop=True)
        if state.status != PS.awaiting_payment:
            raise InvalidTransition(f"Cannot pay while participation is {state.status.value}")
        _require_lesson_open(ctx)
        _require_future_start(ctx)
        if ctx.expires_at is not None and ctx.expires_at <= ctx.now:
            raise GuardViolation("payment_deadline_passed", "Payment deadline has passed")
        if ctx.admitted:
            return Transition(
                ParticipantState(PS.accepted, PP.captured), (Effect.authorize, Effect.capture)
            )
        return Transition(ParticipantState(PS.awaiting_coach, PP.authorized), (Effect.authorize,))

    if event == Event.coach_accept:
        _require_role(ctx, *COACH_ROLES)
        if state.status == PS.awaiting_coach:
            return Transition(ParticipantState(PS.accepted, PP.captured), (Effect.capture,))
        if state.status in (PS.awaiting_payment, PS.accepted):
            # admission is recorded but the participant stays pending until paid
            return Transition(state, noop=True)
        raise InvalidTransition(f"Cannot admit a participant who is {state.status.value}")

    if event == Event.coach_decline:
        _require_role(ctx, *COACH_ROLES)
        if state.status == PS.awaiting_payment:
            return Transition(ParticipantState(PS.declined, PP.requires_payment_method))
        if state.status == PS.awaiting_coach:
            return Transition(
                ParticipantState(PS.declined, PP.cancelled), (Effect.release_authorization,)
            )
        if state.status == PS.accepted:
            raise InvalidTransition("Participant has already paid; cancel to refund instead")
        raise InvalidTransition(f"Cannot decline a participant who is {state.status.value}")

    if event == Event.expire_unpaid:
        _require_role(ctx, ActorRole.system)
        if state.status != PS.awaiting_payment:
            raise InvalidTransition(f"Participant is {state.status.value}, not awaiting payment")
        if ctx.expires_at is None or ctx.expires_at > ctx.now:
            raise GuardViolation("not_yet_due", "Payment window is still open")
        return Transition(ParticipantState(PS.cancelled, PP.requires_payment_method))

    if event == Event.expire_unadmitted_authorization:
        _require_role(ctx, ActorRole.system)
        if state.status != PS.awaiting_coach or state.payment != PP.authorized:
            raise InvalidTransition(f"Participant is {state.status.value}, not awaiting the coach")
        if ctx.expires_at is None or ctx.expires_at > ctx.now:
            raise GuardViolation("not_yet_due", "Authorization hold is still active")
        return Transition(
            ParticipantState(PS.cancelled, PP.cancelled), (Effect.release_authorization,)
        )

    if event == Event.cancel:
        _require_role(ctx, ActorRole.participant, *CLOSING_ROLES)
        if ctx.role == ActorRole.participant:
            _require_session_not_started(ctx)
        if state.status == PS.awaiting_payment:
            return Transition(ParticipantState(PS.cancelled, PP.requires_payment_method))
        if state.status == PS.awaiting_coach:
            return Transition(
                ParticipantState(PS.cancelled, PP.cancelled), (Effect.release_authorization,)
            )
        if state.status == PS.accepted and state.payment == PP.captured:
            return Transition(ParticipantState(PS.cancelled, PP.refunded), (Effect.refund,))
        raise InvalidTransition(f"Cannot cancel a participant who is {state.status.value}")

    if event == Event.mark_complete:
        _require_role(ctx, *CLOSING_ROLES)
        if state.status != PS.accepted:
            raise InvalidTransition(f"Cannot complete a participant who is {state.status.value}")
        return Transition(ParticipantState(PS.completed, state.payment))

    if event == Event.refund:
        _require_role(ctx, ActorRole.admin)
        if state.status not in (PS.accepted, PS.completed) or state.payment != PP.captured:
            raise InvalidTransition(f"Cannot refund a participant who is {state.status.value}")
        return Transition(ParticipantState(state.status, PP.refunded), (Effect.refund,))

    raise InvalidTransition(f"{event.value} does not apply to lesson participants")
