from datetime import timedelta

from coachhub.core.security import Principal, Role
from coachhub.db import models
from coachhub.db.models import (
    ApprovalStatus,
    CapacityStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
)
from coachhub.services import booking_service

from conftest import ADMIN, CLIENT, COACH, NOW

START = NOW + timedelta(days=5)
END = START + timedelta(hours=1)
ANNA = Principal(user_id=20, role=Role.client)
BEN = Principal(user_id=21, role=Role.client)
CARA = Principal(user_id=22, role=Role.client)


def create_lesson(db, max_participants=2, **kwargs):
    result = booking_service.create_public_lesson(
        db,
        kwargs.pop("principal", COACH),
        title="Saturday clinic",
        scheduled_start_at=START,
        scheduled_end_at=END,
        max_participants=max_participants,
        price_per_person_cents=3000,
        now=NOW,
        **kwargs,
    )
    return result


def reload(db, booking_id):
    db.expire_all()
    return db.get(models.Booking, booking_id)


def participant(db, participant_id):
    db.expire_all()
    return db.get(models.BookingParticipant, participant_id)


def join(db, gateway, booking_id, principal, now=NOW):
    return booking_service.join_public_lesson(db, gateway, principal, booking_id, now=now)


def test_create_lesson_is_open_and_accepted(db_session, coach_account):
    result = create_lesson(db_session, min_participants=2, description="All levels")

    assert result.ok
    booking = reload(db_session, result.booking_id)
    assert booking.approval_status == ApprovalStatus.accepted
    details = booking.public_group_details
    assert details.capacity_status == CapacityStatus.open
    assert details.current_participants == 0
    assert details.min_participants == 2
    assert booking.payer_id is None


def test_create_lesson_permissions_and_limits(db_session, coach_account):
    assert create_lesson(db_session, principal=CLIENT).reason_code == "forbidden_role"
    assert create_lesson(db_session, principal=ADMIN).reason_code == "coach_required"
    assert create_lesson(db_session, max_participants=0).reason_code == "invalid_group_size"
    assert create_lesson(db_session, max_participants=51).reason_code == "invalid_group_size"

    by_admin = create_lesson(db_session, principal=ADMIN, coach_id=COACH.user_id)
    assert by_admin.ok
    assert reload(db_session, by_admin.booking_id).coach_id == COACH.user_id


def test_join_authorizes_and_holds_a_seat(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id

    result = join(db_session, gateway, lesson_id, ANNA)

    assert result.ok
    assert result.client_secret
    assert [n.kind for n in result.notifications] == ["participant_authorized", "participant_awaiting_coach"]
    member = participant(db_session, result.participant_id)
    assert member.status == ParticipantStatus.awaiting_coach
    assert member.payment_status == ParticipantPaymentStatus.authorized
    assert member.amount_cents == 3000
    assert member.expires_at == NOW + timedelta(hours=24)
    details = reload(db_session, lesson_id).public_group_details
    assert details.current_participants == 1
    assert details.authorized_participants == 1
    assert gateway.intents[member.gateway_ref].status == "requires_capture"


def test_join_when_full_is_rejected_before_charging(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    assert join(db_session, gateway, lesson_id, ANNA).ok
    assert join(db_session, gateway, lesson_id, BEN).ok
    assert reload(db_session, lesson_id).public_group_details.capacity_status == CapacityStatus.full

    third = join(db_session, gateway, lesson_id, CARA)

    assert not third.ok
    assert third.reason_code == "capacity_full"
    assert gateway.calls["create_authorization"] == 2
    assert reload(db_session, lesson_id).public_group_details.current_participants == 2


def test_joining_twice_does_not_charge_twice(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    first = join(db_session, gateway, lesson_id, ANNA)
    second = join(db_session, gateway, lesson_id, ANNA)

    assert second.ok
    assert second.participant_id == first.participant_id
    assert gateway.calls["create_authorization"] == 1
    assert reload(db_session, lesson_id).public_group_details.current_participants == 1


def test_coach_admission_captures_payment(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    joined = join(db_session, gateway, lesson_id, ANNA)

    outsider = booking_service.coach_accept(
        db_session, gateway, BEN, lesson_id, participant_id=joined.participant_id, now=NOW
    )
    assert outsider.reason_code == "forbidden_role"

    admitted = booking_service.coach_accept(
        db_session, gateway, COACH, lesson_id, participant_id=joined.participant_id, now=NOW + timedelta(hours=1)
    )

    assert admitted.ok
    assert admitted.notifications[0].recipient_id == ANNA.user_id
    member = participant(db_session, joined.participant_id)
    assert member.status == ParticipantStatus.accepted
    assert member.payment_status == ParticipantPaymentStatus.captured
    assert member.expires_at is None
    details = reload(db_session, lesson_id).public_group_details
    assert details.current_participants == 1
    assert details.authorized_participants == 0
    assert details.captured_participants == 1
    assert gateway.intents[member.gateway_ref].status == "succeeded"


def test_accept_without_participant_is_invalid(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    result = booking_service.coach_accept(db_session, gateway, COACH, lesson_id, now=NOW)
    assert result.error_code == "invalid_transition"


def test_admitted_before_paying_is_captured_at_payment(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    requested = booking_service.request_to_join(db_session, ANNA, lesson_id, now=NOW)
    assert requested.ok
    assert reload(db_session, lesson_id).public_group_details.current_participants == 0

    admitted = booking_service.coach_accept(
        db_session, gateway, COACH, lesson_id, participant_id=requested.participant_id, now=NOW
    )
    assert [n.kind for n in admitted.notifications] == ["participant_admitted"]
    assert participant(db_session, requested.participant_id).status == ParticipantStatus.awaiting_payment

    paid = booking_service.client_pay(db_session, gateway, ANNA, lesson_id, now=NOW + timedelta(hours=1))

    assert paid.ok
    member = participant(db_session, requested.participant_id)
    assert member.status == ParticipantStatus.accepted
    assert member.payment_status == ParticipantPaymentStatus.captured
    assert gateway.calls["capture"] == 1
    assert reload(db_session, lesson_id).public_group_details.captured_participants == 1


def test_decline_participant_releases_the_hold(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session, max_participants=1).booking_id
    joined = join(db_session, gateway, lesson_id, ANNA)
    assert reload(db_session, lesson_id).public_group_details.capacity_status == CapacityStatus.full

    declined = booking_service.coach_decline(
        db_session, gateway, COACH, lesson_id, participant_id=joined.participant_id, reason="Advanced only", now=NOW
    )

    assert declined.ok
    member = participant(db_session, joined.participant_id)
    assert member.status == ParticipantStatus.declined
    assert member.payment_status == ParticipantPaymentStatus.cancelled
    assert gateway.intents[member.gateway_ref].status == "canceled"
    details = reload(db_session, lesson_id).public_group_details
    assert details.current_participants == 0
    assert details.capacity_status == CapacityStatus.open


def test_declined_participant_cannot_rejoin(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    joined = join(db_session, gateway, lesson_id, ANNA)
    booking_service.coach_decline(
        db_session, gateway, COACH, lesson_id, participant_id=joined.participant_id, now=NOW
    )

    requested = booking_service.request_to_join(db_session, ANNA, lesson_id, now=NOW)
    again = join(db_session, gateway, lesson_id, ANNA)

    assert requested.error_code == "invalid_transition"
    assert again.error_code == "invalid_transition"
    assert gateway.calls["create_authorization"] == 1
    assert participant(db_session, joined.participant_id).status == ParticipantStatus.declined
    assert reload(db_session, lesson_id).public_group_details.current_participants == 0


def test_leave_before_admission_releases_and_reopens(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    join(db_session, gateway, lesson_id, ANNA)
    joined = join(db_session, gateway, lesson_id, BEN)

    left = booking_service.leave_lesson(db_session, gateway, BEN, lesson_id, now=NOW + timedelta(hours=1))

    assert left.ok
    member = participant(db_session, joined.participant_id)
    assert member.status == ParticipantStatus.cancelled
    assert member.payment_status == ParticipantPaymentStatus.cancelled
    assert gateway.calls["refund"] == 0
    details = reload(db_session, lesson_id).public_group_details
    assert details.current_participants == 1
    assert details.authorized_participants == 1
    assert details.capacity_status == CapacityStatus.open


def test_leave_after_admission_refunds(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    joined = join(db_session, gateway, lesson_id, ANNA)
    booking_service.coach_accept(db_session, gateway, COACH, lesson_id, participant_id=joined.participant_id, now=NOW)

    left = booking_service.cancel_booking(db_session, gateway, ANNA, lesson_id, now=NOW + timedelta(hours=2))

    assert left.ok
    assert "refund" in left.notifications[0].message
    member = participant(db_session, joined.participant_id)
    assert member.status == ParticipantStatus.cancelled
    assert member.payment_status == ParticipantPaymentStatus.refunded
    assert member.refund_amount_cents == 3000
    details = reload(db_session, lesson_id).public_group_details
    assert details.current_participants == 0
    assert details.captured_participants == 0


def test_rejoin_after_leaving_uses_a_new_payment(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    first = join(db_session, gateway, lesson_id, ANNA)
    booking_service.leave_lesson(db_session, gateway, ANNA, lesson_id, now=NOW)

    again = join(db_session, gateway, lesson_id, ANNA)

    assert again.ok
    assert again.participant_id == first.participant_id
    assert gateway.calls["create_authorization"] == 2
    member = participant(db_session, again.participant_id)
    assert member.status == ParticipantStatus.awaiting_coach
    assert gateway.intents[member.gateway_ref].status == "requires_capture"


def test_close_registration_blocks_new_joins(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    join(db_session, gateway, lesson_id, ANNA)

    assert booking_service.close_registration(db_session, ANNA, lesson_id, now=NOW).reason_code == "forbidden_role"
    assert booking_service.close_registration(db_session, COACH, lesson_id, now=NOW).ok
    assert booking_service.close_registration(db_session, COACH, lesson_id, now=NOW).ok

    late = join(db_session, gateway, lesson_id, BEN)
    assert late.reason_code == "registration_closed"
    assert reload(db_session, lesson_id).public_group_details.capacity_status == CapacityStatus.closed


def test_cancelled_lesson_can_be_created_again(db_session, gateway, coach_account):
    first = create_lesson(db_session)
    assert booking_service.cancel_booking(db_session, gateway, COACH, first.booking_id, now=NOW).ok

    again = create_lesson(db_session)

    assert again.ok
    assert again.created
    assert again.booking_id != first.booking_id
    assert reload(db_session, again.booking_id).public_group_details.capacity_status == CapacityStatus.open
    assert reload(db_session, first.booking_id).approval_status == ApprovalStatus.cancelled

    repeat = create_lesson(db_session)
    assert repeat.booking_id == again.booking_id
    assert not repeat.created


def test_coach_cancel_cascades_to_every_participant(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session, max_participants=3).booking_id
    admitted = join(db_session, gateway, lesson_id, ANNA)
    booking_service.coach_accept(
        db_session, gateway, COACH, lesson_id, participant_id=admitted.participant_id, now=NOW
    )
    holding = join(db_session, gateway, lesson_id, BEN)
    waiting = booking_service.request_to_join(db_session, CARA, lesson_id, now=NOW)

    result = booking_service.cancel_booking(
        db_session, gateway, COACH, lesson_id, reason="Court flooded", now=NOW + timedelta(hours=1)
    )

    assert result.ok
    assert sorted(n.recipient_id for n in result.notifications) == [20, 21, 22]
    booking = reload(db_session, lesson_id)
    assert booking.approval_status == ApprovalStatus.cancelled
    assert booking.public_group_details.capacity_status == CapacityStatus.closed
    assert booking.public_group_details.current_participants == 0
    assert participant(db_session, admitted.participant_id).payment_status == ParticipantPaymentStatus.refunded
    assert participant(db_session, holding.participant_id).payment_status == ParticipantPaymentStatus.cancelled
    assert participant(db_session, waiting.participant_id).status == ParticipantStatus.cancelled


def test_completion_releases_unconfirmed_participants(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    admitted = join(db_session, gateway, lesson_id, ANNA)
    booking_service.coach_accept(
        db_session, gateway, COACH, lesson_id, participant_id=admitted.participant_id, now=NOW
    )
    holding = join(db_session, gateway, lesson_id, BEN)

    result = booking_service.mark_complete(db_session, gateway, COACH, lesson_id, now=END)

    assert result.ok
    booking = reload(db_session, lesson_id)
    assert booking.fulfillment_status == FulfillmentStatus.completed
    assert booking.public_group_details.capacity_status == CapacityStatus.closed
    assert participant(db_session, admitted.participant_id).status == ParticipantStatus.completed
    released = participant(db_session, holding.participant_id)
    assert released.status == ParticipantStatus.cancelled
    assert gateway.intents[released.gateway_ref].status == "canceled"


def test_dispute_and_per_participant_refund(db_session, gateway, coach_account):
    lesson_id = create_lesson(db_session).booking_id
    paid = join(db_session, gateway, lesson_id, ANNA)
    booking_service.coach_accept(db_session, gateway, COACH, lesson_id, participant_id=paid.participant_id, now=NOW)
    requested = booking_service.request_to_join(db_session, BEN, lesson_id, now=NOW)
    assert requested.ok
    booking_service.mark_complete(db_session, gateway, COACH, lesson_id, now=END)

    unpaid = booking_service.open_dispute(db_session, BEN, lesson_id, reason="Never started", now=END)
    assert unpaid.reason_code == "not_a_paying_participant"

    disputed = booking_service.open_dispute(db_session, ANNA, lesson_id, reason="Never started", now=END)
    assert disputed.ok
    assert reload(db_session, lesson_id).fulfillment_status == FulfillmentStatus.disputed

    partial = booking_service.refund_booking(db_session, gateway, ADMIN, lesson_id, amount_cents=1000, now=END)
    assert partial.reason_code == "participant_required"

    refunded = booking_service.refund_booking(
        db_session, gateway, ADMIN, lesson_id, amount_cents=1000, participant_id=paid.participant_id, now=END
    )
    assert refunded.ok
    member = participant(db_session, paid.participant_id)
    assert member.status == ParticipantStatus.completed
    assert member.payment_status == ParticipantPaymentStatus.refunded
    assert member.refund_amount_cents == 1000
    assert gateway.intents[member.gateway_ref].refunded_cents == 1000
