from datetime import timedelta

from coachhub.core.security import Principal, Role
from coachhub.db import models
from coachhub.db.models import (
    ApprovalStatus,
    FulfillmentStatus,
    ParticipantPaymentStatus,
    ParticipantRole,
    ParticipantStatus,
    PaymentStatus,
)
from coachhub.services import booking_service

from conftest import ADMIN, CLIENT, COACH, NOW

START = NOW + timedelta(days=2)
END = START + timedelta(hours=2)
INVITEE = Principal(user_id=11, role=Role.client)


def request_group(db, invitee_ids=(11, 12), **kwargs):
    return booking_service.request_private_group_booking(
        db,
        kwargs.pop("principal", CLIENT),
        coach_id=COACH.user_id,
        scheduled_start_at=START,
        scheduled_end_at=END,
        price_per_person_cents=kwargs.pop("price_per_person_cents", 2000),
        invitee_ids=invitee_ids,
        now=NOW,
        **kwargs,
    )


def reload(db, booking_id):
    db.expire_all()
    return db.get(models.Booking, booking_id)


def member_states(booking):
    return {member.user_id: (member.status, member.payment_status) for member in booking.participants}


def paid_group(db, gateway):
    result = request_group(db)
    booking_service.coach_accept(db, gateway, COACH, result.booking_id, now=NOW)
    paid = booking_service.client_pay(db, gateway, CLIENT, result.booking_id, now=NOW + timedelta(hours=1))
    assert paid.ok
    return result.booking_id


def test_request_charges_the_organizer_for_everyone(db_session, coach_account):
    result = request_group(db_session)

    assert result.ok
    booking = reload(db_session, result.booking_id)
    details = booking.details
    assert details.total_participants == 3
    assert details.price_per_person_cents == 2000
    assert details.client_charge_cents == 6000
    assert details.platform_fee_cents == 900
    assert details.coach_payout_cents == 5100
    assert booking.payer_id == CLIENT.user_id

    organizer, *invitees = booking.participants
    assert organizer.user_id == CLIENT.user_id
    assert organizer.role == ParticipantRole.organizer
    assert organizer.amount_cents == 6000
    assert [member.amount_cents for member in invitees] == [0, 0]
    assert {member.status for member in booking.participants} == {ParticipantStatus.requested}


def test_group_size_limits(db_session, coach_account):
    alone = request_group(db_session, invitee_ids=())
    assert alone.reason_code == "invalid_group_size"

    crowd = request_group(db_session, invitee_ids=range(100, 150))
    assert crowd.reason_code == "invalid_group_size"

    coach_invited = request_group(db_session, invitee_ids=(11, COACH.user_id))
    assert coach_invited.reason_code == "self_booking"


def test_duplicate_invitee_is_rejected_without_partial_rows(db_session, coach_account):
    result = request_group(db_session, invitee_ids=(11, 11))

    assert not result.ok
    assert result.error_code == "data_integrity_violation"
    assert db_session.query(models.Booking).count() == 0
    assert db_session.query(models.BookingParticipant).count() == 0


def test_members_follow_the_booking_through_payment(db_session, gateway, coach_account):
    result = request_group(db_session)

    booking_service.coach_accept(db_session, gateway, COACH, result.booking_id, now=NOW)
    booking = reload(db_session, result.booking_id)
    assert set(member_states(booking).values()) == {
        (ParticipantStatus.awaiting_payment, ParticipantPaymentStatus.requires_payment_method)
    }

    paid = booking_service.client_pay(db_session, gateway, CLIENT, result.booking_id, now=NOW + timedelta(hours=1))

    assert paid.ok
    booking = reload(db_session, result.booking_id)
    assert booking.details.payment_status == PaymentStatus.captured
    assert gateway.intents[booking.details.gateway_ref].amount_cents == 6000
    assert set(member_states(booking).values()) == {
        (ParticipantStatus.accepted, ParticipantPaymentStatus.captured)
    }


def test_invitees_cannot_pay_cancel_or_dispute(db_session, gateway, coach_account):
    result = request_group(db_session)
    booking_service.coach_accept(db_session, gateway, COACH, result.booking_id, now=NOW)

    pay = booking_service.client_pay(db_session, gateway, INVITEE, result.booking_id, now=NOW)
    assert pay.reason_code == "forbidden_role"

    cancel = booking_service.cancel_booking(db_session, gateway, INVITEE, result.booking_id, now=NOW)
    assert cancel.reason_code == "forbidden_role"

    stranger = booking_service.client_pay(
        db_session, gateway, Principal(user_id=77, role=Role.client), result.booking_id, now=NOW
    )
    assert stranger.reason_code == "forbidden_role"
    assert gateway.calls["create_authorization"] == 0


def test_decline_cascades_to_members(db_session, gateway, coach_account):
    result = request_group(db_session)
    booking_service.coach_decline(db_session, gateway, COACH, result.booking_id, now=NOW)

    booking = reload(db_session, result.booking_id)
    assert booking.approval_status == ApprovalStatus.declined
    assert {status for status, _ in member_states(booking).values()} == {ParticipantStatus.declined}


def test_cancel_after_payment_refunds_the_organizer(db_session, gateway, coach_account):
    booking_id = paid_group(db_session, gateway)

    result = booking_service.cancel_booking(db_session, gateway, COACH, booking_id, now=NOW + timedelta(hours=2))

    assert result.ok
    assert sorted(n.recipient_id for n in result.notifications) == [10, 11, 12]
    booking = reload(db_session, booking_id)
    assert booking.details.payment_status == PaymentStatus.refunded
    assert set(member_states(booking).values()) == {
        (ParticipantStatus.cancelled, ParticipantPaymentStatus.refunded)
    }


def test_completion_dispute_and_refund_keep_members_completed(db_session, gateway, coach_account):
    booking_id = paid_group(db_session, gateway)

    done = booking_service.mark_complete(db_session, gateway, COACH, booking_id, now=END)
    assert done.ok
    booking = reload(db_session, booking_id)
    assert set(member_states(booking).values()) == {
        (ParticipantStatus.completed, ParticipantPaymentStatus.captured)
    }

    invitee_dispute = booking_service.open_dispute(db_session, INVITEE, booking_id, reason="Late", now=END)
    assert invitee_dispute.reason_code == "forbidden_role"

    disputed = booking_service.open_dispute(db_session, CLIENT, booking_id, reason="Cut short", now=END)
    assert disputed.ok
    assert sorted(n.recipient_id for n in disputed.notifications) == [COACH.user_id, 11, 12]
    booking = reload(db_session, booking_id)
    assert booking.fulfillment_status == FulfillmentStatus.disputed
    assert {status for status, _ in member_states(booking).values()} == {ParticipantStatus.completed}

    refunded = booking_service.refund_booking(
        db_session, gateway, ADMIN, booking_id, amount_cents=2000, now=END + timedelta(days=1)
    )
    assert refunded.ok
    booking = reload(db_session, booking_id)
    assert booking.details.payment_status == PaymentStatus.refunded
    assert booking.details.refund_amount_cents == 2000
    assert set(member_states(booking).values()) == {
        (ParticipantStatus.completed, ParticipantPaymentStatus.refunded)
    }
