from datetime import timedelta

import pytest

from coachhub.core.errors import AlreadyCaptured, GatewayTimeout
from coachhub.db import models
from coachhub.db.models import PaymentStatus
from coachhub.services import booking_service, payment_orchestrator
from coachhub.services.ledger import Actor
from coachhub.services.notification_service import NotificationIntent, dispatch_notifications
from coachhub.services.pricing import PlatformFeePricing
from coachhub.services.state_machine import ActorRole

from conftest import CLIENT, COACH, NOW


@pytest.fixture()
def authorized_booking(db_session, gateway, coach_account):
    result = booking_service.request_individual_booking(
        db_session,
        CLIENT,
        coach_id=COACH.user_id,
        scheduled_start_at=NOW + timedelta(days=2),
        scheduled_end_at=NOW + timedelta(days=2, hours=1),
        price_cents=9000,
        now=NOW,
    )
    booking_service.coach_accept(db_session, gateway, COACH, result.booking_id, now=NOW)
    gateway.fail_next("capture", GatewayTimeout())
    booking_service.client_pay(db_session, gateway, CLIENT, result.booking_id, now=NOW + timedelta(hours=1))
    db_session.expire_all()
    booking = db_session.get(models.Booking, result.booking_id)
    assert booking.details.payment_status == PaymentStatus.authorized
    return booking


def test_stub_gateway_replays_idempotent_authorizations(gateway):
    first = gateway.create_authorization(1000, "usd", "acct_1", {}, "key-1")
    second = gateway.create_authorization(1000, "usd", "acct_1", {}, "key-1")

    assert first.gateway_ref == second.gateway_ref
    assert len(gateway.intents) == 1

    gateway.capture(first.gateway_ref)
    with pytest.raises(AlreadyCaptured):
        gateway.capture(first.gateway_ref)


def test_capture_on_acceptance_is_idempotent(db_session, gateway, authorized_booking):
    actor = Actor(str(CLIENT.user_id), ActorRole.client)

    first = payment_orchestrator.capture_on_acceptance(
        db_session, gateway, authorized_booking, actor=actor, now=NOW + timedelta(hours=2)
    )
    second = payment_orchestrator.capture_on_acceptance(
        db_session, gateway, authorized_booking, actor=actor, now=NOW + timedelta(hours=2)
    )

    assert first.status == "captured"
    assert not first.reused
    assert second.reused
    assert gateway.calls["capture"] == 2


def test_release_reconciles_a_payment_captured_at_the_processor(db_session, gateway, authorized_booking):
    booking_id = authorized_booking.id
    gateway.capture(authorized_booking.details.gateway_ref)

    conflict = booking_service.cancel_booking(
        db_session, gateway, COACH, booking_id, now=NOW + timedelta(hours=2)
    )

    assert conflict.error_code == "concurrency_conflict"
    db_session.expire_all()
    booking = db_session.get(models.Booking, booking_id)
    assert booking.details.payment_status == PaymentStatus.captured
    assert booking.locked_until is None

    retry = booking_service.cancel_booking(db_session, gateway, COACH, booking_id, now=NOW + timedelta(hours=2))

    assert retry.ok
    db_session.expire_all()
    booking = db_session.get(models.Booking, booking_id)
    assert booking.details.payment_status == PaymentStatus.refunded
    assert gateway.intents[booking.details.gateway_ref].refunded_cents == 9000


def test_decline_releases_nothing_for_an_unpaid_request(db_session, gateway, coach_account):
    result = booking_service.request_individual_booking(
        db_session,
        CLIENT,
        coach_id=COACH.user_id,
        scheduled_start_at=NOW + timedelta(days=2),
        scheduled_end_at=NOW + timedelta(days=2, hours=1),
        price_cents=9000,
        now=NOW,
    )
    booking_service.coach_decline(db_session, gateway, COACH, result.booking_id, now=NOW)
    assert gateway.calls == {"create_authorization": 0, "capture": 0, "cancel_authorization": 0, "refund": 0}


def test_platform_fee_rounds_down():
    breakdown = PlatformFeePricing(15).quote(999)
    assert breakdown.platform_fee_cents == 149
    assert breakdown.coach_payout_cents == 850
    assert breakdown.client_charge_cents == 999

    with pytest.raises(ValueError):
        PlatformFeePricing(15).quote(0)


def test_notifications_are_skipped_without_a_webhook():
    intent = NotificationIntent(kind="booking_requested", recipient_id=1, booking_id=1, message="hi")
    assert dispatch_notifications([intent]) == 0
    assert dispatch_notifications([]) == 0
