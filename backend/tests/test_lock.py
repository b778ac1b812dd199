from datetime import timedelta

import pytest

from coachhub.core.errors import ConcurrencyConflict
from coachhub.db import models
from coachhub.services import booking_service, ledger

from conftest import CLIENT, COACH, NOW

TTL = timedelta(minutes=5)


@pytest.fixture()
def booking_id(db_session, coach_account):
    result = booking_service.request_individual_booking(
        db_session,
        CLIENT,
        coach_id=COACH.user_id,
        scheduled_start_at=NOW + timedelta(days=1),
        scheduled_end_at=NOW + timedelta(days=1, hours=1),
        price_cents=5000,
        now=NOW,
    )
    return result.booking_id


def locked_until(db, booking_id):
    db.expire_all()
    return db.get(models.Booking, booking_id).locked_until


def test_lock_is_held_and_released(db_session, booking_id):
    with ledger.booking_lock(db_session, booking_id, ttl=TTL, now=NOW) as token:
        assert token == NOW + TTL
        assert locked_until(db_session, booking_id) == token
        with pytest.raises(ConcurrencyConflict):
            with ledger.booking_lock(db_session, booking_id, ttl=TTL, now=NOW + timedelta(minutes=1)):
                pass
    assert locked_until(db_session, booking_id) is None


def test_lock_is_released_when_the_body_fails(db_session, booking_id):
    with pytest.raises(RuntimeError):
        with ledger.booking_lock(db_session, booking_id, ttl=TTL, now=NOW):
            raise RuntimeError("boom")
    assert locked_until(db_session, booking_id) is None


def test_expired_lock_can_be_taken_over(db_session, booking_id):
    stale = NOW + TTL
    booking = db_session.get(models.Booking, booking_id)
    booking.locked_until = stale
    db_session.commit()

    with ledger.booking_lock(db_session, booking_id, ttl=TTL, now=stale) as token:
        assert token == stale + TTL
        # the previous holder finishing late must not drop the new lock
        assert ledger.release_lock(db_session, booking_id, stale) is False
        assert locked_until(db_session, booking_id) == token
    assert locked_until(db_session, booking_id) is None


def test_clear_expired_locks_leaves_live_locks(db_session, booking_id):
    with ledger.booking_lock(db_session, booking_id, ttl=TTL, now=NOW):
        assert ledger.clear_expired_locks(db_session, now=NOW + timedelta(minutes=1)) == 0
        assert locked_until(db_session, booking_id) is not None
    booking = db_session.get(models.Booking, booking_id)
    booking.locked_until = NOW
    db_session.commit()

    assert ledger.clear_expired_locks(db_session, now=NOW + timedelta(minutes=1)) == 1
    assert locked_until(db_session, booking_id) is None
