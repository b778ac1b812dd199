from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import func, select

from coachhub.core.security import Principal, Role
from coachhub.db import models
from coachhub.db.models import (
    ApprovalStatus,
    CapacityStatus,
    ParticipantPaymentStatus,
    ParticipantStatus,
)
from coachhub.services import booking_service, recurring_lesson_service

from conftest import ADMIN, CLIENT, COACH, NOW

ANNA = Principal(user_id=20, role=Role.client)
BEN = Principal(user_id=21, role=Role.client)
OTHER_COACH = Principal(user_id=2, role=Role.coach)

WEDNESDAY = 2
FIRST = datetime(2030, 3, 6, 18, 0, tzinfo=timezone.utc)


def create_template(db, principal=COACH, **overrides):
    values = {
        "title": "Wednesday ladder",
        "weekday": WEDNESDAY,
        "start_time": time(18, 0),
        "duration_minutes": 60,
        "max_participants": 4,
        "price_per_person_cents": 2500,
        "starts_on": date(2030, 3, 4),
        "ends_on": date(2030, 3, 25),
        "location": {"name": "Court 2"},
        "now": NOW,
    }
    values.update(overrides)
    return recurring_lesson_service.create_recurring_lesson(db, principal, **values)


def reload(db, booking_id):
    db.expire_all()
    return db.get(models.Booking, booking_id)


def participant(db, participant_id):
    db.expire_all()
    return db.get(models.BookingParticipant, participant_id)


def template_lessons(db, template_id):
    return db.scalars(
        select(models.Booking)
        .where(models.Booking.recurring_template_id == template_id)
        .order_by(models.Booking.scheduled_start_at, models.Booking.id)
    ).all()


def test_create_generates_one_lesson_per_week(db_session, coach_account):
    result = create_template(db_session)

    assert result.ok
    assert len(result.created_booking_ids) == 3
    assert result.skipped == {}
    lessons = [reload(db_session, booking_id) for booking_id in result.created_booking_ids]
    assert [lesson.scheduled_start_at for lesson in lessons] == [
        FIRST,
        FIRST + timedelta(weeks=1),
        FIRST + timedelta(weeks=2),
    ]
    for lesson in lessons:
        assert lesson.recurring_template_id == result.template_id
        assert lesson.coach_id == COACH.user_id
        assert lesson.approval_status == ApprovalStatus.accepted
        assert lesson.scheduled_end_at - lesson.scheduled_start_at == timedelta(hours=1)
        details = lesson.public_group_details
        assert details.title == "Wednesday ladder"
        assert details.price_per_person_cents == 2500
        assert details.capacity_status == CapacityStatus.open
    template = db_session.get(models.RecurringLessonTemplate, result.template_id)
    assert template.is_active
    assert template.location == {"name": "Court 2"}


def test_past_weeks_are_not_generated(db_session, coach_account):
    result = create_template(db_session, now=FIRST + timedelta(hours=2))

    assert result.ok
    assert len(result.created_booking_ids) == 2
    first = reload(db_session, result.created_booking_ids[0])
    assert first.scheduled_start_at == FIRST + timedelta(weeks=1)


def test_open_ended_template_stops_at_the_horizon(db_session, coach_account):
    result = create_template(db_session, ends_on=None)

    assert result.ok
    assert len(result.created_booking_ids) == 8


def test_create_permissions(db_session, coach_account):
    assert create_template(db_session, principal=CLIENT).reason_code == "forbidden_role"
    assert create_template(db_session, principal=ADMIN).reason_code == "coach_required"

    on_behalf = create_template(db_session, principal=ADMIN, coach_id=COACH.user_id)
    assert on_behalf.ok
    assert db_session.get(models.RecurringLessonTemplate, on_behalf.template_id).coach_id == COACH.user_id

    unpaid = create_template(db_session, principal=OTHER_COACH)
    assert unpaid.reason_code == "coach_not_payable"
    count = db_session.scalar(select(func.count()).select_from(models.RecurringLessonTemplate))
    assert count == 1


@pytest.mark.parametrize(
    ("overrides", "reason_code"),
    [
        ({"weekday": 7}, "invalid_schedule"),
        ({"duration_minutes": 5}, "invalid_schedule"),
        ({"ends_on": date(2030, 3, 1)}, "invalid_schedule"),
        ({"max_participants": 0}, "invalid_group_size"),
        ({"min_participants": 5}, "invalid_group_size"),
        ({"price_per_person_cents": 0}, "invalid_price"),
    ],
)
def test_create_validation(db_session, coach_account, overrides, reason_code):
    result = create_template(db_session, **overrides)

    assert not result.ok
    assert result.reason_code == reason_code
    assert db_session.scalars(select(models.RecurringLessonTemplate)).first() is None
    assert db_session.scalars(select(models.Booking)).first() is None


def test_generate_is_idempotent(db_session, coach_account):
    created = create_template(db_session)

    again = recurring_lesson_service.generate_lessons(
        db_session, COACH, template_id=created.template_id, now=NOW + timedelta(hours=1)
    )

    assert again.ok
    assert again.created_booking_ids == []
    assert len(template_lessons(db_session, created.template_id)) == 3


def test_generate_does_not_bring_back_a_cancelled_week(db_session, gateway, coach_account):
    created = create_template(db_session)
    dropped = created.created_booking_ids[1]
    assert booking_service.cancel_booking(db_session, gateway, COACH, dropped, now=NOW).ok

    again = recurring_lesson_service.generate_lessons(db_session, COACH, template_id=created.template_id, now=NOW)

    assert again.ok
    assert again.created_booking_ids == []
    assert reload(db_session, dropped).approval_status == ApprovalStatus.cancelled


def test_generate_requires_the_owner(db_session, coach_account):
    created = create_template(db_session)

    foreign = recurring_lesson_service.generate_lessons(
        db_session, OTHER_COACH, template_id=created.template_id, now=NOW
    )
    missing = recurring_lesson_service.generate_lessons(db_session, COACH, template_id=404, now=NOW)

    assert foreign.reason_code == "forbidden_role"
    assert missing.error_code == "not_found"
    assert missing.template_id == 404


def test_cancel_cancels_future_lessons_and_refunds(db_session, gateway, coach_account):
    created = create_template(db_session)
    past, holding_lesson, admitted_lesson = created.created_booking_ids
    holding = booking_service.join_public_lesson(db_session, gateway, ANNA, holding_lesson, now=NOW)
    admitted = booking_service.join_public_lesson(db_session, gateway, BEN, admitted_lesson, now=NOW)
    booking_service.coach_accept(
        db_session, gateway, COACH, admitted_lesson, participant_id=admitted.participant_id, now=NOW
    )

    result = recurring_lesson_service.cancel_recurring_lesson(
        db_session,
        gateway,
        COACH,
        template_id=created.template_id,
        reason="Court resurfacing",
        now=NOW + timedelta(days=3),
    )

    assert result.ok
    assert result.cancelled_booking_ids == [holding_lesson, admitted_lesson]
    assert sorted(n.recipient_id for n in result.notifications) == [ANNA.user_id, BEN.user_id]
    assert reload(db_session, past).approval_status == ApprovalStatus.accepted
    for booking_id in (holding_lesson, admitted_lesson):
        lesson = reload(db_session, booking_id)
        assert lesson.approval_status == ApprovalStatus.cancelled
        assert lesson.cancellation_reason == "Court resurfacing"
    anna = participant(db_session, holding.participant_id)
    assert anna.status == ParticipantStatus.cancelled
    assert anna.payment_status == ParticipantPaymentStatus.cancelled
    assert gateway.intents[anna.gateway_ref].status == "canceled"
    ben = participant(db_session, admitted.participant_id)
    assert ben.payment_status == ParticipantPaymentStatus.refunded
    assert ben.refund_amount_cents == 2500
    assert not db_session.get(models.RecurringLessonTemplate, created.template_id).is_active


def test_cancelled_template_rejects_changes(db_session, gateway, coach_account):
    created = create_template(db_session)
    recurring_lesson_service.cancel_recurring_lesson(
        db_session, gateway, COACH, template_id=created.template_id, now=NOW
    )

    generated = recurring_lesson_service.generate_lessons(
        db_session, COACH, template_id=created.template_id, now=NOW
    )
    edited = recurring_lesson_service.edit_recurring_lesson(
        db_session, gateway, COACH, template_id=created.template_id, changes={"title": "Back on"}, now=NOW
    )
    repeated = recurring_lesson_service.cancel_recurring_lesson(
        db_session, gateway, COACH, template_id=created.template_id, now=NOW
    )

    assert generated.error_code == "invalid_transition"
    assert edited.error_code == "invalid_transition"
    assert repeated.ok
    assert repeated.cancelled_booking_ids == []


def test_edit_rebuilds_empty_lessons_and_keeps_joined_ones(db_session, gateway, coach_account):
    created = create_template(db_session)
    first, joined_lesson, third = created.created_booking_ids
    joined = booking_service.join_public_lesson(db_session, gateway, ANNA, joined_lesson, now=NOW)

    result = recurring_lesson_service.edit_recurring_lesson(
        db_session,
        gateway,
        COACH,
        template_id=created.template_id,
        changes={"start_time": time(19, 0), "price_per_person_cents": 3000},
        now=NOW,
    )

    assert result.ok
    assert result.kept_booking_ids == [joined_lesson]
    assert result.cancelled_booking_ids == [first, third]
    assert len(result.created_booking_ids) == 2
    rebuilt = [reload(db_session, booking_id) for booking_id in result.created_booking_ids]
    assert [lesson.scheduled_start_at for lesson in rebuilt] == [
        FIRST + timedelta(hours=1),
        FIRST + timedelta(weeks=2, hours=1),
    ]
    assert {lesson.public_group_details.price_per_person_cents for lesson in rebuilt} == {3000}
    kept = reload(db_session, joined_lesson)
    assert kept.scheduled_start_at == FIRST + timedelta(weeks=1)
    assert kept.public_group_details.price_per_person_cents == 2500
    assert participant(db_session, joined.participant_id).status == ParticipantStatus.awaiting_coach
    assert reload(db_session, first).cancellation_reason == recurring_lesson_service.RECURRING_RESCHEDULED_REASON
    template = db_session.get(models.RecurringLessonTemplate, created.template_id)
    assert template.revision == 2
    assert template.start_time == time(19, 0)


def test_edit_rejects_bad_changes(db_session, gateway, coach_account):
    created = create_template(db_session)

    unknown = recurring_lesson_service.edit_recurring_lesson(
        db_session, gateway, COACH, template_id=created.template_id, changes={"coach_id": 2}, now=NOW
    )
    invalid = recurring_lesson_service.edit_recurring_lesson(
        db_session, gateway, COACH, template_id=created.template_id, changes={"weekday": 9}, now=NOW
    )

    assert unknown.reason_code == "invalid_field"
    assert invalid.reason_code == "invalid_schedule"
    db_session.expire_all()
    template = db_session.get(models.RecurringLessonTemplate, created.template_id)
    assert template.weekday == WEDNESDAY
    assert template.revision == 1
    assert len(template_lessons(db_session, created.template_id)) == 3
