from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Principal
from ...db import models, schemas
from ...db.session import get_db
from ...services import booking_service
from ...services.payments import BasePaymentGateway

router = APIRouter(prefix="/lessons", tags=["lessons"])


def lesson_view(booking: models.Booking) -> schemas.Lesson:
    details = booking.public_group_details
    return schemas.Lesson(
        id=booking.id,
        coach_id=booking.coach_id,
        title=details.title,
        description=details.description,
        scheduled_start_at=booking.scheduled_start_at,
        scheduled_end_at=booking.scheduled_end_at,
        approval_status=booking.approval_status.value,
        fulfillment_status=booking.fulfillment_status.value,
        capacity_status=details.capacity_status.value,
        max_participants=details.max_participants,
        current_participants=details.current_participants,
        price_per_person_cents=details.price_per_person_cents,
        currency=details.currency,
    )


@router.post("", response_model=schemas.ActionResponse, status_code=201)
def create_lesson(
    payload: schemas.PublicLessonCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.create_public_lesson(
        db,
        principal,
        title=payload.title,
        description=payload.description,
        scheduled_start_at=payload.scheduled_start_at,
        scheduled_end_at=payload.scheduled_end_at,
        max_participants=payload.max_participants,
        min_participants=payload.min_participants,
        price_per_person_cents=payload.price_per_person_cents,
        location=payload.location.model_dump(exclude_none=True) if payload.location else None,
        coach_id=payload.coach_id,
        idempotency_key=payload.idempotency_key,
    )
    return deps.finish_action(result, background_tasks)


@router.get("/{booking_id}", response_model=schemas.Lesson)
def get_lesson(booking_id: int, db: Session = Depends(get_db)):
    booking = db.get(models.Booking, booking_id)
    if not booking or booking.booking_type != models.BookingType.public_group:
        raise HTTPException(status_code=404, detail="Lesson not found")
    return lesson_view(booking)


@router.post("/{booking_id}/requests", response_model=schemas.ActionResponse, status_code=201)
def request_to_join(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.request_to_join(db, principal, booking_id)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/join", response_model=schemas.ActionResponse)
def join_lesson(
    booking_id: int,
    payload: schemas.LessonJoin,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.join_public_lesson(
        db, gateway, principal, booking_id, idempotency_key=payload.idempotency_key
    )
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/leave", response_model=schemas.ActionResponse)
def leave_lesson(
    booking_id: int,
    payload: schemas.BookingCancel,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.leave_lesson(db, gateway, principal, booking_id, reason=payload.reason)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/close", response_model=schemas.ActionResponse)
def close_registration(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.close_registration(db, principal, booking_id)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/participants/{participant_id}/accept", response_model=schemas.ActionResponse)
def accept_participant(
    booking_id: int,
    participant_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.coach_accept(db, gateway, principal, booking_id, participant_id=participant_id)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/participants/{participant_id}/decline", response_model=schemas.ActionResponse)
def decline_participant(
    booking_id: int,
    participant_id: int,
    payload: schemas.BookingCancel,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.coach_decline(
        db, gateway, principal, booking_id, reason=payload.reason, participant_id=participant_id
    )
    return deps.finish_action(result, background_tasks)
