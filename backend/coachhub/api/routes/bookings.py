from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ...api import deps
from ...core.errors import GuardViolation
from ...core.security import Principal
from ...db import models, schemas
from ...db.session import get_db
from ...services import booking_service
from ...services.payments import BasePaymentGateway

router = APIRouter(prefix="/bookings", tags=["bookings"])


def booking_view(booking: models.Booking) -> schemas.Booking:
    details = booking.details
    payment_status = None
    capacity_status = None
    payment_due_at = None
    client_charge_cents = None
    if booking.booking_type == models.BookingType.public_group:
        capacity_status = details.capacity_status.value
    else:
        payment_status = details.payment_status.value
        payment_due_at = details.payment_due_at
        client_charge_cents = details.client_charge_cents
    return schemas.Booking(
        id=booking.id,
        booking_type=booking.booking_type.value,
        coach_id=booking.coach_id,
        approval_status=booking.approval_status.value,
        fulfillment_status=booking.fulfillment_status.value,
        payment_status=payment_status,
        capacity_status=capacity_status,
        scheduled_start_at=booking.scheduled_start_at,
        scheduled_end_at=booking.scheduled_end_at,
        duration_minutes=booking.duration_minutes,
        location=schemas.Location(
            name=booking.location_name,
            address=booking.location_address,
            notes=booking.location_notes,
        ),
        response_due_at=booking.response_due_at,
        payment_due_at=payment_due_at,
        client_charge_cents=client_charge_cents,
        currency=details.currency,
        cancellation_reason=booking.cancellation_reason,
        dispute_reason=booking.dispute_reason,
        participants=[schemas.Participant.model_validate(member) for member in booking.participants],
    )


def load_visible_booking(db: Session, principal: Principal, booking_id: int) -> models.Booking:
    booking = db.get(models.Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    try:
        booking_service.resolve_role(principal, booking)
    except GuardViolation as exc:
        raise HTTPException(status_code=403, detail=exc.message) from exc
    return booking


def _location(location: schemas.Location | None) -> dict[str, str] | None:
    if location is None:
        return None
    return location.model_dump(exclude_none=True)


@router.post("/individual", response_model=schemas.ActionResponse, status_code=201)
def request_individual_booking(
    payload: schemas.IndividualBookingCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.request_individual_booking(
        db,
        principal,
        coach_id=payload.coach_id,
        scheduled_start_at=payload.scheduled_start_at,
        scheduled_end_at=payload.scheduled_end_at,
        price_cents=payload.price_cents,
        location=_location(payload.location),
        client_message=payload.client_message,
        idempotency_key=payload.idempotency_key,
    )
    return deps.finish_action(result, background_tasks)


@router.post("/private-group", response_model=schemas.ActionResponse, status_code=201)
def request_private_group_booking(
    payload: schemas.PrivateGroupBookingCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.request_private_group_booking(
        db,
        principal,
        coach_id=payload.coach_id,
        scheduled_start_at=payload.scheduled_start_at,
        scheduled_end_at=payload.scheduled_end_at,
        price_per_person_cents=payload.price_per_person_cents,
        invitee_ids=payload.invitee_ids,
        location=_location(payload.location),
        client_message=payload.client_message,
        idempotency_key=payload.idempotency_key,
    )
    return deps.finish_action(result, background_tasks)


@router.get("/{booking_id}", response_model=schemas.Booking)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    return booking_view(load_visible_booking(db, principal, booking_id))


@router.get("/{booking_id}/transitions", response_model=list[schemas.StateTransition])
def list_transitions(
    booking_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    return load_visible_booking(db, principal, booking_id).transitions


@router.post("/{booking_id}/accept", response_model=schemas.ActionResponse)
def accept_booking(
    booking_id: int,
    payload: schemas.BookingDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.coach_accept(
        db, gateway, principal, booking_id, participant_id=payload.participant_id
    )
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/decline", response_model=schemas.ActionResponse)
def decline_booking(
    booking_id: int,
    payload: schemas.BookingDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.coach_decline(
        db, gateway, principal, booking_id, reason=payload.reason, participant_id=payload.participant_id
    )
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/cancel", response_model=schemas.ActionResponse)
def cancel_booking(
    booking_id: int,
    payload: schemas.BookingCancel,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.cancel_booking(db, gateway, principal, booking_id, reason=payload.reason)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/complete", response_model=schemas.ActionResponse)
def complete_booking(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.mark_complete(db, gateway, principal, booking_id)
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/dispute", response_model=schemas.ActionResponse)
def open_dispute(
    booking_id: int,
    payload: schemas.DisputeCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.open_dispute(db, principal, booking_id, reason=payload.reason)
    return deps.finish_action(result, background_tasks)
