from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Principal, Role
from ...db import models, schemas
from ...db.session import get_db
from ...services import booking_service
from ...services.payments import BasePaymentGateway
from .bookings import load_visible_booking

router = APIRouter(prefix="/bookings", tags=["payments"])


@router.post("/{booking_id}/pay", response_model=schemas.ActionResponse)
def pay_booking(
    booking_id: int,
    payload: schemas.PaymentRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.get_principal),
):
    result = booking_service.client_pay(
        db, gateway, principal, booking_id, idempotency_key=payload.idempotency_key
    )
    return deps.finish_action(result, background_tasks)


@router.post("/{booking_id}/refund", response_model=schemas.ActionResponse)
def refund_booking(
    booking_id: int,
    payload: schemas.RefundRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    admin: Principal = Depends(deps.require_roles(Role.admin)),
):
    result = booking_service.refund_booking(
        db,
        gateway,
        admin,
        booking_id,
        amount_cents=payload.amount_cents,
        participant_id=payload.participant_id,
        reason=payload.reason,
    )
    return deps.finish_action(result, background_tasks)


@router.get("/{booking_id}/payments", response_model=list[schemas.BookingPayment])
def list_payments(
    booking_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.get_principal),
) -> list[models.BookingPayment]:
    return load_visible_booking(db, principal, booking_id).payments
