from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ...api import deps
from ...core.security import Principal, Role
from ...db import models, schemas
from ...db.session import get_db
from ...services import recurring_lesson_service
from ...services.notification_service import dispatch_notifications
from ...services.payments import BasePaymentGateway
from ...services.recurring_lesson_service import RecurringResult

router = APIRouter(prefix="/lessons/recurring", tags=["recurring lessons"])


def finish_recurring(
    result: RecurringResult, background_tasks: BackgroundTasks
) -> schemas.RecurringLessonResponse:
    deps.raise_for_result(result)
    if result.notifications:
        background_tasks.add_task(dispatch_notifications, result.notifications)
    return schemas.RecurringLessonResponse(
        template_id=result.template_id,
        created_booking_ids=result.created_booking_ids,
        cancelled_booking_ids=result.cancelled_booking_ids,
        kept_booking_ids=result.kept_booking_ids,
        skipped=result.skipped,
    )


@router.post("", response_model=schemas.RecurringLessonResponse, status_code=201)
def create_recurring_lesson(
    payload: schemas.RecurringLessonCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.require_roles(Role.coach, Role.admin)),
):
    result = recurring_lesson_service.create_recurring_lesson(
        db,
        principal,
        title=payload.title,
        description=payload.description,
        weekday=payload.weekday,
        start_time=payload.start_time,
        duration_minutes=payload.duration_minutes,
        max_participants=payload.max_participants,
        min_participants=payload.min_participants,
        price_per_person_cents=payload.price_per_person_cents,
        starts_on=payload.starts_on,
        ends_on=payload.ends_on,
        location=payload.location.model_dump(exclude_none=True) if payload.location else None,
        coach_id=payload.coach_id,
    )
    return finish_recurring(result, background_tasks)


@router.get("/{template_id}", response_model=schemas.RecurringLesson)
def get_recurring_lesson(template_id: int, db: Session = Depends(get_db)):
    template = db.get(models.RecurringLessonTemplate, template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="Recurring lesson not found")
    view = schemas.RecurringLesson.model_validate(template)
    view.lesson_ids = [lesson.id for lesson in template.lessons]
    return view


@router.patch("/{template_id}", response_model=schemas.RecurringLessonResponse)
def edit_recurring_lesson(
    template_id: int,
    payload: schemas.RecurringLessonUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.require_roles(Role.coach, Role.admin)),
):
    result = recurring_lesson_service.edit_recurring_lesson(
        db, gateway, principal, template_id=template_id, changes=payload.model_dump(exclude_unset=True)
    )
    return finish_recurring(result, background_tasks)


@router.post("/{template_id}/generate", response_model=schemas.RecurringLessonResponse)
def generate_lessons(
    template_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(deps.require_roles(Role.coach, Role.admin)),
):
    result = recurring_lesson_service.generate_lessons(db, principal, template_id=template_id)
    return finish_recurring(result, background_tasks)


@router.post("/{template_id}/cancel", response_model=schemas.RecurringLessonResponse)
def cancel_recurring_lesson(
    template_id: int,
    payload: schemas.RecurringLessonCancel,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
    principal: Principal = Depends(deps.require_roles(Role.coach, Role.admin)),
):
    result = recurring_lesson_service.cancel_recurring_lesson(
        db, gateway, principal, template_id=template_id, reason=payload.reason
    )
    return finish_recurring(result, background_tasks)
