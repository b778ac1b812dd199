from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ...api import deps
from ...db import schemas
from ...db.session import get_db
from ...services.notification_service import dispatch_notifications
from ...services.payments import BasePaymentGateway
from ...workers.sweeper import run_sweep

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post(
    "/sweep",
    response_model=schemas.SweepResult,
    dependencies=[Depends(deps.require_sweeper_secret)],
)
def sweep(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: BasePaymentGateway = Depends(deps.get_payment_gateway),
):
    report = run_sweep(db, gateway)
    if report.notifications:
        background_tasks.add_task(dispatch_notifications, report.notifications)
    return report.summary()
