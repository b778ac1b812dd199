from typing import Annotated

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from ..config import get_settings
from ..core.security import Principal, Role, decode_principal
from ..db import schemas
from ..services.booking_service import ActionResult
from ..services.recurring_lesson_service import RecurringResult
from ..services.notification_service import dispatch_notifications
from ..services.payments import BasePaymentGateway, get_configured_gateway

bearer_scheme = HTTPBearer(auto_error=False)

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "guard_violation": status.HTTP_409_CONFLICT,
    "concurrency_conflict": status.HTTP_409_CONFLICT,
    "data_integrity_violation": status.HTTP_409_CONFLICT,
    "gateway_error": status.HTTP_502_BAD_GATEWAY,
    "gateway_timeout": status.HTTP_502_BAD_GATEWAY,
    "already_captured": status.HTTP_502_BAD_GATEWAY,
    "already_cancelled": status.HTTP_502_BAD_GATEWAY,
}


def get_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    if credentials is None:
        raise credentials_exception
    try:
        return decode_principal(credentials.credentials)
    except (JWTError, ValueError) as exc:
        raise credentials_exception from exc


def require_roles(*roles: Role):
    def dependency(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return principal

    return dependency


def get_payment_gateway() -> BasePaymentGateway:
    return get_configured_gateway()


def require_sweeper_secret(
    x_sweeper_secret: Annotated[str | None, Header()] = None,
) -> None:
    settings = get_settings()
    if not settings.sweeper_secret or x_sweeper_secret != settings.sweeper_secret:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def raise_for_result(result: ActionResult | RecurringResult) -> ActionResult | RecurringResult:
    """Turn a failed action result into the matching HTTP error."""
    if result.ok:
        return result
    if result.reason_code == "forbidden_role":
        status_code = status.HTTP_403_FORBIDDEN
    else:
        status_code = ERROR_STATUS.get(result.error_code, status.HTTP_409_CONFLICT)
    raise HTTPException(
        status_code=status_code,
        detail={"code": result.error_code, "reason_code": result.reason_code, "message": result.reason},
    )


def finish_action(result: ActionResult, background_tasks: BackgroundTasks) -> schemas.ActionResponse:
    raise_for_result(result)
    if result.notifications:
        background_tasks.add_task(dispatch_notifications, result.notifications)
    return schemas.ActionResponse(
        booking_id=result.booking_id,
        participant_id=result.participant_id,
        created=result.created,
        client_secret=result.client_secret,
    )
