"""Error taxonomy shared by the state machine, ledger, orchestrator and sweeper."""

from .constants import GATEWAY_FAILURE_MESSAGE


class BookingError(Exception):
    code = "booking_error"

    def __init__(self, message: str = "", *, reason_code: str | None = None) -> None:
        super().__init__(message or self.code)
        self.reason_code = reason_code or self.code

    @property
    def message(self) -> str:
        return str(self)


class InvalidTransition(BookingError):
    code = "invalid_transition"


class GuardViolation(BookingError):
    """A legal event whose guard failed; ``reason_code`` names the guard."""

    code = "guard_violation"

    def __init__(self, reason_code: str, message: str = "") -> None:
        super().__init__(message or reason_code.replace("_", " "), reason_code=reason_code)


class GatewayError(BookingError):
    code = "gateway_error"

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        super().__init__(message or GATEWAY_FAILURE_MESSAGE)
        # processor detail stays in logs only
        self.detail = detail


class GatewayTimeout(GatewayError):
    code = "gateway_timeout"


class AlreadyCaptured(GatewayError):
    code = "already_captured"


class AlreadyCancelled(GatewayError):
    code = "already_cancelled"


class ConcurrencyConflict(BookingError):
    code = "concurrency_conflict"


class DataIntegrityViolation(BookingError):
    code = "data_integrity_violation"


class NotFound(BookingError):
    code = "not_found"


__all__ = [
    "BookingError",
    "InvalidTransition",
    "GuardViolation",
    "GatewayError",
    "GatewayTimeout",
    "AlreadyCaptured",
    "AlreadyCancelled",
    "ConcurrencyConflict",
    "DataIntegrityViolation",
    "NotFound",
]
