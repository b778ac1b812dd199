from . import (
    booking_service,
    ledger,
    notification_service,
    payment_orchestrator,
    pricing,
    state_machine,
)
__all__ = [
    "booking_service",
    "ledger",
    "notification_service",
    "payment_orchestrator",
    "pricing",
    "state_machine",
]
