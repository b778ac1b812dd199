from . import (
    bookings,
    lessons,
    payments,
    recurring_lessons,
    internal,
    misc,
)

__all__ = [
    "bookings",
    "lessons",
    "payments",
    "recurring_lessons",
    "internal",
    "misc",
]
