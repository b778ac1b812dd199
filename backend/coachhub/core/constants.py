"""Common application-wide constants."""

from datetime import timedelta

# Default windows; the running values come from Settings
COACH_RESPONSE_WINDOW = timedelta(hours=48)
PAYMENT_DEADLINE = timedelta(hours=24)
AUTHORIZATION_HOLD = timedelta(hours=24)
PAYMENT_REMINDER_WINDOW = timedelta(minutes=60)
LOCK_TTL = timedelta(minutes=5)

MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = 50

# Recurring lessons without an end date are generated this far ahead
RECURRING_HORIZON = timedelta(weeks=8)
MAX_RECURRING_OCCURRENCES = 52
MIN_LESSON_MINUTES = 15
MAX_LESSON_MINUTES = 480

# Metadata for system-driven transitions
SYSTEM_ACTOR = "system"
RESPONSE_TIMEOUT_REASON = "Coach did not respond in time"
PAYMENT_TIMEOUT_REASON = "Payment not received within the payment window"
AUTHORIZATION_TIMEOUT_REASON = "Coach did not confirm your spot before the hold expired"
CAPACITY_FULL_REASON = "This lesson is full"
LESSON_CANCELLED_REASON = "The lesson was cancelled by the coach"
AUTO_COMPLETE_REASON = "Session ended"
GATEWAY_FAILURE_MESSAGE = "Payment could not be processed, please retry"
RECURRING_CANCELLED_REASON = "The recurring lesson was cancelled by the coach"
RECURRING_RESCHEDULED_REASON = "The recurring lesson was rescheduled"


__all__ = [
    "COACH_RESPONSE_WINDOW",
    "PAYMENT_DEADLINE",
    "AUTHORIZATION_HOLD",
    "PAYMENT_REMINDER_WINDOW",
    "LOCK_TTL",
    "MIN_GROUP_SIZE",
    "MAX_GROUP_SIZE",
    "SYSTEM_ACTOR",
    "RESPONSE_TIMEOUT_REASON",
    "PAYMENT_TIMEOUT_REASON",
    "AUTHORIZATION_TIMEOUT_REASON",
    "CAPACITY_FULL_REASON",
    "LESSON_CANCELLED_REASON",
    "AUTO_COMPLETE_REASON",
    "GATEWAY_FAILURE_MESSAGE",
    "RECURRING_HORIZON",
    "MAX_RECURRING_OCCURRENCES",
    "MIN_LESSON_MINUTES",
    "MAX_LESSON_MINUTES",
    "RECURRING_CANCELLED_REASON",
    "RECURRING_RESCHEDULED_REASON",
]
