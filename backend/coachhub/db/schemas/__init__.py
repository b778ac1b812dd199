from .booking import (
    ActionResponse,
    Booking,
    BookingCancel,
    BookingDecision,
    DisputeCreate,
    IndividualBookingCreate,
    Location,
    Participant,
    PrivateGroupBookingCreate,
    StateTransition,
)
from .lesson import Lesson, LessonJoin, PublicLessonCreate
from .payment import BookingPayment, PaymentRequest, RefundRequest, SweepResult
from .recurring_lesson import (
    RecurringLesson,
    RecurringLessonCancel,
    RecurringLessonCreate,
    RecurringLessonResponse,
    RecurringLessonUpdate,
)
