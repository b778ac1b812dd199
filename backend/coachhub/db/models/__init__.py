from .booking import Booking, BookingType, ApprovalStatus, FulfillmentStatus
from .details import (
    IndividualBookingDetails,
    PrivateGroupBookingDetails,
    PublicGroupLessonDetails,
    PaymentStatus,
    CapacityStatus,
)
from .participant import (
    BookingParticipant,
    ParticipantRole,
    ParticipantStatus,
    ParticipantPaymentStatus,
)
from .payment import BookingPayment, BookingPaymentKind
from .transition import BookingStateTransition
from .coach_account import CoachPaymentAccount
from .recurring_lesson import RecurringLessonTemplate
