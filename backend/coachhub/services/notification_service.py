from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

import httpx

from ..config import get_settings
from ..db import models

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class NotificationIntent:
    kind: str
    recipient_id: int
    booking_id: int
    message: str
    participant_id: int | None = None


def _when(starts_at: datetime) -> str:
    return starts_at.strftime("%Y-%m-%d %H:%M UTC")


def booking_requested(booking: models.Booking) -> NotificationIntent:
    return NotificationIntent(
        kind="booking_requested",
        recipient_id=booking.coach_id,
        booking_id=booking.id,
        message=f"New session request for {_when(booking.scheduled_start_at)}.",
    )


def booking_accepted(booking: models.Booking, payer_id: int, due_at: datetime) -> NotificationIntent:
    return NotificationIntent(
        kind="booking_accepted",
        recipient_id=payer_id,
        booking_id=booking.id,
        message=(
            f"Your session on {_when(booking.scheduled_start_at)} was accepted. "
            f"Please complete payment by {_when(due_at)}."
        ),
    )


def booking_declined(booking: models.Booking, payer_id: int, reason: str | None) -> NotificationIntent:
    message = f"Your session request for {_when(booking.scheduled_start_at)} was declined."
    if reason:
        message = f"{message} Reason: {reason}"
    return NotificationIntent(
        kind="booking_declined",
        recipient_id=payer_id,
        booking_id=booking.id,
        message=message,
    )


def booking_expired(booking: models.Booking, payer_id: int, reason: str) -> NotificationIntent:
    return NotificationIntent(
        kind="booking_expired",
        recipient_id=payer_id,
        booking_id=booking.id,
        message=f"Your session request for {_when(booking.scheduled_start_at)} expired. {reason}.",
    )


def booking_cancelled(
    booking: models.Booking,
    recipient_id: int,
    reason: str | None,
    refunded: bool = False,
) -> NotificationIntent:
    message = f"The session on {_when(booking.scheduled_start_at)} was cancelled."
    if reason:
        message = f"{message} Reason: {reason}"
    if refunded:
        message = f"{message} A refund has been issued."
    return NotificationIntent(
        kind="booking_cancelled",
        recipient_id=recipient_id,
        booking_id=booking.id,
        message=message,
    )


def payment_captured(booking: models.Booking, payer_id: int) -> NotificationIntent:
    return NotificationIntent(
        kind="payment_captured",
        recipient_id=payer_id,
        booking_id=booking.id,
        message=f"Payment received. Your session on {_when(booking.scheduled_start_at)} is confirmed.",
    )


def payment_reminder(booking: models.Booking, payer_id: int, due_at: datetime) -> NotificationIntent:
    return NotificationIntent(
        kind="payment_reminder",
        recipient_id=payer_id,
        booking_id=booking.id,
        message=f"Payment for your session is due by {_when(due_at)} or the booking will be cancelled.",
    )


def participant_update(
    booking: models.Booking,
    participant: models.BookingParticipant,
    kind: str,
    message: str,
) -> NotificationIntent:
    return NotificationIntent(
        kind=kind,
        recipient_id=participant.user_id,
        booking_id=booking.id,
        participant_id=participant.id,
        message=message,
    )


def booking_completed(booking: models.Booking, recipient_id: int) -> NotificationIntent:
    return NotificationIntent(
        kind="booking_completed",
        recipient_id=recipient_id,
        booking_id=booking.id,
        message=f"Your session on {_when(booking.scheduled_start_at)} is complete.",
    )


def dispute_opened(booking: models.Booking, recipient_id: int) -> NotificationIntent:
    return NotificationIntent(
        kind="dispute_opened",
        recipient_id=recipient_id,
        booking_id=booking.id,
        message="A dispute was opened for this session. Payout is on hold until it is resolved.",
    )


def dispatch_notifications(notifications: list[NotificationIntent]) -> int:
    """Hand intents to the external notifier; returns how many were accepted."""
    if not notifications:
        return 0

    settings = get_settings()
    webhook_url = settings.notification_webhook_url
    if not webhook_url:
        logger.info(
            "Notification webhook is not configured; skipping notifications",
            extra={"count": len(notifications)},
        )
        return 0

    delivered = 0
    with httpx.Client(timeout=10) as client:
        for notification in notifications:
            try:
                response = client.post(webhook_url, json=asdict(notification))
                response.raise_for_status()
                delivered += 1
            except httpx.HTTPError:
                logger.exception(
                    "Failed to dispatch notification",
                    extra={"booking_id": notification.booking_id, "kind": notification.kind},
                )
    return delivered
