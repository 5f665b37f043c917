"""Best-effort organizer notifications (Slack) delivered off the request path."""

from sponsorpay.notifications.dispatcher import NotificationDispatcher
from sponsorpay.notifications.slack import (
    NotificationSender,
    SlackNotificationSender,
    SponsorshipEvent,
)

__all__ = [
    "NotificationDispatcher",
    "NotificationSender",
    "SlackNotificationSender",
    "SponsorshipEvent",
]
