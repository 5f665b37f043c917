"""Slack incoming-webhook notifications for new sponsorships."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 10


@dataclass
class SponsorshipEvent:
    """What a new-sponsorship notification says."""

    sponsorship_id: str
    organizer_id: str
    sponsor_name: str
    sponsor_email: str
    package_title: str
    amount: str  # formatted, e.g. "250.00"
    payment_method: str
    dashboard_url: Optional[str] = None


class NotificationSender(ABC):
    """Delivers one event to one webhook URL."""

    @abstractmethod
    async def send(self, webhook_url: str, event: SponsorshipEvent) -> None:
        """
        Deliver the event.

        Raises:
            Exception: Any delivery failure; callers treat sends as best effort
        """


def build_slack_message(event: SponsorshipEvent) -> dict[str, Any]:
    """Slack Block Kit payload for a sponsorship event."""
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "New Sponsorship Received!", "emoji": True},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Sponsor:*\n{event.sponsor_name}"},
                {"type": "mrkdwn", "text": f"*Package:*\n{event.package_title}"},
            ],
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Contact Email:*\n{event.sponsor_email}"},
                {"type": "mrkdwn", "text": f"*Amount:*\n${event.amount} via {event.payment_method}"},
            ],
        },
    ]
    if event.dashboard_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View in Dashboard", "emoji": True},
                        "url": event.dashboard_url,
                        "style": "primary",
                    }
                ],
            }
        )

    return {
        "text": f"New Sponsorship! {event.sponsor_name} purchased {event.package_title}",
        "blocks": blocks,
    }


class SlackNotificationSender(NotificationSender):
    """Posts sponsorship events to a Slack incoming webhook."""

    async def send(self, webhook_url: str, event: SponsorshipEvent) -> None:
        timeout = aiohttp.ClientTimeout(total=SEND_TIMEOUT_SECONDS)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(webhook_url, json=build_slack_message(event)) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        raise RuntimeError(f"Slack webhook returned {resp.status}: {body[:200]}")
        except asyncio.TimeoutError:
            raise RuntimeError(f"Slack webhook timed out after {SEND_TIMEOUT_SECONDS}s")

        logger.debug(f"Slack notification sent for sponsorship {event.sponsorship_id}")
