"""Square access-token lifecycle.

Square OAuth access tokens expire, so every merchant call first goes
through ``ensure_valid_access_token``. A token is reused until it is
within ``EXPIRY_BUFFER`` of expiring; past that point it is refreshed with
the platform's application credentials and the organizer's refresh token.

Refreshes are not serialized per organizer. Two requests hitting the
buffer at the same moment will each refresh.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sponsorpay.payments.base import OrganizerStore
from sponsorpay.payments.errors import (
    NeedsReconnect,
    NotConnected,
    PaymentError,
    RefreshFailed,
)
from sponsorpay.payments.gateways import GatewayClientFactory, parse_square_expiry

logger = logging.getLogger(__name__)

EXPIRY_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Hands out Square access tokens that will outlive the next provider call."""

    def __init__(
        self,
        organizers: OrganizerStore,
        gateways: GatewayClientFactory,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.organizers = organizers
        self.gateways = gateways
        self.clock = clock

    async def ensure_valid_access_token(self, organizer_id: str) -> str:
        """
        Return a usable Square access token for the organizer.

        Raises:
            NotConnected: Organizer has no Square access token
            NeedsReconnect: Token is expiring and no refresh token is stored
            RefreshFailed: Square rejected the refresh; stored tokens are unchanged
        """
        profile = await self.organizers.get(organizer_id)
        square = profile.square if profile else None
        if square is None or not square.access_token:
            raise NotConnected("Organizer has not connected Square")

        if square.expires_at is not None and self.clock() + EXPIRY_BUFFER < square.expires_at:
            return square.access_token

        if not square.refresh_token:
            raise NeedsReconnect("No refresh token available. Organizer must reconnect Square.")

        logger.info(f"Refreshing Square token for organizer {organizer_id}")

        try:
            response = await self.gateways.square().obtain_token(refresh_token=square.refresh_token)
        except PaymentError as e:
            logger.error(f"Square token refresh failed for {organizer_id}: {e.code}: {e.message}")
            raise RefreshFailed(f"Square token refresh failed: {e.message}") from e

        new_access_token = response.get("access_token")
        if not new_access_token:
            raise RefreshFailed("Square refresh response has no access_token")

        new_expires_at: Optional[datetime] = parse_square_expiry(response.get("expires_at"))

        await self.organizers.update(
            organizer_id,
            {
                "square.access_token": new_access_token,
                "square.refresh_token": response.get("refresh_token") or square.refresh_token,
                "square.expires_at": new_expires_at,
            },
        )

        logger.info(f"Square token refreshed for organizer {organizer_id}, new expiry: {new_expires_at}")
        return new_access_token
