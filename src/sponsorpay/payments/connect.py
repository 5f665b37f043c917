"""OAuth connect, callback and disconnect for organizer payment gateways.

Per (organizer, provider) the flow is::

    Disconnected --begin_connect--> AwaitingCallback
    AwaitingCallback --handle_callback ok--> Connected
    AwaitingCallback --handle_callback fail--> Disconnected
    Connected --disconnect--> Disconnected

Nothing is written to the store until the provider has confirmed the code
exchange, so a failed callback leaves any previous credentials untouched.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sponsorpay.config.settings import AppConfig
from sponsorpay.db.models import Gateway
from sponsorpay.payments.base import OrganizerStore, SquareCredentials, StripeCredentials
from sponsorpay.payments.errors import (
    ConfigurationError,
    InvalidState,
    PaymentError,
    ProviderError,
    ValidationError,
)
from sponsorpay.payments.gateways import GatewayClientFactory, parse_square_expiry

logger = logging.getLogger(__name__)

CONNECTABLE = (Gateway.STRIPE, Gateway.SQUARE)


@dataclass
class CallbackResult:
    """Outcome of an OAuth callback; ``error`` is a short code on failure."""

    provider: Gateway
    organizer_id: Optional[str] = None
    credentials: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def encode_state(organizer_id: str) -> str:
    """Opaque OAuth state carrying the organizer id."""
    raw = json.dumps({"userId": organizer_id}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_state(state: Optional[str]) -> str:
    """
    Recover the organizer id from an OAuth state token.

    Raises:
        InvalidState: If the token is missing, not base64 JSON, or has no userId
    """
    if not state:
        raise InvalidState("Missing OAuth state")
    try:
        padded = state + "=" * (-len(state) % 4)
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidState("Undecodable OAuth state") from e

    organizer_id = decoded.get("userId") if isinstance(decoded, dict) else None
    if not isinstance(organizer_id, str) or not organizer_id:
        raise InvalidState("OAuth state has no userId")
    return organizer_id


class GatewayConnectionService:
    """Connects organizers to Stripe or Square and manages stored credentials."""

    def __init__(
        self,
        config: AppConfig,
        organizers: OrganizerStore,
        gateways: Optional[GatewayClientFactory] = None,
    ):
        self.config = config
        self.organizers = organizers
        self.gateways = gateways or GatewayClientFactory(config)

    @staticmethod
    def _provider(provider: Any) -> Gateway:
        try:
            gateway = Gateway(provider)
        except ValueError:
            gateway = None
        if gateway not in CONNECTABLE:
            raise ValidationError(f"Unsupported payment provider: {provider}")
        return gateway

    def callback_url(self, provider: Gateway) -> str:
        return f"{self.config.api_url}/api/payments/{provider.value}/callback"

    def begin_connect(self, provider: Any, organizer_id: str) -> str:
        """
        Build the provider authorize URL for an organizer.

        Raises:
            ConfigurationError: If the platform OAuth client id is unset
            ValidationError: If the provider cannot be connected
        """
        provider = self._provider(provider)
        state = encode_state(organizer_id)

        if provider == Gateway.STRIPE:
            if not self.config.stripe_client_id:
                raise ConfigurationError("stripe_client_id not configured")
            return self.gateways.stripe().authorize_url(state, self.callback_url(provider))

        if not self.config.square_app_id:
            raise ConfigurationError("square_app_id not configured")
        return self.gateways.square().authorize_url(state)

    async def handle_callback(
        self,
        provider: Any,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
    ) -> CallbackResult:
        """
        Complete the OAuth round trip and persist the new credentials.

        Never raises for provider or state problems; the caller is a
        browser redirect, so failures come back as ``CallbackResult.error``.
        """
        provider = self._provider(provider)

        if error:
            logger.warning(f"{provider.value} OAuth returned error: {error}")
            return CallbackResult(provider, error=error)

        try:
            organizer_id = decode_state(state)
        except InvalidState as e:
            logger.warning(f"{provider.value} callback with invalid state: {e}")
            return CallbackResult(provider, error=InvalidState.default_code)

        if not code:
            return CallbackResult(provider, organizer_id, error="missing_code")

        try:
            if provider == Gateway.STRIPE:
                credentials = await self._exchange_stripe(code)
            else:
                credentials = await self._exchange_square(code)
        except PaymentError as e:
            logger.error(f"{provider.value} token exchange failed for {organizer_id}: {e.code}: {e.message}")
            return CallbackResult(provider, organizer_id, error="token_exchange_failed")

        await self.organizers.update(
            organizer_id,
            {"active_gateway": provider, provider.value: credentials},
        )
        logger.info(f"{provider.value} connected for organizer {organizer_id}")
        return CallbackResult(provider, organizer_id, credentials)

    async def _exchange_stripe(self, code: str) -> StripeCredentials:
        response = await self.gateways.stripe().exchange_code(code)
        account_id = response.get("stripe_user_id")
        if not account_id:
            raise ProviderError("Stripe token response has no stripe_user_id", raw=response)
        return StripeCredentials(
            account_id=account_id,
            access_token=response.get("access_token"),
            refresh_token=response.get("refresh_token"),
            livemode=bool(response.get("livemode")),
            connected_at=datetime.now(timezone.utc),
        )

    async def _exchange_square(self, code: str) -> SquareCredentials:
        if not self.config.square_app_id:
            raise ConfigurationError("square_app_id not configured")

        response = await self.gateways.square().obtain_token(code=code)
        access_token = response.get("access_token")
        merchant_id = response.get("merchant_id")
        if not access_token or not merchant_id:
            raise ProviderError("Square token response is missing access_token or merchant_id", raw=response)

        location_id = None
        try:
            location_id = await self.gateways.square(access_token).main_location_id()
        except ProviderError as e:
            logger.warning(f"Could not fetch Square locations for merchant {merchant_id}: {e.message}")

        return SquareCredentials(
            merchant_id=merchant_id,
            access_token=access_token,
            refresh_token=response.get("refresh_token"),
            expires_at=parse_square_expiry(response.get("expires_at")),
            main_location_id=location_id,
            connected_at=datetime.now(timezone.utc),
        )

    async def disconnect(self, provider: Any, organizer_id: str) -> bool:
        """
        Revoke (best effort) and clear an organizer's credentials.

        Returns True even when nothing was stored.
        """
        provider = self._provider(provider)
        profile = await self.organizers.get(organizer_id)
        credentials = profile.credentials_for(provider) if profile else None

        if credentials is None:
            logger.info(f"No {provider.value} credentials to disconnect for {organizer_id}")
            return True

        try:
            if provider == Gateway.STRIPE:
                await self.gateways.stripe().deauthorize(credentials.account_id)
            else:
                await self.gateways.square().revoke_token(credentials.merchant_id)
        except PaymentError as e:
            logger.warning(f"{provider.value} revoke failed for {organizer_id}: {e.message}")

        fields: dict[str, Any] = {provider.value: None}
        if profile.active_gateway == provider:
            fields["active_gateway"] = Gateway.NONE
        await self.organizers.update(organizer_id, fields)

        logger.info(f"{provider.value} disconnected for organizer {organizer_id}")
        return True

    async def account_status(self, provider: Any, organizer_id: str) -> dict[str, Any]:
        """Connection summary for the organizer's dashboard."""
        provider = self._provider(provider)
        profile = await self.organizers.get(organizer_id)
        credentials = profile.credentials_for(provider) if profile else None
        if credentials is None:
            return {"connected": False}

        if provider == Gateway.SQUARE:
            return {
                "connected": True,
                "merchantId": credentials.merchant_id,
                "mainLocationId": credentials.main_location_id,
                "expiresAt": credentials.expires_at.isoformat() if credentials.expires_at else None,
                "connectedAt": credentials.connected_at.isoformat() if credentials.connected_at else None,
                "active": profile.active_gateway == provider,
            }

        account = await self.gateways.stripe().retrieve_account(credentials.account_id)
        return {
            "connected": True,
            "accountId": credentials.account_id,
            "livemode": credentials.livemode,
            "connectedAt": credentials.connected_at.isoformat() if credentials.connected_at else None,
            "chargesEnabled": account.get("charges_enabled"),
            "payoutsEnabled": account.get("payouts_enabled"),
            "detailsSubmitted": account.get("details_submitted"),
            "active": profile.active_gateway == provider,
        }
