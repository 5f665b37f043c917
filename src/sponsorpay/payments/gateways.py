"""Per-call payment provider clients.

Clients are built by ``GatewayClientFactory`` for each operation from the
platform configuration plus, where needed, an organizer's own access
token. Nothing here keeps module-level SDK state: every Stripe call passes
its ``api_key`` explicitly and every Square call opens its own session.

Both clients put an explicit timeout on each provider call and translate
provider failures into ``ProviderError`` before returning.
"""

import asyncio
import functools
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import aiohttp
import stripe

from sponsorpay.config.settings import AppConfig
from sponsorpay.payments.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

STRIPE_AUTHORIZE_URL = "https://connect.stripe.com/oauth/authorize"
STRIPE_SCOPE = "read_write"

SQUARE_HOSTS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}
SQUARE_API_VERSION = "2024-12-18"
SQUARE_SCOPES = [
    "MERCHANT_PROFILE_READ",
    "PAYMENTS_WRITE_ADDITIONAL_RECIPIENTS",
    "PAYMENTS_WRITE",
    "PAYMENTS_READ",
]


def parse_square_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse Square's ISO-8601 ``expires_at`` (e.g. 2025-01-01T00:00:00Z) as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable Square expires_at: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class StripeGateway:
    """Stripe Connect operations performed with the platform secret key."""

    def __init__(self, secret_key: str, client_id: str, timeout: float):
        self.secret_key = secret_key
        self.client_id = client_id
        self.timeout = timeout

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call in a worker thread under the timeout."""
        call = functools.partial(fn, *args, api_key=self.secret_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderError.timeout("Stripe", self.timeout)
        except stripe.StripeError as e:
            raise ProviderError.from_stripe(e) from e

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "scope": STRIPE_SCOPE,
            "redirect_uri": redirect_uri,
            "state": state,
            "stripe_user[business_type]": "individual",
        }
        return f"{STRIPE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> Any:
        """Exchange an authorization code for connected-account tokens."""
        return await self._call(
            stripe.OAuth.token,
            grant_type="authorization_code",
            code=code,
        )

    async def deauthorize(self, account_id: str) -> None:
        await self._call(
            stripe.OAuth.deauthorize,
            client_id=self.client_id,
            stripe_user_id=account_id,
        )

    async def create_checkout_session(self, params: dict[str, Any], idempotency_key: str) -> Any:
        return await self._call(
            stripe.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )

    async def retrieve_checkout_session(self, session_id: str) -> Any:
        return await self._call(stripe.checkout.Session.retrieve, session_id)

    async def retrieve_account(self, account_id: str) -> Any:
        return await self._call(stripe.Account.retrieve, account_id)


class SquareGateway:
    """
    Square REST client.

    OAuth calls authenticate with the platform application credentials;
    merchant calls (locations, payments) need the organizer's access token.
    """

    def __init__(
        self,
        environment: str,
        app_id: str,
        app_secret: str,
        timeout: float,
        access_token: Optional[str] = None,
    ):
        self.base_url = SQUARE_HOSTS[environment]
        self.app_id = app_id
        self.app_secret = app_secret
        self.timeout = timeout
        self.access_token = access_token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict[str, Any]] = None,
        authorization: Optional[str] = None,
    ) -> dict[str, Any]:
        headers = {
            "Square-Version": SQUARE_API_VERSION,
            "Content-Type": "application/json",
        }
        if authorization:
            headers["Authorization"] = authorization

        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, json=payload, headers=headers) as resp:
                    text = await resp.text()
                    try:
                        body = json.loads(text) if text else {}
                    except ValueError:
                        body = {"message": text}
                    if resp.status >= 400:
                        raise ProviderError.from_square(resp.status, body)
                    return body
        except asyncio.TimeoutError:
            raise ProviderError.timeout("Square", self.timeout)
        except aiohttp.ClientError as e:
            raise ProviderError(f"Square request failed: {e}", code="connection_error", retryable=True) from e

    def _bearer(self) -> str:
        if not self.access_token:
            raise ConfigurationError("Square merchant call requires an access token")
        return f"Bearer {self.access_token}"

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.app_id,
            "scope": " ".join(SQUARE_SCOPES),
            "session": "false",
            "state": state,
        }
        return f"{self.base_url}/oauth2/authorize?{urlencode(params)}"

    async def obtain_token(
        self,
        *,
        code: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """Run the authorization-code grant, or the refresh-token grant when ``refresh_token`` is given."""
        payload = {"client_id": self.app_id, "client_secret": self.app_secret}
        if refresh_token is not None:
            payload.update(grant_type="refresh_token", refresh_token=refresh_token)
        else:
            payload.update(grant_type="authorization_code", code=code)
        return await self._request("POST", "/oauth2/token", payload=payload)

    async def revoke_token(self, merchant_id: str) -> None:
        await self._request(
            "POST",
            "/oauth2/revoke",
            payload={"client_id": self.app_id, "merchant_id": merchant_id},
            authorization=f"Client {self.app_secret}",
        )

    async def main_location_id(self) -> Optional[str]:
        """Id of the merchant's first ACTIVE location, if any."""
        body = await self._request("GET", "/v2/locations", authorization=self._bearer())
        for location in body.get("locations", []):
            if location.get("status") == "ACTIVE":
                return location.get("id")
        return None

    async def create_payment(self, payment: dict[str, Any]) -> dict[str, Any]:
        body = await self._request("POST", "/v2/payments", payload=payment, authorization=self._bearer())
        return body.get("payment", {})


class GatewayClientFactory:
    """Builds provider clients from platform config on demand."""

    def __init__(self, config: AppConfig):
        self.config = config

    def stripe(self) -> StripeGateway:
        secret = self.config.stripe_secret.get_secret_value()
        if not secret:
            raise ConfigurationError("stripe_secret not configured")
        return StripeGateway(
            secret_key=secret,
            client_id=self.config.stripe_client_id,
            timeout=self.config.provider_timeout_seconds,
        )

    def square(self, access_token: Optional[str] = None) -> SquareGateway:
        return SquareGateway(
            environment=self.config.payment_environment,
            app_id=self.config.square_app_id,
            app_secret=self.config.square_app_secret.get_secret_value(),
            timeout=self.config.provider_timeout_seconds,
            access_token=access_token,
        )
