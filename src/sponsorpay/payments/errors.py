"""Payment error taxonomy.

Every error raised by the payments package is a ``PaymentError`` carrying
an HTTP status and a machine-readable code, so the HTTP layer can map it
without knowing which component raised it. Provider-specific error shapes
(Stripe SDK exceptions, Square JSON error bodies) are normalized into
``ProviderError`` at the gateway boundary and nowhere else.
"""

from typing import Any, Optional

import stripe


class PaymentError(Exception):
    """Base class for payment domain errors."""

    status_code: int = 500
    default_code: str = "payment_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ConfigurationError(PaymentError):
    """Platform credentials or URLs are missing."""

    status_code = 500
    default_code = "configuration_error"


class InvalidState(PaymentError):
    """OAuth state parameter could not be decoded."""

    status_code = 400
    default_code = "invalid_state"


class NotConnected(PaymentError):
    """Organizer has no credentials for the requested gateway."""

    status_code = 400
    default_code = "not_connected"


class NeedsReconnect(PaymentError):
    """Stored credentials can no longer be refreshed; OAuth must be redone."""

    status_code = 400
    default_code = "needs_reconnect"


class RefreshFailed(PaymentError):
    """Provider rejected the refresh-token grant."""

    status_code = 400
    default_code = "refresh_failed"


class ValidationError(PaymentError):
    """Malformed request input."""

    status_code = 400
    default_code = "validation_error"


class InvalidItems(ValidationError):
    """Checkout items are empty, non-positive or over the maximum charge."""

    default_code = "invalid_items"


class ProviderError(PaymentError):
    """
    Normalized failure from a payment provider.

    Attributes:
        code: Provider error code when one was returned, else a local code
            such as ``timeout`` or ``provider_error``
        message: Provider's human-readable detail, or a generic message
        raw: Original error payload for logging
        retryable: True when no local state changed and the call may be
            retried (timeouts, rate limits, provider 5xx)
    """

    status_code = 500
    default_code = "provider_error"

    def __init__(
        self,
        message: str = "Payment provider request failed",
        code: Optional[str] = None,
        raw: Any = None,
        retryable: bool = False,
    ):
        super().__init__(message, code)
        self.raw = raw
        self.retryable = retryable

    @classmethod
    def timeout(cls, provider: str, seconds: float) -> "ProviderError":
        return cls(
            f"{provider} did not respond within {seconds:g}s",
            code="timeout",
            retryable=True,
        )

    @classmethod
    def from_stripe(cls, err: stripe.StripeError) -> "ProviderError":
        """Normalize a Stripe SDK exception."""
        retryable = isinstance(err, (stripe.RateLimitError, stripe.APIConnectionError)) or (
            err.http_status is not None and err.http_status >= 500
        )
        message = err.user_message or str(err) or "Stripe request failed"
        return cls(
            message,
            code=err.code or "stripe_error",
            raw=err.json_body,
            retryable=retryable,
        )

    @classmethod
    def from_square(cls, status: int, body: Any) -> "ProviderError":
        """
        Normalize a Square error response.

        Square v2 endpoints return ``{"errors": [{"code", "detail", ...}]}``;
        the OAuth endpoints may instead return ``{"message", "type"}``.
        """
        code = None
        message = None
        if isinstance(body, dict):
            errors = body.get("errors")
            if isinstance(errors, list) and errors:
                code = errors[0].get("code")
                details = [e.get("detail") for e in errors if e.get("detail")]
                message = ", ".join(details) or None
            elif body.get("message"):
                code = body.get("type")
                message = body["message"]

        return cls(
            message or f"Square request failed with status {status}",
            code=code or "square_error",
            raw=body,
            retryable=status == 429 or status >= 500,
        )
