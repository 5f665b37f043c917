"""Payment data model and the store interfaces the payment services consume."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sponsorpay.db.models import Gateway, SponsorshipStatus


# Organizer payment profile
@dataclass
class StripeCredentials:
    """Stripe Connect credentials for an organizer's connected account."""

    account_id: str  # acct_...
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    livemode: bool = False
    connected_at: Optional[datetime] = None  # UTC


@dataclass
class SquareCredentials:
    """Square OAuth credentials for an organizer's merchant account."""

    merchant_id: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # UTC
    main_location_id: Optional[str] = None
    connected_at: Optional[datetime] = None  # UTC


@dataclass
class OrganizerPaymentProfile:
    """
    Payment-related view of an organizer.

    Only ``active_gateway`` and the credential subtrees are written by the
    payments package; ``waive_fees`` and ``slack_webhook_url`` are owned
    elsewhere and read-only here.
    """

    organizer_id: str
    active_gateway: Gateway = Gateway.NONE
    sandbox_mode: bool = False
    waive_fees: bool = False
    stripe: Optional[StripeCredentials] = None
    square: Optional[SquareCredentials] = None
    slack_webhook_url: Optional[str] = None

    def credentials_for(self, provider: Gateway):
        if provider == Gateway.STRIPE:
            return self.stripe
        if provider == Gateway.SQUARE:
            return self.square
        return None


# Sponsorship ledger row
@dataclass
class Sponsorship:
    """A sponsor's purchase of a package."""

    id: str
    package_id: str
    organizer_id: str
    amount: Decimal
    status: SponsorshipStatus = SponsorshipStatus.PENDING
    sponsor_name: str = ""
    sponsor_email: str = ""
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    is_test: bool = False
    package_title: Optional[str] = None


# Checkout input
@dataclass
class CheckoutItem:
    """One purchasable line. ``price`` is in major units (dollars)."""

    name: str
    price: Decimal
    quantity: int = 1
    description: Optional[str] = None


@dataclass
class CheckoutRequest:
    """Transient request to open a hosted checkout session."""

    organizer_id: str
    items: list[Any]  # CheckoutItem or raw request objects, parsed after the connection check
    success_url: str
    cancel_url: str
    cover_fees: bool = False
    customer_email: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SquarePaymentRequest:
    """Transient request to charge a card nonce through Square."""

    organizer_id: str
    source_id: str  # card nonce from the Web Payments SDK
    amount: Decimal  # subtotal in major units
    cover_fees: bool = False
    payer_email: Optional[str] = None
    note: str = "Sponsorship Payment"


# Store interfaces
class OrganizerStore(ABC):
    """Read/write access to organizer payment profiles."""

    @abstractmethod
    async def get(self, organizer_id: str) -> Optional[OrganizerPaymentProfile]:
        """
        Load an organizer's payment profile.

        Returns:
            The profile, or None when the organizer does not exist
        """

    @abstractmethod
    async def update(self, organizer_id: str, fields: dict[str, Any]) -> None:
        """
        Merge ``fields`` into the stored profile in a single write.

        Keys are ``active_gateway``, a whole credential subtree (``stripe``
        or ``square``, where None clears it) or a dotted nested field such
        as ``square.access_token``. Keys not mentioned are left untouched.
        """


class SponsorshipStore(ABC):
    """Access to sponsorship rows."""

    @abstractmethod
    async def mark_paid(
        self,
        sponsorship_ids: list[str],
        payment_id: str,
        payment_method: str,
    ) -> list[Sponsorship]:
        """
        Atomically move pending sponsorships in ``sponsorship_ids`` to paid.

        Rows that are already paid (or further along) are left alone.

        Returns:
            The sponsorships that transitioned in this call
        """
