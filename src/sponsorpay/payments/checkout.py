"""Checkout creation: fee split plus line items, submitted to the organizer's gateway."""

import json
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sponsorpay.config.settings import AppConfig
from sponsorpay.payments.base import (
    CheckoutItem,
    CheckoutRequest,
    OrganizerPaymentProfile,
    OrganizerStore,
    SquarePaymentRequest,
)
from sponsorpay.payments.errors import InvalidItems, NotConnected
from sponsorpay.payments.fees import FeeBreakdown, compute_fees, to_cents
from sponsorpay.payments.gateways import GatewayClientFactory
from sponsorpay.payments.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)

CURRENCY = "usd"
FEE_ITEM_NAME = "Platform Fee"
FEE_ITEM_DESCRIPTION = "Platform support fee"
# Largest single charge Stripe and Square accept ($999,999.99)
MAX_AMOUNT_CENTS = 99_999_999


@dataclass
class CheckoutSession:
    """Hosted checkout session the sponsor is redirected to."""

    session_id: str
    url: str
    fees: FeeBreakdown


@dataclass
class SquarePayment:
    """Result of a synchronous Square charge."""

    payment_id: str
    status: str
    fees: FeeBreakdown
    raw: dict[str, Any] = field(default_factory=dict)


def parse_items(raw_items: Any) -> list[CheckoutItem]:
    """
    Build checkout items from request JSON.

    Entries that are already ``CheckoutItem`` pass through. Only the shape
    is checked here; amounts are checked by ``validate_items``.

    Raises:
        InvalidItems: Not a list, non-object entry, non-numeric price or
            non-integer quantity
    """
    if not isinstance(raw_items, list):
        raise InvalidItems("items must be a list")

    items = []
    for i, raw in enumerate(raw_items):
        if isinstance(raw, CheckoutItem):
            items.append(raw)
            continue
        if not isinstance(raw, dict):
            raise InvalidItems(f"Item {i} is not an object")
        try:
            price = Decimal(str(raw.get("price")))
        except InvalidOperation:
            raise InvalidItems(f"Item {i} has an invalid price")
        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidItems(f"Item {i} quantity must be an integer")
        items.append(
            CheckoutItem(
                name=str(raw.get("name") or "Sponsorship"),
                price=price,
                quantity=quantity,
                description=raw.get("description"),
            )
        )

    return items


def validate_items(items: list[CheckoutItem]) -> None:
    if not items:
        raise InvalidItems("At least one item is required")
    for item in items:
        if not item.price.is_finite():
            raise InvalidItems(f"Item '{item.name}' must have a positive price")
        try:
            cents = to_cents(item.price)
        except InvalidOperation:
            raise InvalidItems(f"Item '{item.name}' price is too large")
        if cents <= 0:
            raise InvalidItems(f"Item '{item.name}' must have a positive price")
        if item.quantity <= 0:
            raise InvalidItems(f"Item '{item.name}' must have a positive quantity")
    if subtotal_cents(items) > MAX_AMOUNT_CENTS:
        raise InvalidItems("Order total exceeds the maximum charge amount")


def subtotal_cents(items: list[CheckoutItem]) -> int:
    return sum(to_cents(item.price) * item.quantity for item in items)


def _stripe_metadata(organizer_id: str, metadata: dict[str, Any]) -> dict[str, str]:
    """Stripe metadata values must be strings; structured values are JSON-encoded."""
    out = {"organizerId": organizer_id}
    for key, value in metadata.items():
        out[key] = value if isinstance(value, str) else json.dumps(value)
    return out


class CheckoutOrchestrator:
    """Opens provider checkout flows with the platform fee applied."""

    def __init__(
        self,
        config: AppConfig,
        organizers: OrganizerStore,
        gateways: GatewayClientFactory,
        tokens: Optional[TokenLifecycleManager] = None,
    ):
        self.config = config
        self.organizers = organizers
        self.gateways = gateways
        self.tokens = tokens or TokenLifecycleManager(organizers, gateways)

    def _fees(self, organizer: OrganizerPaymentProfile, subtotal: int, cover_fees: bool) -> FeeBreakdown:
        return compute_fees(
            subtotal,
            fees_waived=organizer.waive_fees,
            cover_fees=cover_fees,
            platform_fee_percent=self.config.platform_fee_percent,
        )

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Create a Stripe Checkout Session paying out to the organizer's account.

        Raises:
            NotConnected: Organizer has no Stripe account
            InvalidItems: Items are malformed, empty, non-positive or too large
            ProviderError: Stripe rejected the session
        """
        organizer = await self.organizers.get(request.organizer_id)
        if organizer is None or organizer.stripe is None or not organizer.stripe.account_id:
            raise NotConnected("Organizer has not connected Stripe")

        items = parse_items(request.items)
        validate_items(items)
        fees = self._fees(organizer, subtotal_cents(items), request.cover_fees)

        line_items = [
            {
                "price_data": {
                    "currency": CURRENCY,
                    "product_data": {
                        "name": item.name,
                        **({"description": item.description} if item.description else {}),
                    },
                    "unit_amount": to_cents(item.price),
                },
                "quantity": item.quantity,
            }
            for item in items
        ]
        if fees.fee_line_item_cents:
            line_items.append(
                {
                    "price_data": {
                        "currency": CURRENCY,
                        "product_data": {"name": FEE_ITEM_NAME, "description": FEE_ITEM_DESCRIPTION},
                        "unit_amount": fees.fee_line_item_cents,
                    },
                    "quantity": 1,
                }
            )

        payment_intent_data: dict[str, Any] = {
            "transfer_data": {"destination": organizer.stripe.account_id},
        }
        if fees.application_fee_cents:
            payment_intent_data["application_fee_amount"] = fees.application_fee_cents

        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "payment_intent_data": payment_intent_data,
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "metadata": _stripe_metadata(request.organizer_id, request.metadata),
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email

        session = await self.gateways.stripe().create_checkout_session(
            params, idempotency_key=str(uuid.uuid4())
        )

        logger.info(
            f"Created checkout session {session.id} for organizer {request.organizer_id} "
            f"(subtotal={fees.subtotal_cents}, fee={fees.application_fee_cents}, "
            f"total={fees.sponsor_total_cents})"
        )
        return CheckoutSession(session_id=session.id, url=session.url, fees=fees)

    async def create_payment(self, request: SquarePaymentRequest) -> SquarePayment:
        """
        Charge a card nonce on the organizer's Square merchant account.

        ``request.amount`` is the subtotal; when the sponsor covers fees the
        charged amount is the subtotal plus the platform fee.

        Raises:
            NotConnected / NeedsReconnect / RefreshFailed: Token problems
            InvalidItems: Amount is not positive or exceeds the maximum charge
            ProviderError: Square rejected the payment
        """
        access_token = await self.tokens.ensure_valid_access_token(request.organizer_id)
        # Re-read: the refresh above may have rewritten the profile
        organizer = await self.organizers.get(request.organizer_id)
        if organizer is None or organizer.square is None:
            raise NotConnected("Organizer has not connected Square")

        items = [CheckoutItem(name="Sponsorship", price=request.amount)]
        validate_items(items)
        fees = self._fees(organizer, subtotal_cents(items), request.cover_fees)

        payment: dict[str, Any] = {
            "source_id": request.source_id,
            "idempotency_key": str(uuid.uuid4()),
            "amount_money": {"amount": fees.sponsor_total_cents, "currency": CURRENCY.upper()},
            "autocomplete": True,
            "note": request.note,
        }
        if fees.application_fee_cents:
            payment["app_fee_money"] = {"amount": fees.application_fee_cents, "currency": CURRENCY.upper()}
        if request.payer_email:
            payment["buyer_email_address"] = request.payer_email
        if organizer.square.main_location_id:
            payment["location_id"] = organizer.square.main_location_id

        result = await self.gateways.square(access_token).create_payment(payment)

        logger.info(
            f"Square payment {result.get('id')} for organizer {request.organizer_id}: "
            f"status={result.get('status')}, total={fees.sponsor_total_cents}, "
            f"fee={fees.application_fee_cents}"
        )
        return SquarePayment(
            payment_id=result.get("id", ""),
            status=result.get("status", "UNKNOWN"),
            fees=fees,
            raw=result,
        )
