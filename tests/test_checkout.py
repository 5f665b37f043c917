"""Tests for checkout creation on Stripe and Square."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest

from sponsorpay.payments.base import (
    CheckoutItem,
    CheckoutRequest,
    OrganizerPaymentProfile,
    SquareCredentials,
    SquarePaymentRequest,
    StripeCredentials,
)
from sponsorpay.payments.checkout import CheckoutOrchestrator, parse_items
from sponsorpay.payments.errors import InvalidItems, NeedsReconnect, NotConnected, ProviderError
from sponsorpay.payments.tokens import TokenLifecycleManager


@pytest.fixture
def orchestrator(config, organizers, gateways):
    return CheckoutOrchestrator(config, organizers, gateways, TokenLifecycleManager(organizers, gateways))


@pytest.fixture
def stripe_organizer(organizers):
    return organizers.add(
        OrganizerPaymentProfile(organizer_id="org-1", stripe=StripeCredentials(account_id="acct_123"))
    )


@pytest.fixture
def square_organizer(organizers):
    return organizers.add(
        OrganizerPaymentProfile(
            organizer_id="org-1",
            square=SquareCredentials(
                merchant_id="M1",
                access_token="EAAA-token",
                refresh_token="EQAA-refresh",
                expires_at=datetime.now(timezone.utc) + timedelta(days=30),
                main_location_id="LOC1",
            ),
        )
    )


def checkout_request(items=None, **kwargs):
    return CheckoutRequest(
        organizer_id="org-1",
        items=items if items is not None else [CheckoutItem(name="Gold", price=Decimal("100.00"))],
        success_url="https://app.example.test/success",
        cancel_url="https://app.example.test/cancel",
        **kwargs,
    )


def stripe_session():
    session = Mock()
    session.id = "cs_test_123"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_123"
    return session


class TestParseItems:
    """Request JSON to checkout items."""

    def test_parses_prices_as_decimal(self):
        items = parse_items([{"name": "Gold", "price": 19.99, "quantity": 2}])

        assert items[0].price == Decimal("19.99")
        assert items[0].quantity == 2

    def test_quantity_defaults_to_one(self):
        assert parse_items([{"name": "Gold", "price": "5"}])[0].quantity == 1

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "Gold",
            ["Gold"],
            [{"name": "Gold", "price": "abc"}],
            [{"name": "Gold", "price": 5, "quantity": 1.5}],
            [{"name": "Gold", "price": 5, "quantity": True}],
        ],
    )
    def test_malformed_items(self, raw):
        with pytest.raises(InvalidItems):
            parse_items(raw)

    def test_checkout_items_pass_through(self):
        item = CheckoutItem(name="Gold", price=Decimal("10"))

        assert parse_items([item, {"name": "Silver", "price": "5"}])[0] is item


class TestCreateCheckout:
    """Stripe Checkout Session creation."""

    @pytest.mark.asyncio
    async def test_fee_deducted_from_organizer(self, orchestrator, stripe_organizer, gateways):
        gateways.stripe_gateway.create_checkout_session.return_value = stripe_session()

        session = await orchestrator.create_checkout(
            checkout_request(metadata={"sponsorshipIds": ["sp-1", "sp-2"], "eventId": "ev-1"})
        )

        assert session.session_id == "cs_test_123"
        assert session.url.startswith("https://checkout.stripe.com/")
        params = gateways.stripe_gateway.create_checkout_session.call_args.args[0]
        assert params["mode"] == "payment"
        assert len(params["line_items"]) == 1
        assert params["line_items"][0]["price_data"]["unit_amount"] == 10000
        assert params["payment_intent_data"] == {
            "transfer_data": {"destination": "acct_123"},
            "application_fee_amount": 500,
        }
        assert params["metadata"]["organizerId"] == "org-1"
        assert json.loads(params["metadata"]["sponsorshipIds"]) == ["sp-1", "sp-2"]
        assert params["metadata"]["eventId"] == "ev-1"

    @pytest.mark.asyncio
    async def test_covered_fee_adds_line_item(self, orchestrator, stripe_organizer, gateways):
        gateways.stripe_gateway.create_checkout_session.return_value = stripe_session()

        session = await orchestrator.create_checkout(
            checkout_request(
                items=[CheckoutItem(name="Gold", price=Decimal("250.33"))],
                cover_fees=True,
                customer_email="sponsor@acme.test",
            )
        )

        params = gateways.stripe_gateway.create_checkout_session.call_args.args[0]
        fee_item = params["line_items"][-1]
        assert fee_item["price_data"]["product_data"]["name"] == "Platform Fee"
        assert fee_item["price_data"]["unit_amount"] == 1252
        assert params["payment_intent_data"]["application_fee_amount"] == 1252
        assert params["customer_email"] == "sponsor@acme.test"
        assert session.fees.sponsor_total_cents == 25033 + 1252

    @pytest.mark.asyncio
    async def test_waived_fees_omit_application_fee(self, orchestrator, organizers, gateways):
        organizers.add(
            OrganizerPaymentProfile(
                organizer_id="org-1",
                waive_fees=True,
                stripe=StripeCredentials(account_id="acct_123"),
            )
        )
        gateways.stripe_gateway.create_checkout_session.return_value = stripe_session()

        await orchestrator.create_checkout(checkout_request(cover_fees=True))

        params = gateways.stripe_gateway.create_checkout_session.call_args.args[0]
        assert len(params["line_items"]) == 1
        assert "application_fee_amount" not in params["payment_intent_data"]

    @pytest.mark.asyncio
    async def test_fresh_idempotency_key_per_call(self, orchestrator, stripe_organizer, gateways):
        gateways.stripe_gateway.create_checkout_session.return_value = stripe_session()

        await orchestrator.create_checkout(checkout_request())
        await orchestrator.create_checkout(checkout_request())

        keys = [
            call.kwargs["idempotency_key"]
            for call in gateways.stripe_gateway.create_checkout_session.call_args_list
        ]
        assert len(keys) == 2
        assert keys[0] != keys[1]

    @pytest.mark.asyncio
    async def test_not_connected_checked_before_items(self, orchestrator, organizers, gateways):
        organizers.add(OrganizerPaymentProfile(organizer_id="org-1"))

        with pytest.raises(NotConnected):
            await orchestrator.create_checkout(checkout_request(items=[]))

        gateways.stripe_gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_connected_checked_before_item_shape(self, orchestrator, organizers):
        organizers.add(OrganizerPaymentProfile(organizer_id="org-1"))

        with pytest.raises(NotConnected):
            await orchestrator.create_checkout(checkout_request(items=[{"price": "abc"}]))

    @pytest.mark.asyncio
    async def test_raw_items_parsed(self, orchestrator, stripe_organizer, gateways):
        gateways.stripe_gateway.create_checkout_session.return_value = stripe_session()

        await orchestrator.create_checkout(checkout_request(items=[{"name": "Gold", "price": "12.50", "quantity": 2}]))

        line_item = gateways.stripe_gateway.create_checkout_session.call_args.args[0]["line_items"][0]
        assert line_item["price_data"]["unit_amount"] == 1250
        assert line_item["quantity"] == 2

    @pytest.mark.asyncio
    async def test_oversized_raw_price_rejected(self, orchestrator, stripe_organizer, gateways):
        with pytest.raises(InvalidItems, match="too large"):
            await orchestrator.create_checkout(checkout_request(items=[{"name": "Gold", "price": "1e30"}]))

        gateways.stripe_gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "items",
        [
            [],
            [CheckoutItem(name="Free", price=Decimal("0"))],
            [CheckoutItem(name="Negative", price=Decimal("-5"))],
            [CheckoutItem(name="None", price=Decimal("5"), quantity=0)],
            [CheckoutItem(name="NaN", price=Decimal("NaN"))],
            [CheckoutItem(name="Huge", price=Decimal("1e30"))],
            [CheckoutItem(name="Gold", price=Decimal("600000.00")), CheckoutItem(name="Silver", price=Decimal("400000.00"))],
            [CheckoutItem(name="Gold", price=Decimal("1.00"), quantity=100_000_000)],
        ],
    )
    async def test_invalid_items(self, orchestrator, stripe_organizer, gateways, items):
        with pytest.raises(InvalidItems):
            await orchestrator.create_checkout(checkout_request(items=items))

        gateways.stripe_gateway.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, orchestrator, stripe_organizer, gateways):
        gateways.stripe_gateway.create_checkout_session.side_effect = ProviderError(
            "Your card was declined.", code="card_declined"
        )

        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.create_checkout(checkout_request())

        assert exc_info.value.code == "card_declined"


class TestCreatePayment:
    """Square card payments."""

    @pytest.mark.asyncio
    async def test_payment_body(self, orchestrator, square_organizer, gateways):
        gateways.square_gateway.create_payment.return_value = {"id": "PAY1", "status": "COMPLETED"}

        payment = await orchestrator.create_payment(
            SquarePaymentRequest(
                organizer_id="org-1",
                source_id="cnon:card-nonce",
                amount=Decimal("100.00"),
                cover_fees=True,
                payer_email="sponsor@acme.test",
            )
        )

        assert payment.payment_id == "PAY1"
        assert payment.status == "COMPLETED"
        body = gateways.square_gateway.create_payment.call_args.args[0]
        assert body["source_id"] == "cnon:card-nonce"
        assert body["amount_money"] == {"amount": 10500, "currency": "USD"}
        assert body["app_fee_money"] == {"amount": 500, "currency": "USD"}
        assert body["location_id"] == "LOC1"
        assert body["buyer_email_address"] == "sponsor@acme.test"
        assert body["idempotency_key"]
        assert gateways.square_tokens[-1] == "EAAA-token"

    @pytest.mark.asyncio
    async def test_fee_deducted_charges_subtotal(self, orchestrator, square_organizer, gateways):
        gateways.square_gateway.create_payment.return_value = {"id": "PAY1", "status": "COMPLETED"}

        await orchestrator.create_payment(
            SquarePaymentRequest(organizer_id="org-1", source_id="cnon:x", amount=Decimal("100.00"))
        )

        body = gateways.square_gateway.create_payment.call_args.args[0]
        assert body["amount_money"]["amount"] == 10000
        assert body["app_fee_money"]["amount"] == 500

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, orchestrator, square_organizer, gateways):
        with pytest.raises(InvalidItems):
            await orchestrator.create_payment(
                SquarePaymentRequest(organizer_id="org-1", source_id="cnon:x", amount=Decimal("0"))
            )

        gateways.square_gateway.create_payment.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("1e30"), Decimal("1000000.00")])
    async def test_amount_over_maximum(self, orchestrator, square_organizer, gateways, amount):
        with pytest.raises(InvalidItems):
            await orchestrator.create_payment(
                SquarePaymentRequest(organizer_id="org-1", source_id="cnon:x", amount=amount)
            )

        gateways.square_gateway.create_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_connected(self, orchestrator, organizers):
        organizers.add(OrganizerPaymentProfile(organizer_id="org-1"))

        with pytest.raises(NotConnected):
            await orchestrator.create_payment(
                SquarePaymentRequest(organizer_id="org-1", source_id="cnon:x", amount=Decimal("10"))
            )

    @pytest.mark.asyncio
    async def test_expired_token_without_refresh(self, orchestrator, organizers, gateways):
        organizers.add(
            OrganizerPaymentProfile(
                organizer_id="org-1",
                square=SquareCredentials(
                    merchant_id="M1",
                    access_token="EAAA-token",
                    expires_at=datetime.now(timezone.utc) - timedelta(days=1),
                ),
            )
        )

        with pytest.raises(NeedsReconnect):
            await orchestrator.create_payment(
                SquarePaymentRequest(organizer_id="org-1", source_id="cnon:x", amount=Decimal("10"))
            )

        gateways.square_gateway.create_payment.assert_not_awaited()
