"""Payment confirmation and sponsorship settlement.

Settlement is a single conditional store update (pending -> paid) over
the sponsorship ids of one payment, so repeating it is harmless and can
never move a sponsorship backwards. Notifications for the rows that
actually transitioned are handed to the background dispatcher after the
update has committed; the organizer webhook lookup happens on the
dispatcher worker, not on the request path.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sponsorpay.db.models import Gateway, PaymentMethod
from sponsorpay.notifications import NotificationDispatcher, SponsorshipEvent
from sponsorpay.payments.base import OrganizerStore, Sponsorship, SponsorshipStore
from sponsorpay.payments.checkout import SquarePayment
from sponsorpay.payments.errors import ProviderError
from sponsorpay.payments.fees import format_cents, to_cents
from sponsorpay.payments.gateways import GatewayClientFactory

logger = logging.getLogger(__name__)

STRIPE_PAID = "paid"
SQUARE_SETTLED_STATUSES = frozenset({"COMPLETED", "APPROVED"})


@dataclass
class SettlementResult:
    """
    Outcome of a verify/settle call.

    ``count`` is the number of sponsorship ids covered by the payment;
    ``transitioned`` is how many of them moved to paid in this call (0
    when the settlement was already applied).
    """

    settled: bool
    count: int = 0
    transitioned: int = 0
    reference: Optional[str] = None
    provider_status: Optional[str] = None


def sponsorship_ids_from_metadata(metadata: Any) -> list[str]:
    """Sponsorship ids stored as a JSON list under ``sponsorshipIds``."""
    raw = metadata.get("sponsorshipIds") if metadata else None
    if not raw:
        return []
    try:
        ids = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        logger.warning(f"Malformed sponsorshipIds metadata: {raw!r}")
        return []
    if not isinstance(ids, list):
        return []
    return [str(i) for i in ids]


async def organizer_webhook_url(organizers: OrganizerStore, organizer_id: str) -> Optional[str]:
    """Slack webhook configured by the organizer, if any."""
    organizer = await organizers.get(organizer_id)
    return organizer.slack_webhook_url if organizer else None


class SettlementReconciler:
    """Marks sponsorships paid once a provider confirms the payment."""

    def __init__(
        self,
        sponsorships: SponsorshipStore,
        gateways: GatewayClientFactory,
        dispatcher: Optional[NotificationDispatcher] = None,
        dashboard_url: Optional[str] = None,
    ):
        self.sponsorships = sponsorships
        self.gateways = gateways
        self.dispatcher = dispatcher
        self.dashboard_url = dashboard_url

    async def verify_stripe_session(self, session_id: str) -> SettlementResult:
        """
        Settle a Stripe Checkout Session if Stripe reports it paid.

        Raises:
            ProviderError: Session could not be retrieved
        """
        session = await self.gateways.stripe().retrieve_checkout_session(session_id)
        if session.payment_status != STRIPE_PAID:
            logger.info(f"Checkout session {session_id} not paid yet: {session.payment_status}")
            return SettlementResult(settled=False, provider_status=session.payment_status)

        sponsorship_ids = sponsorship_ids_from_metadata(session.metadata)
        reference = session.payment_intent or session_id
        return await self.settle(Gateway.STRIPE, reference, sponsorship_ids)

    async def settle_square_payment(
        self,
        payment: SquarePayment,
        sponsorship_ids: list[str],
    ) -> SettlementResult:
        """
        Settle a synchronous Square charge.

        Raises:
            ProviderError: Square did not complete or approve the payment
        """
        if payment.status not in SQUARE_SETTLED_STATUSES:
            raise ProviderError(
                f"Payment status: {payment.status}",
                code="payment_not_completed",
                raw=payment.raw,
            )
        return await self.settle(Gateway.SQUARE, payment.payment_id, sponsorship_ids)

    async def settle(
        self,
        provider: Gateway,
        reference: str,
        sponsorship_ids: list[str],
    ) -> SettlementResult:
        """Move the given pending sponsorships to paid and queue notifications."""
        ids = list(dict.fromkeys(sponsorship_ids))
        method = PaymentMethod(provider.value)
        paid: list[Sponsorship] = []
        if ids:
            paid = await self.sponsorships.mark_paid(ids, reference, method.value)

        logger.info(
            f"Settled {provider.value} payment {reference}: "
            f"{len(paid)} of {len(ids)} sponsorship(s) newly paid"
        )

        if paid:
            self._notify(method, paid)

        return SettlementResult(
            settled=True,
            count=len(ids),
            transitioned=len(paid),
            reference=reference,
        )

    def _notify(self, method: PaymentMethod, paid: list[Sponsorship]) -> None:
        """Queue one event per newly paid sponsorship. Never raises or waits."""
        if self.dispatcher is None:
            return

        try:
            for sponsorship in paid:
                self.dispatcher.submit(
                    SponsorshipEvent(
                        sponsorship_id=sponsorship.id,
                        organizer_id=sponsorship.organizer_id,
                        sponsor_name=sponsorship.sponsor_name,
                        sponsor_email=sponsorship.sponsor_email,
                        package_title=sponsorship.package_title or "Sponsorship Package",
                        amount=format_cents(to_cents(sponsorship.amount)),
                        payment_method=method.value,
                        dashboard_url=self.dashboard_url,
                    ),
                )
        except Exception as e:
            logger.error(f"Could not queue settlement notifications: {e}")
