"""Organizer payment gateways: OAuth connect, fee split, checkout, settlement.

Stripe Connect (hosted Checkout, destination charges) and Square (OAuth
merchant tokens, synchronous card payments) are supported. Sponsorships
are marked paid once the provider confirms the charge.
"""

from sponsorpay.payments.checkout import CheckoutOrchestrator
from sponsorpay.payments.connect import GatewayConnectionService
from sponsorpay.payments.fees import FeeBreakdown, compute_fees
from sponsorpay.payments.settlement import SettlementReconciler
from sponsorpay.payments.tokens import TokenLifecycleManager

__all__ = [
    "CheckoutOrchestrator",
    "FeeBreakdown",
    "GatewayConnectionService",
    "SettlementReconciler",
    "TokenLifecycleManager",
    "compute_fees",
]
