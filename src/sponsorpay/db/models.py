"""Table-name constants and column-value enums."""

from enum import Enum


class Table:
    """Database table names."""

    ORGANIZERS = "organizers"
    PACKAGES = "packages"
    SPONSORSHIPS = "sponsorships"
    SCHEMA_MIGRATIONS = "schema_migrations"


class Gateway(str, Enum):
    """Payment gateway an organizer can have active."""

    NONE = "none"
    STRIPE = "stripe"
    SQUARE = "square"
    PAYPAL = "paypal"


class SponsorshipStatus(str, Enum):
    """Sponsorship lifecycle status. Transitions only move forward."""

    PENDING = "pending"
    PAID = "paid"
    BRANDING_SUBMITTED = "branding-submitted"


class PaymentMethod(str, Enum):
    """How a sponsorship was paid."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    SQUARE = "square"
    CHECK = "check"
    SANDBOX = "sandbox"
