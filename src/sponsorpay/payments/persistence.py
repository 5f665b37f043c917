"""PostgreSQL-backed organizer and sponsorship stores."""

import logging
from dataclasses import fields as dataclass_fields
from dataclasses import is_dataclass
from typing import Any, Mapping, Optional

from sponsorpay.db.models import Gateway, SponsorshipStatus, Table
from sponsorpay.db.pool import get_pool
from sponsorpay.payments.base import (
    OrganizerPaymentProfile,
    OrganizerStore,
    SquareCredentials,
    Sponsorship,
    SponsorshipStore,
    StripeCredentials,
)

logger = logging.getLogger(__name__)

# Credential subtree -> dataclass; columns are "<subtree>_<field>"
SUBTREES = {
    "stripe": StripeCredentials,
    "square": SquareCredentials,
}

WRITABLE_COLUMNS = {"active_gateway"} | {
    f"{name}_{f.name}" for name, cls in SUBTREES.items() for f in dataclass_fields(cls)
}


def flatten_profile_update(fields: Mapping[str, Any]) -> dict[str, Any]:
    """
    Translate a nested profile update into column assignments.

    ``{"square": None}`` clears every ``square_*`` column,
    ``{"stripe": StripeCredentials(...)}`` writes every ``stripe_*`` column
    and ``{"square.access_token": "..."}`` writes a single column.

    Raises:
        ValueError: On keys that do not name a writable profile field
    """
    columns: dict[str, Any] = {}
    for key, value in fields.items():
        if key == "active_gateway":
            columns[key] = Gateway(value or Gateway.NONE).value
        elif key in SUBTREES:
            for f in dataclass_fields(SUBTREES[key]):
                if value is None:
                    columns[f"{key}_{f.name}"] = None
                elif is_dataclass(value):
                    columns[f"{key}_{f.name}"] = getattr(value, f.name)
                else:
                    raise ValueError(f"{key} must be a credentials object or None")
        else:
            column = key.replace(".", "_")
            if "." not in key or column not in WRITABLE_COLUMNS:
                raise ValueError(f"Unknown organizer profile field: {key}")
            columns[column] = value
    return columns


def _profile_from_row(row: Mapping[str, Any]) -> OrganizerPaymentProfile:
    stripe_creds = None
    if row["stripe_account_id"]:
        stripe_creds = StripeCredentials(
            account_id=row["stripe_account_id"],
            access_token=row["stripe_access_token"],
            refresh_token=row["stripe_refresh_token"],
            livemode=bool(row["stripe_livemode"]),
            connected_at=row["stripe_connected_at"],
        )

    square_creds = None
    if row["square_access_token"]:
        square_creds = SquareCredentials(
            merchant_id=row["square_merchant_id"],
            access_token=row["square_access_token"],
            refresh_token=row["square_refresh_token"],
            expires_at=row["square_expires_at"],
            main_location_id=row["square_main_location_id"],
            connected_at=row["square_connected_at"],
        )

    return OrganizerPaymentProfile(
        organizer_id=row["id"],
        active_gateway=Gateway(row["active_gateway"] or Gateway.NONE),
        sandbox_mode=row["sandbox_mode"],
        waive_fees=row["waive_fees"],
        stripe=stripe_creds,
        square=square_creds,
        slack_webhook_url=row["slack_webhook_url"],
    )


def _sponsorship_from_row(row: Mapping[str, Any]) -> Sponsorship:
    return Sponsorship(
        id=row["id"],
        package_id=row["package_id"],
        organizer_id=row["organizer_id"],
        amount=row["amount"],
        status=SponsorshipStatus(row["status"]),
        sponsor_name=row["sponsor_name"],
        sponsor_email=row["sponsor_email"],
        payment_id=row["payment_id"],
        payment_method=row["payment_method"],
        is_test=row["is_test"],
        package_title=row["package_title"],
    )


class PostgresOrganizerStore(OrganizerStore):
    """Organizer profiles stored flattened in the organizers table."""

    async def get(self, organizer_id: str) -> Optional[OrganizerPaymentProfile]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {Table.ORGANIZERS} WHERE id = $1",
                organizer_id,
            )
        return _profile_from_row(row) if row else None

    async def update(self, organizer_id: str, fields: dict[str, Any]) -> None:
        columns = flatten_profile_update(fields)
        if not columns:
            return

        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(columns, start=2)
        )
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {Table.ORGANIZERS}
                SET {assignments}, updated_at = now()
                WHERE id = $1
                """,
                organizer_id,
                *columns.values(),
            )

        if result == "UPDATE 0":
            logger.warning(f"Profile update for unknown organizer {organizer_id}")


class PostgresSponsorshipStore(SponsorshipStore):
    """Sponsorship rows joined with their package title."""

    async def mark_paid(
        self,
        sponsorship_ids: list[str],
        payment_id: str,
        payment_method: str,
    ) -> list[Sponsorship]:
        if not sponsorship_ids:
            return []

        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                WITH updated AS (
                    UPDATE {Table.SPONSORSHIPS}
                    SET status = $2, payment_id = $3, payment_method = $4
                    WHERE id = ANY($1::text[]) AND status = $5
                    RETURNING *
                )
                SELECT u.*, p.title AS package_title
                FROM updated u
                LEFT JOIN {Table.PACKAGES} p ON p.id = u.package_id
                """,
                list(sponsorship_ids),
                SponsorshipStatus.PAID.value,
                payment_id,
                payment_method,
                SponsorshipStatus.PENDING.value,
            )
        return [_sponsorship_from_row(row) for row in rows]
