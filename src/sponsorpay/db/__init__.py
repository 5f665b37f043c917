"""Database access: connection pool, table names, migrations."""

from sponsorpay.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
