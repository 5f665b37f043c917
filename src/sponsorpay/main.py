"""Application entry point."""

import asyncio
import logging
import sys

from sponsorpay.config import get_config
from sponsorpay.db import close_pool, get_pool
from sponsorpay.db.schema.migrate import migrate, schema_version
from sponsorpay.payments.server import run_server

logger = logging.getLogger(__name__)


async def boot() -> None:
    """
    Boot sequence: load config → initialize pool → migrate → serve.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        config = get_config()
        logger.info(
            f"Configuration loaded: env={config.env}, "
            f"payment_environment={config.payment_environment}, "
            f"platform_fee_percent={config.platform_fee_percent}"
        )

        await get_pool()
        applied = await migrate()
        logger.info(f"Applied {applied} migration(s); schema version {await schema_version()}")
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        await close_pool()
        raise SystemExit(1) from e

    await run_server()


def main() -> None:
    """Main entry point with logging configuration."""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(boot())
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
