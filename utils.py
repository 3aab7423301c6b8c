"""
Utility functions for the bakery backend.
"""

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def get_config():
    """Load configuration from environment.

    Read on every call so a changed environment takes effect without a restart.
    """
    per_customer = os.environ.get("PROMOTION_PER_CUSTOMER_LIMIT")
    return {
        "debug": os.environ.get("DEBUG", "false").lower() == "true",
        "database_url": os.environ.get("DATABASE_URL", "sqlite:///./bakery.db"),
        "log_level": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "tax_rate": Decimal(os.environ.get("TAX_RATE", "0")),
        "delivery_fee": Decimal(os.environ.get("DELIVERY_FEE", "5.00")),
        "free_shipping_discount": Decimal(os.environ.get("FREE_SHIPPING_DISCOUNT", "5.00")),
        "points_expiry_days": int(os.environ.get("POINTS_EXPIRY_DAYS", "365")),
        "promotion_per_customer_limit": int(per_customer) if per_customer else None,
    }


def configure_logging(level: str | None = None):
    """Set up root logging once for the process."""
    level = level or get_config()["log_level"]
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.debug("Logging configured at %s", level)


def to_money(value) -> Decimal:
    """Coerce a number to a Decimal rounded to cents."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    # Naive UTC, matching what SQLite DateTime columns round-trip.
    return datetime.now(timezone.utc).replace(tzinfo=None)
