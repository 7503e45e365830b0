"""Runtime configuration for orderflow."""

import os
from dataclasses import dataclass
from typing import Mapping

# Defaults; each can be overridden via the environment variable named in from_env()
DEFAULT_DATABASE_URL = "sqlite:///orderflow.db"
DEFAULT_CURRENCY = "rwf"
DEFAULT_MINIMUM_AMOUNT = 1000
DEFAULT_MAXIMUM_AMOUNT = 100_000_000
DEFAULT_GATEWAY_TIMEOUT = 20.0
DEFAULT_UNPAID_ORDER_TTL = 30 * 60


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once by the bootstrap and passed down."""

    database_url: str = DEFAULT_DATABASE_URL
    db_timeout: float = 30.0
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = DEFAULT_CURRENCY
    minimum_amount: int = DEFAULT_MINIMUM_AMOUNT  # minor units
    maximum_amount: int = DEFAULT_MAXIMUM_AMOUNT  # minor units
    gateway_timeout: float = DEFAULT_GATEWAY_TIMEOUT
    gateway_retries: int = 0
    unpaid_order_ttl: int = DEFAULT_UNPAID_ORDER_TTL  # seconds, 0 disables expiry
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (for testing).
        """
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("ORDERFLOW_DATABASE_URL", DEFAULT_DATABASE_URL),
            db_timeout=float(env.get("ORDERFLOW_DB_TIMEOUT", "30")),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
            currency=env.get("ORDERFLOW_CURRENCY", DEFAULT_CURRENCY).lower(),
            minimum_amount=int(env.get("ORDERFLOW_MIN_AMOUNT", DEFAULT_MINIMUM_AMOUNT)),
            maximum_amount=int(env.get("ORDERFLOW_MAX_AMOUNT", DEFAULT_MAXIMUM_AMOUNT)),
            gateway_timeout=float(env.get("ORDERFLOW_GATEWAY_TIMEOUT", DEFAULT_GATEWAY_TIMEOUT)),
            gateway_retries=int(env.get("ORDERFLOW_GATEWAY_RETRIES", "0")),
            unpaid_order_ttl=int(env.get("ORDERFLOW_UNPAID_ORDER_TTL", DEFAULT_UNPAID_ORDER_TTL)),
            log_level=env.get("ORDERFLOW_LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool(env.get("ORDERFLOW_LOG_JSON", "false")),
        )
