"""Runtime configuration read from environment variables.

All settings are read once at process start into an immutable ``Settings``
object which is then passed explicitly to the components that need it.
Database connection parameters follow the ``DB_*`` convention unless a full
``DATABASE_URL`` is provided.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping


def _bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _default_database_url(env: Mapping[str, str]) -> str:
    host = env.get("DB_HOST", "checkout-db")
    port = env.get("DB_PORT", "5432")
    name = env.get("DB_NAME", "checkout")
    user = env.get("DB_USER", "checkout_user")
    password = env.get("DB_PASSWORD", "checkout-pass")
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{name}"


@dataclass(frozen=True)
class Settings:
    """Process-wide settings.

    Attributes:
        database_url: SQLAlchemy URL of the primary store.
        currency: ISO currency code (lowercase, provider style) for new orders.
        cart_ttl_days: Sliding cart expiration, refreshed on every mutation.
        checkout_race_retries: How many times the HTTP layer re-runs a checkout
            that lost a stock race.
        use_http_adapters: Use the HTTP payment gateway instead of the
            in-process fake.
        stripe_api_base: Base URL of the Stripe-compatible API.
        stripe_secret_key: Bearer key for the payment provider.
        stripe_webhook_secret: Signing secret for inbound webhooks. Empty
            disables signature checks with the in-process gateway and
            rejects every webhook with the HTTP gateway.
        webhook_tolerance_secs: Maximum age of a signed webhook.
    """

    database_url: str = "sqlite:///./checkout.db"
    currency: str = "usd"
    cart_ttl_days: int = 30
    checkout_race_retries: int = 1
    use_http_adapters: bool = False
    stripe_api_base: str = "https://api.stripe.com"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_secs: int = 300
    http_timeout_secs: float = 5.0
    http_retry_max: int = 3
    http_retry_backoff_base: float = 0.15
    http_retry_max_sleep: float = 0.5
    http_circuit_fail_threshold: int = 5
    http_circuit_reset_timeout: float = 30.0
    api_max_bytes: int = 1 * 1024 * 1024
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = field(default_factory=lambda: max(2, os.cpu_count() or 1))

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``env`` (defaults to ``os.environ``)."""
        env = os.environ if env is None else env
        return cls(
            database_url=env.get("DATABASE_URL") or _default_database_url(env),
            currency=env.get("CURRENCY", "usd").lower(),
            cart_ttl_days=int(env.get("CART_TTL_DAYS", "30")),
            checkout_race_retries=int(env.get("CHECKOUT_RACE_RETRIES", "1")),
            use_http_adapters=_bool(env.get("USE_HTTP_ADAPTERS", "false")),
            stripe_api_base=env.get("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/"),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
            webhook_tolerance_secs=int(env.get("WEBHOOK_TOLERANCE_SECS", "300")),
            http_timeout_secs=float(env.get("HTTP_TIMEOUT_SECS", "5")),
            http_retry_max=int(env.get("HTTP_RETRY_MAX", "3")),
            http_retry_backoff_base=float(env.get("HTTP_RETRY_BACKOFF_BASE", "0.15")),
            http_retry_max_sleep=float(env.get("HTTP_RETRY_MAX_SLEEP", "0.5")),
            http_circuit_fail_threshold=int(env.get("HTTP_CIRCUIT_FAIL_THRESHOLD", "5")),
            http_circuit_reset_timeout=float(env.get("HTTP_CIRCUIT_RESET_TIMEOUT", "30")),
            api_max_bytes=int(env.get("API_MAX_BYTES", str(1 * 1024 * 1024))),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "8000")),
            workers=int(env.get("UVICORN_WORKERS", str(max(2, os.cpu_count() or 1)))),
        )
