from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Dict, Any


# ----------------------------
# Static ticket catalog
# ----------------------------
# id -> display name, unit price (cents), initial stock
TICKET_TYPES: Dict[str, Dict[str, Any]] = {
    "early-bird": {"name": "Early Bird", "price": 2500, "stock": 150},
    "regular": {"name": "Regular Admission", "price": 3500, "stock": 300},
    "table": {"name": "Table for 4", "price": 20000, "stock": 20},
}

RESERVATION_TTL_SECONDS = 10 * 60
MAX_PROOF_BYTES = 5 * 1024 * 1024


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed down."""

    database_url: str = "sqlite:///./boxoffice.db"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512

    paysession_backend: str = "redis"  # 'redis' | 'pg'
    payment_provider: str = "mock"  # 'mock' | 'stripe'

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com"
    mock_secret: str = "supersecret"
    mock_webhook_url: str = (
        "http://localhost:8000/payments/mockpay/webhook"
    )

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    # guards verified -> pending/rejected; misclick protection only
    override_token: str = "override"

    platform_fee_percent: float = 2.0
    currency: str = "sgd"
    order_prefix: str = "MASK"
    reservation_ttl_seconds: int = RESERVATION_TTL_SECONDS
    reaper_interval_seconds: int = 30  # 0 disables the background reaper
    max_proof_bytes: int = MAX_PROOF_BYTES

    notify_url: str = ""
    event_name: str = "ADHEERAA Masquerade Night"

    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: int = 0  # 0 -> pool size

    ticket_types: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {
            k: dict(v) for k, v in TICKET_TYPES.items()
        }
    )

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        env = os.environ.get
        return cls(
            database_url=env("DATABASE_URL", d.database_url),
            redis_url=env("REDIS_URL", d.redis_url),
            redis_max_conn=_env_int("REDIS_MAX_CONN", d.redis_max_conn),
            paysession_backend=env(
                "PAYSESSION_BACKEND", d.paysession_backend
            ).lower(),
            payment_provider=env(
                "PAYMENT_PROVIDER", d.payment_provider
            ).lower(),
            stripe_secret_key=env("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=env("STRIPE_WEBHOOK_SECRET", ""),
            stripe_api_base=env("STRIPE_API_BASE", d.stripe_api_base),
            mock_secret=env("MOCK_SECRET", d.mock_secret),
            mock_webhook_url=env("MOCK_WEBHOOK_URL", d.mock_webhook_url),
            session_secret=env("SESSION_SECRET", d.session_secret),
            admin_username=env("ADMIN_USERNAME", d.admin_username),
            admin_password=env("ADMIN_PASSWORD", d.admin_password),
            override_token=env("OVERRIDE_TOKEN", d.override_token),
            platform_fee_percent=_env_float(
                "PLATFORM_FEE_PERCENT", d.platform_fee_percent
            ),
            currency=env("CURRENCY", d.currency).lower(),
            order_prefix=env("ORDER_PREFIX", d.order_prefix).upper(),
            reservation_ttl_seconds=_env_int(
                "RESERVATION_TTL_SECONDS", d.reservation_ttl_seconds
            ),
            reaper_interval_seconds=_env_int(
                "REAPER_INTERVAL_SECONDS", d.reaper_interval_seconds
            ),
            notify_url=env("NOTIFY_URL", ""),
            event_name=env("EVENT_NAME", d.event_name),
            db_pool_size=_env_int("DB_POOL_SIZE", d.db_pool_size),
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", d.db_max_overflow),
            db_pool_timeout=_env_int("DB_POOL_TIMEOUT", d.db_pool_timeout),
            db_gate_limit=_env_int("DB_GATE_LIMIT", d.db_gate_limit),
        )
