import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./hypehaus.db"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # None: pool size on postgres, 10 on sqlite
    db_gate_limit: Optional[int] = None

    # hold window for a reservation (15 min, like the hosted checkout timeout)
    reservation_ttl_seconds: int = 15 * 60
    max_quantity_per_reservation: int = 10

    # 2% convenience fee + 18% GST on the fee
    fee_rate: Decimal = Decimal("0.02")
    tax_rate: Decimal = Decimal("0.18")
    default_currency: str = "INR"

    gateway_backend: str = "mock"  # 'mock' | 'razorpay'
    gateway_base_url: str = "https://api.razorpay.com"
    gateway_key_id: str = "rzp_test_mock"
    gateway_key_secret: str = field(default="dev-gateway-secret", repr=False)
    gateway_webhook_secret: str = field(
        default="dev-webhook-secret", repr=False
    )
    gateway_timeout_seconds: float = 5.0

    reconciler_enabled: bool = True
    reconcile_interval_seconds: float = 60.0
    abandoned_grace_seconds: int = 10 * 60
    redis_url: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] = os.environ) -> "Settings":
        d = cls()
        return cls(
            database_url=env.get("DATABASE_URL", d.database_url),
            db_pool_size=int(env.get("DB_POOL_SIZE", d.db_pool_size)),
            db_max_overflow=int(
                env.get("DB_MAX_OVERFLOW", d.db_max_overflow)
            ),
            db_pool_timeout=int(
                env.get("DB_POOL_TIMEOUT", d.db_pool_timeout)
            ),
            db_gate_limit=(
                int(env["DB_GATE_LIMIT"]) if env.get("DB_GATE_LIMIT")
                else None
            ),
            reservation_ttl_seconds=int(
                env.get("RESERVATION_TTL_SECONDS", d.reservation_ttl_seconds)
            ),
            max_quantity_per_reservation=int(
                env.get("MAX_QUANTITY_PER_RESERVATION",
                        d.max_quantity_per_reservation)
            ),
            fee_rate=Decimal(env.get("FEE_RATE", str(d.fee_rate))),
            tax_rate=Decimal(env.get("TAX_RATE", str(d.tax_rate))),
            default_currency=env.get("DEFAULT_CURRENCY", d.default_currency),
            gateway_backend=env.get(
                "GATEWAY_BACKEND", d.gateway_backend
            ).lower(),
            gateway_base_url=env.get("GATEWAY_BASE_URL", d.gateway_base_url),
            gateway_key_id=env.get("GATEWAY_KEY_ID", d.gateway_key_id),
            gateway_key_secret=env.get(
                "GATEWAY_KEY_SECRET", d.gateway_key_secret
            ),
            gateway_webhook_secret=env.get(
                "GATEWAY_WEBHOOK_SECRET", d.gateway_webhook_secret
            ),
            gateway_timeout_seconds=float(
                env.get("GATEWAY_TIMEOUT_SECONDS", d.gateway_timeout_seconds)
            ),
            reconciler_enabled=_flag(env.get("RECONCILER_ENABLED", "1")),
            reconcile_interval_seconds=float(
                env.get("RECONCILE_INTERVAL_SECONDS",
                        d.reconcile_interval_seconds)
            ),
            abandoned_grace_seconds=int(
                env.get("ABANDONED_GRACE_SECONDS", d.abandoned_grace_seconds)
            ),
            redis_url=env.get("REDIS_URL") or None,
            log_level=env.get("LOG_LEVEL", d.log_level).upper(),
        )
