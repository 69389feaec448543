from decimal import Decimal

from hypehaus.config import Settings
from hypehaus.infra.timings import Timings


def test_defaults():
    s = Settings.from_env({})

    assert s.database_url == "sqlite:///./hypehaus.db"
    assert s.reservation_ttl_seconds == 900
    assert s.fee_rate == Decimal("0.02")
    assert s.tax_rate == Decimal("0.18")
    assert s.gateway_backend == "mock"
    assert s.reconciler_enabled is True
    assert s.redis_url is None


def test_from_env():
    s = Settings.from_env({
        "DATABASE_URL": "postgresql://u:p@db/tickets",
        "RESERVATION_TTL_SECONDS": "300",
        "FEE_RATE": "0.05",
        "GATEWAY_BACKEND": "Razorpay",
        "RECONCILER_ENABLED": "off",
        "REDIS_URL": "redis://cache:6379/0",
        "LOG_LEVEL": "debug",
    })

    assert s.database_url == "postgresql://u:p@db/tickets"
    assert s.reservation_ttl_seconds == 300
    assert s.fee_rate == Decimal("0.05")
    assert s.gateway_backend == "razorpay"
    assert s.reconciler_enabled is False
    assert s.redis_url == "redis://cache:6379/0"
    assert s.log_level == "DEBUG"


def test_secrets_stay_out_of_repr():
    s = Settings(gateway_key_secret="hunter2")
    assert "hunter2" not in repr(s)


async def test_timings_summary():
    t = Timings(max_samples=3)
    for _ in range(5):
        async with t.timeit("ledger.hold"):
            pass

    summary = t.summary()

    assert summary["ledger.hold"]["n"] == 3
    assert summary["ledger.hold"]["std_ms"] >= 0


def test_pool_settings():
    s = Settings.from_env({"DB_POOL_SIZE": "20", "DB_GATE_LIMIT": "8"})

    assert s.db_pool_size == 20
    assert s.db_gate_limit == 8
    assert Settings.from_env({}).db_gate_limit is None
