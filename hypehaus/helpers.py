import time
import re
import uuid
import secrets
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def new_credential() -> str:
    # 128 random bits; the tickets.credential unique index is the backstop
    return f"TCK-{secrets.token_hex(16).upper()}"


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    if not phone:
        return False
    digits = re.sub(r"[^0-9]", "", phone)
    return 7 <= len(digits) <= 15
