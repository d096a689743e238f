import time
import re
import uuid
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_order_reference(ts: float | None = None) -> str:
    # millis keep references ordered, the uuid part keeps them unique
    # across workers and restarts
    millis = int((now_ts() if ts is None else ts) * 1000)
    return f"RIFA-{millis}-{uuid.uuid4().hex[:12]}"


def digits_only(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\D", "", value)


def cents_to_decimal(amount: int) -> float:
    return round(amount / 100, 2)


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
