import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("PAYSESSION_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import PaymentSessionStore as _PaymentSessionStore
else:
    from ._sql import PaymentSessionStore as _PaymentSessionStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 3660,
              gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "PaymentSessionStore(redis) requires r=redis.Redis"
            )
        return _PaymentSessionStore(r=r, ttl_seconds=ttl_seconds)
    else:
        if db is None:
            raise RuntimeError(
                "PaymentSessionStore(sql) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "PaymentSessionStore(sql) requires gated=Gated"
            )
        return _PaymentSessionStore(db=db, ttl_seconds=ttl_seconds,
                                    gated=gated)


PaymentSessionStore = _PaymentSessionStore
__all__ = ["PaymentSessionStore", "new_store", "BACKEND"]
