from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import json
import time
import redis.asyncio as redis


# ---- keys
def k_ps(ref: str) -> str: return f"ps:{ref}"


PENDING_INDEX = "pendings"


def _hash_to_session(ref: str, h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "order_reference": ref,
        "payment_id": h.get("payment_id", ""),
        "numbers": json.loads(h.get("numbers", "[]")),
        "amount": int(h.get("amount", "0")),
        "currency": h.get("currency", ""),
        "buyer_phone": h.get("buyer_phone", ""),
        "presentation": json.loads(h.get("presentation", "{}")),
        "created_at": float(h.get("created_at", "0") or 0),
    }


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def save_payment_session(
            self, order_reference: str, mapping: Dict[str, Any]) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        # hash values must be strings for decode_responses=True
        h = {
            "payment_id": mapping.get("payment_id") or "",
            "numbers": json.dumps(list(mapping.get("numbers", []))),
            "amount": str(int(mapping["amount"])),
            "currency": mapping["currency"],
            "buyer_phone": mapping.get("buyer_phone") or "",
            "presentation": json.dumps(mapping.get("presentation") or {}),
            "created_at": str(created_at),
        }
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(order_reference), mapping=h)
        pipe.expire(k_ps(order_reference), int(self.ttl))
        pipe.zadd(PENDING_INDEX, {order_reference: created_at})
        await pipe.execute()

    async def get_payment_session(
            self, order_reference: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_ps(order_reference))
        return _hash_to_session(order_reference, h) if h else None

    async def remove_pending(self, order_reference: str) -> None:
        await self.r.zrem(PENDING_INDEX, order_reference)

    async def purge_expired(self) -> int:
        # hashes expire on their own; only the index needs trimming
        cutoff = time.time() - self.ttl
        return int(await self.r.zremrangebyscore(PENDING_INDEX, 0, cutoff))

    async def _list_recent_refs(
            self, limit: int = 200
    ) -> Tuple[int, List[str]]:
        total = await self.r.zcard(PENDING_INDEX)
        refs = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        return total, refs

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total, refs = await self._list_recent_refs(limit=limit)

        pipe = self.r.pipeline()
        for ref in refs:
            pipe.hgetall(k_ps(ref))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for ref, h in zip(refs, rows):
            # house-keeping: the hash expired, drop it from the index
            if not h:
                await self.remove_pending(ref)
                total -= 1
                continue
            s = _hash_to_session(ref, h)
            items.append({
                "order_reference": ref,
                "created_at": s["created_at"],
                "age_ms": int(max(0.0, now - s["created_at"]) * 1000),
                "payment_id": s["payment_id"],
                "numbers": s["numbers"],
                "amount": s["amount"],
                "currency": s["currency"],
                "buyer_phone": s["buyer_phone"],
                "status": "PENDING",
            })
        return int(total), items
