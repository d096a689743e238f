from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
import json
import time
from typing import Callable, AsyncContextManager


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_PAYMENT_SESSIONS_HOT = r"""
-- per-order payment metadata, kept until the reservation could expire
CREATE TABLE IF NOT EXISTS payment_sessions_hot (
  order_reference TEXT PRIMARY KEY,
  payment_id      TEXT,
  numbers         TEXT NOT NULL,       -- JSON list of unit numbers
  amount          INTEGER NOT NULL,
  currency        TEXT NOT NULL,
  buyer_phone     TEXT NOT NULL,
  presentation    TEXT NOT NULL,       -- JSON object (qr code, urls)
  created_at      DOUBLE PRECISION NOT NULL,
  expires_at      DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_PAYMENT_SESSIONS_PENDING = r"""
-- live "pending" index for the admin view
CREATE TABLE IF NOT EXISTS payment_sessions_pending (
  order_reference TEXT PRIMARY KEY,
  created_at      DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PS_HOT_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_ps_hot_created_at
  ON payment_sessions_hot (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PAYMENT_SESSIONS_HOT))
    await exec_(text(SQL_CREATE_PAYMENT_SESSIONS_PENDING))
    await exec_(text(SQL_CREATE_IDX_PS_HOT_CREATED_AT))


def _row_to_session(row) -> Dict[str, Any]:
    return {
        "order_reference": row["order_reference"],
        "payment_id": row["payment_id"] or "",
        "numbers": json.loads(row["numbers"]),
        "amount": int(row["amount"]),
        "currency": row["currency"],
        "buyer_phone": row["buyer_phone"],
        "presentation": json.loads(row["presentation"]),
        "created_at": float(row["created_at"]),
    }


class PaymentSessionStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_payment_session(
            self, order_reference: str, mapping: Dict[str, Any]
    ) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payment_sessions_hot(
                    order_reference, payment_id, numbers, amount, currency,
                    buyer_phone, presentation, created_at, expires_at
                  ) VALUES (
                    :ref, :payment_id, :numbers, :amount, :currency,
                    :buyer_phone, :presentation, :created_at, :expires_at
                  )
                  ON CONFLICT (order_reference) DO UPDATE SET
                    payment_id=EXCLUDED.payment_id,
                    numbers=EXCLUDED.numbers,
                    amount=EXCLUDED.amount,
                    currency=EXCLUDED.currency,
                    buyer_phone=EXCLUDED.buyer_phone,
                    presentation=EXCLUDED.presentation,
                    created_at=EXCLUDED.created_at,
                    expires_at=EXCLUDED.expires_at
                """), {
                    "ref": order_reference,
                    "payment_id": mapping.get("payment_id"),
                    "numbers": json.dumps(list(mapping.get("numbers", []))),
                    "amount": int(mapping["amount"]),
                    "currency": mapping["currency"],
                    "buyer_phone": mapping.get("buyer_phone") or "",
                    "presentation": json.dumps(
                        mapping.get("presentation") or {}
                    ),
                    "created_at": created_at,
                    "expires_at": created_at + self.ttl,
                })
                await self.db.execute(text("""
                  INSERT INTO payment_sessions_pending(
                    order_reference, created_at
                  )
                  VALUES(:ref, :created_at)
                  ON CONFLICT (order_reference) DO UPDATE
                  SET created_at=EXCLUDED.created_at
                """), {"ref": order_reference, "created_at": created_at})

    async def get_payment_session(
            self, order_reference: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payment_sessions_hot
                  WHERE order_reference=:ref AND expires_at > :now
                """), {
                    "ref": order_reference, "now": time.time()
                })).mappings().first()
                return _row_to_session(row) if row else None

    async def remove_pending(self, order_reference: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text(
                    "DELETE FROM payment_sessions_pending "
                    "WHERE order_reference=:ref"
                ), {"ref": order_reference})

    async def purge_expired(self) -> int:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  DELETE FROM payment_sessions_hot
                  WHERE expires_at <= :now
                  RETURNING order_reference
                """), {"now": time.time()})).all()
        return len(rows)

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM payment_sessions_pending")
                )).scalar_one()

                rows = (await self.db.execute(text("""
                    SELECT
                        p.order_reference,
                        h.created_at,
                        h.expires_at,
                        h.payment_id,
                        h.numbers,
                        h.amount,
                        h.currency,
                        h.buyer_phone
                    FROM payment_sessions_pending AS p
                    LEFT JOIN payment_sessions_hot AS h
                      ON h.order_reference = p.order_reference
                    ORDER BY p.created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

                now = time.time()
                items: List[Dict[str, Any]] = []
                missing: List[str] = []

                for r in rows:
                    ref = r["order_reference"]
                    # Housekeeping: pending entry without a live hot row
                    if r["created_at"] is None or r["expires_at"] <= now:
                        missing.append(ref)
                        continue

                    created = float(r["created_at"])
                    items.append({
                        "order_reference": ref,
                        "created_at": created,
                        "age_ms": int(max(0.0, now - created) * 1000),
                        "payment_id": r["payment_id"] or "",
                        "numbers": json.loads(r["numbers"]),
                        "amount": int(r["amount"] or 0),
                        "currency": r["currency"] or "",
                        "buyer_phone": r["buyer_phone"] or "",
                        "status": "PENDING",
                    })

                if missing:
                    stmt = text(
                        "DELETE FROM payment_sessions_pending "
                        "WHERE order_reference IN :refs"
                        ).bindparams(bindparam("refs", expanding=True))
                    await self.db.execute(stmt, {"refs": missing})
                    total -= len(missing)

        return int(total), items
