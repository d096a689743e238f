# model/inventory.py
"""
Inventory store: the `units` table and every transition a unit can make.

- AVAILABLE -> RESERVED only through `reserve()`, inside a transaction that
  first took the row locks with `lock_for_update()`
- RESERVED -> PAID / AVAILABLE only through conditional bulk updates guarded
  by `status='RESERVED'`; a call that finds nothing to do affects zero rows
  and is not an error
- PAID is terminal

Row locks are always taken in ascending unit number, so two bulk operations
over overlapping sets wait for each other instead of deadlocking. SQLite has
no row locks; there the DB gate admits one transaction at a time.
"""

from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, AsyncContextManager
from typing import Dict, Iterable, List, Optional, Any

from sqlalchemy import select, text, bindparam
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import TransientStoreError
from ..infra.sql import is_transient
from .unit import Unit, AVAILABLE, RESERVED, PAID

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

units = Unit.__table__

PUBLIC_COLUMNS = "number, status, buyer_name, buyer_phone"
ORDER_COLUMNS = (
    "number, status, buyer_name, buyer_phone, order_reference, "
    "payment_handle, reserved_at"
)

# Clearing everything a reservation attached to the row.
SQL_RELEASE_SET = """
    status='AVAILABLE',
    buyer_name=NULL,
    buyer_phone=NULL,
    buyer_document=NULL,
    order_reference=NULL,
    payment_handle=NULL,
    reserved_at=NULL
"""


class InventoryStore:
    def __init__(
        self, *,
        session_factory: async_sessionmaker,
        gated: Gated,
        lock_timeout_ms: int = 5000,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.lock_timeout_ms = lock_timeout_ms

    # --------------------------------------------------------------------------
    # Transactions
    # --------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Gated session with an open transaction. Commits on normal exit,
        rolls back on any exception. Retryable database failures surface as
        TransientStoreError.
        """
        async with self.gated():
            async with self.session_factory() as db:
                try:
                    async with db.begin():
                        yield db
                except SQLAlchemyError as e:
                    if is_transient(e):
                        logger.warning("transient store error: %s", e)
                        raise TransientStoreError(str(e)) from e
                    raise

    # UN-GATED internal helpers: caller holds a transaction
    async def _set_lock_timeout(self, db: AsyncSession) -> None:
        if db.bind.dialect.name == "postgresql":
            # SET does not take bind parameters
            await db.execute(text(
                f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}"
            ))

    async def _lock_where(self, db: AsyncSession, *criteria) -> List[Dict]:
        await self._set_lock_timeout(db)
        stmt = (
            select(units.c.number, units.c.order_reference)
            .where(*criteria)
            .order_by(units.c.number)
            .with_for_update()
        )
        rows = (await db.execute(stmt)).mappings().all()
        return [dict(r) for r in rows]

    # --------------------------------------------------------------------------
    # Setup
    # --------------------------------------------------------------------------

    async def _insert_units(self, db: AsyncSession, count: int) -> None:
        await db.execute(
            text("""
                INSERT INTO units (number, status)
                VALUES (:number, 'AVAILABLE')
                ON CONFLICT (number) DO NOTHING
            """),
            [{"number": n} for n in range(1, count + 1)],
        )

    async def initialize(self, count: int) -> bool:
        """
        Create units 1..count as AVAILABLE unless units already exist.
        Returns True if rows were created.
        """
        if count < 1:
            raise ValueError("count must be positive")
        async with self.transaction() as db:
            existing = (await db.execute(
                text("SELECT COUNT(*) FROM units")
            )).scalar_one()
            if existing:
                return False
            await self._insert_units(db, count)
        logger.info("initialized %d units", count)
        return True

    async def reset(self, count: int) -> None:
        """Wipe every unit and repopulate 1..count as AVAILABLE."""
        async with self.transaction() as db:
            await db.execute(text("DELETE FROM units"))
            await self._insert_units(db, count)
        logger.warning("inventory reset to %d AVAILABLE units", count)

    # --------------------------------------------------------------------------
    # Reservation (caller-managed transaction)
    # --------------------------------------------------------------------------

    async def lock_for_update(
        self, db: AsyncSession, numbers: Iterable[int]
    ) -> List[Dict[str, Any]]:
        """
        Current status of the given units, with exclusive row locks held
        until the caller's transaction ends. Numbers without a row are simply
        absent from the result.
        """
        nums = sorted(set(numbers))
        await self._set_lock_timeout(db)
        stmt = (
            select(units.c.number, units.c.status)
            .where(units.c.number.in_(nums))
            .order_by(units.c.number)
            .with_for_update()
        )
        rows = (await db.execute(stmt)).mappings().all()
        return [dict(r) for r in rows]

    async def reserve(
        self,
        db: AsyncSession,
        numbers: Iterable[int],
        *,
        buyer_name: str,
        buyer_phone: str,
        buyer_document: Optional[str],
        order_reference: str,
        payment_handle: Optional[str],
        timestamp: float,
    ) -> List[int]:
        """
        AVAILABLE -> RESERVED for all given units in one statement. Must run
        after lock_for_update() confirmed availability, in the same
        transaction. Returns the numbers actually updated.
        """
        stmt = text("""
            UPDATE units
            SET status='RESERVED',
                buyer_name=:name,
                buyer_phone=:phone,
                buyer_document=:document,
                order_reference=:ref,
                payment_handle=:handle,
                reserved_at=:ts
            WHERE number IN :numbers
              AND status='AVAILABLE'
            RETURNING number
        """).bindparams(bindparam("numbers", expanding=True))
        rows = (await db.execute(stmt, {
            "name": buyer_name,
            "phone": buyer_phone,
            "document": buyer_document,
            "ref": order_reference,
            "handle": payment_handle,
            "ts": timestamp,
            "numbers": sorted(set(numbers)),
        })).all()
        return sorted(r[0] for r in rows)

    # --------------------------------------------------------------------------
    # Order-level transitions (own transaction each)
    # --------------------------------------------------------------------------

    async def set_payment_handle(
        self, order_reference: str, payment_handle: str
    ) -> List[int]:
        async with self.transaction() as db:
            await self._lock_where(
                db,
                units.c.order_reference == order_reference,
                units.c.status.in_((RESERVED, PAID)),
            )
            rows = (await db.execute(text("""
                UPDATE units
                SET payment_handle=:handle
                WHERE order_reference=:ref
                  AND status IN ('RESERVED', 'PAID')
                RETURNING number
            """), {"ref": order_reference, "handle": payment_handle})).all()
        return sorted(r[0] for r in rows)

    async def mark_paid(self, order_reference: str) -> List[int]:
        """
        RESERVED -> PAID for the whole order. Returns affected numbers; an
        empty list means the order was already paid or already released.
        """
        async with self.transaction() as db:
            await self._lock_where(
                db,
                units.c.order_reference == order_reference,
                units.c.status == RESERVED,
            )
            rows = (await db.execute(text("""
                UPDATE units
                SET status='PAID', reserved_at=NULL
                WHERE order_reference=:ref
                  AND status='RESERVED'
                RETURNING number
            """), {"ref": order_reference})).all()
        return sorted(r[0] for r in rows)

    async def release(self, order_reference: str) -> List[int]:
        """
        RESERVED -> AVAILABLE for the whole order, clearing buyer, order and
        payment metadata. PAID units are never touched.
        """
        async with self.transaction() as db:
            await self._lock_where(
                db,
                units.c.order_reference == order_reference,
                units.c.status == RESERVED,
            )
            rows = (await db.execute(text(f"""
                UPDATE units
                SET {SQL_RELEASE_SET}
                WHERE order_reference=:ref
                  AND status='RESERVED'
                RETURNING number
            """), {"ref": order_reference})).all()
        return sorted(r[0] for r in rows)

    async def release_expired_before(
        self, cutoff: float
    ) -> Dict[str, List[int]]:
        """
        Release every reservation with reserved_at <= cutoff.
        Returns {order_reference: [released numbers]}.
        """
        async with self.transaction() as db:
            locked = await self._lock_where(
                db,
                units.c.status == RESERVED,
                units.c.reserved_at.is_not(None),
                units.c.reserved_at <= cutoff,
            )
            if not locked:
                return {}
            stmt = text(f"""
                UPDATE units
                SET {SQL_RELEASE_SET}
                WHERE number IN :numbers
                  AND status='RESERVED'
                  AND reserved_at <= :cutoff
                RETURNING number
            """).bindparams(bindparam("numbers", expanding=True))
            rows = (await db.execute(stmt, {
                "numbers": [r["number"] for r in locked],
                "cutoff": cutoff,
            })).all()

        released = {r[0] for r in rows}
        out: Dict[str, List[int]] = {}
        for r in locked:
            if r["number"] in released:
                out.setdefault(r["order_reference"], []).append(r["number"])
        return out

    # --------------------------------------------------------------------------
    # Read APIs
    # --------------------------------------------------------------------------

    async def list_all(self) -> List[Dict[str, Any]]:
        async with self.transaction() as db:
            rows = (await db.execute(text(
                f"SELECT {PUBLIC_COLUMNS} FROM units ORDER BY number"
            ))).mappings().all()
        return [dict(r) for r in rows]

    async def find_by_order_reference(
        self, order_reference: str
    ) -> List[Dict[str, Any]]:
        async with self.transaction() as db:
            rows = (await db.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM units
                WHERE order_reference=:ref
                ORDER BY number
            """), {"ref": order_reference})).mappings().all()
        return [dict(r) for r in rows]

    async def find_by_payment_handle(
        self, payment_handle: str
    ) -> List[Dict[str, Any]]:
        async with self.transaction() as db:
            rows = (await db.execute(text(f"""
                SELECT {ORDER_COLUMNS} FROM units
                WHERE payment_handle=:handle
                ORDER BY number
            """), {"handle": payment_handle})).mappings().all()
        return [dict(r) for r in rows]

    async def find_by_phone(self, phone: str) -> List[Dict[str, Any]]:
        async with self.transaction() as db:
            rows = (await db.execute(text("""
                SELECT number, status FROM units
                WHERE buyer_phone=:phone
                  AND status IN ('RESERVED', 'PAID')
                ORDER BY number
            """), {"phone": phone})).mappings().all()
        return [dict(r) for r in rows]

    async def summary(self) -> Dict[str, Any]:
        async with self.transaction() as db:
            rows = (await db.execute(text("""
                SELECT status, COUNT(*) AS n FROM units GROUP BY status
            """))).mappings().all()
        counts = {r["status"]: int(r["n"]) for r in rows}
        available = counts.get(AVAILABLE, 0)
        return {
            "capacity": sum(counts.values()),
            "available": available,
            "reserved": counts.get(RESERVED, 0),
            "paid": counts.get(PAID, 0),
            "sold_out": available <= 0,
        }
