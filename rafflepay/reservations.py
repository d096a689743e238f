"""
Reservation flow:

  1) validate the request (never touches the store)
  2) lock the requested units in ascending order, check availability and
     reserve them under a fresh order reference; commit
  3) create the external payment for the order (no store lock held)
  4) on provider failure (or a cancelled request) release the order again

Step 2 is the only place a unit may go AVAILABLE -> RESERVED.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, TypedDict

from sqlalchemy.exc import SQLAlchemyError

from .errors import (
    ConflictError, PaymentProviderError, TransientStoreError, ValidationError
)
from .helpers import now_ts, new_order_reference, digits_only
from .infra.timings import timeit
from .model.inventory import InventoryStore
from .model.unit import AVAILABLE
from .payments import PaymentProvider, PaymentHandle, Payer

logger = logging.getLogger(__name__)


@dataclass
class Buyer:
    name: str
    phone: str
    document: Optional[str] = None


class ReservationResult(TypedDict):
    order_reference: str
    numbers: List[int]
    amount: int
    currency: str
    payment_handle: str
    status: str
    presentation: Dict[str, str]
    reserved_at: float


class PaymentCorrelator:
    """One external payment per order, recorded on every unit of the order."""

    def __init__(
        self,
        store: InventoryStore,
        provider: PaymentProvider,
        *,
        unit_price: int,
        currency: str,
        payer_email: str,
        payer_document: str = "",
        payer_document_type: str = "CPF",
    ) -> None:
        self.store = store
        self.provider = provider
        self.unit_price = unit_price
        self.currency = currency
        self.payer_email = payer_email
        self.payer_document = payer_document
        self.payer_document_type = payer_document_type

    def amount_for(self, count: int) -> int:
        return self.unit_price * count

    def payer_for(self, buyer: Buyer) -> Payer:
        return {
            "email": self.payer_email,
            "document_type": self.payer_document_type,
            "document": digits_only(buyer.document) or self.payer_document,
        }

    async def create_payment(
        self, order_reference: str, numbers: List[int], buyer: Buyer
    ) -> PaymentHandle:
        """
        Calls the provider exactly once. Never retried here: a retry could
        bill the buyer twice, so callers that want another attempt start a
        new order.
        """
        amount = self.amount_for(len(numbers))
        async with timeit("provider.create_payment"):
            handle = await self.provider.create_payment(
                order_reference=order_reference,
                amount=amount,
                currency=self.currency,
                description=f"Rifa - {len(numbers)} numero(s): "
                            + ", ".join(str(n) for n in numbers),
                payer=self.payer_for(buyer),
            )

        try:
            persisted = await self.store.set_payment_handle(
                order_reference, handle["payment_id"]
            )
        except (TransientStoreError, SQLAlchemyError):
            # the order stays reconcilable through its order reference
            logger.exception(
                "could not persist payment %s for order %s",
                handle["payment_id"], order_reference,
            )
        else:
            if not persisted:
                logger.warning(
                    "order %s no longer reserved when payment %s was "
                    "recorded", order_reference, handle["payment_id"],
                )
        return handle


class ReservationEngine:
    def __init__(
        self,
        store: InventoryStore,
        correlator: PaymentCorrelator,
        *,
        capacity: int,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.store = store
        self.correlator = correlator
        self.capacity = capacity
        self.clock = clock

    def validate(self, numbers: Iterable[Any], buyer: Buyer) -> List[int]:
        """Deduplicated, sorted unit numbers, or ValidationError."""
        if not isinstance(numbers, (list, tuple, set, frozenset)):
            raise ValidationError("numbers must be a list of integers")
        nums = list(numbers)
        if not nums:
            raise ValidationError("no numbers selected")
        for n in nums:
            if isinstance(n, bool) or not isinstance(n, int):
                raise ValidationError(f"invalid unit number: {n!r}")
        out_of_range = sorted({n for n in nums
                               if n < 1 or n > self.capacity})
        if out_of_range:
            raise ValidationError(
                f"numbers out of range 1..{self.capacity}: {out_of_range}"
            )
        if not buyer.name or not buyer.name.strip():
            raise ValidationError("buyer name is required")
        if not buyer.phone or not buyer.phone.strip():
            raise ValidationError("buyer phone is required")
        return sorted(set(nums))

    async def _reserve_rows(
        self, nums: List[int], buyer: Buyer, order_reference: str, ts: float
    ) -> None:
        async with self.store.transaction() as db:
            rows = await self.store.lock_for_update(db, nums)
            found = {r["number"]: r["status"] for r in rows}
            unavailable = [
                {"number": n, "status": found.get(n, "MISSING")}
                for n in nums if found.get(n) != AVAILABLE
            ]
            if unavailable:
                raise ConflictError(unavailable)

            reserved = await self.store.reserve(
                db, nums,
                buyer_name=buyer.name.strip(),
                buyer_phone=buyer.phone.strip(),
                buyer_document=digits_only(buyer.document) or None,
                order_reference=order_reference,
                payment_handle=None,
                timestamp=ts,
            )
            if reserved != nums:
                # rows were locked and AVAILABLE a moment ago
                raise RuntimeError(
                    f"reserve updated {reserved}, expected {nums}"
                )

    async def _abandon(self, order_reference: str, reason: str) -> None:
        released = await self.store.release(order_reference)
        logger.warning("order %s abandoned: %s, released %s",
                       order_reference, reason, released)

    async def reserve_units(
        self, numbers: Iterable[Any], buyer: Buyer
    ) -> ReservationResult:
        nums = self.validate(numbers, buyer)
        order_reference = new_order_reference()
        ts = self.clock()

        async with timeit("inventory.reserve"):
            await self._reserve_rows(nums, buyer, order_reference, ts)
        logger.info("reserved %s for order %s", nums, order_reference)

        try:
            handle = await self.correlator.create_payment(
                order_reference, nums, buyer
            )
        except asyncio.CancelledError:
            # caller went away mid-request: the release must still finish
            await asyncio.shield(
                self._abandon(order_reference, "request cancelled")
            )
            raise
        except Exception as e:
            # leave no reservation behind; if this release fails too the
            # expiry sweep reclaims the units
            await self._abandon(order_reference,
                                f"payment creation failed ({e})")
            if isinstance(e, PaymentProviderError):
                raise
            raise PaymentProviderError(
                f"payment creation failed: {e!r}"
            ) from e

        logger.info(
            "order %s awaiting payment %s",
            order_reference, handle["payment_id"],
        )
        return {
            "order_reference": order_reference,
            "numbers": nums,
            "amount": self.correlator.amount_for(len(nums)),
            "currency": self.correlator.currency,
            "payment_handle": handle["payment_id"],
            "status": handle["status"],
            "presentation": handle["presentation"],
            "reserved_at": ts,
        }
