"""
Applies payment outcomes to stored unit state.

Every mutation here is a conditional bulk update guarded by the current
status, so duplicate deliveries, out-of-order deliveries and a concurrent
expiry sweep all converge: whichever transaction commits first wins and the
others affect zero rows.
"""
from __future__ import annotations
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypedDict

from .errors import PaymentProviderError, UnknownReferenceError
from .infra.timings import timeit
from .model.inventory import InventoryStore
from .model.unit import AVAILABLE, RESERVED, PAID
from .payments import PaymentProvider

logger = logging.getLogger(__name__)

# Outcomes
APPROVED = "APPROVED"
REJECTED = "REJECTED"
UNKNOWN = "UNKNOWN"

REJECTED_STATUSES = ("rejected", "cancelled", "refunded")


def classify(provider_status: Optional[str]) -> str:
    status = (provider_status or "").strip().lower()
    if status == "approved":
        return APPROVED
    if status in REJECTED_STATUSES:
        return REJECTED
    return UNKNOWN


# 4xx answers that are about our request, not the payment: worth a redelivery
RETRYABLE_CLIENT_STATUSES = (401, 403, 408, 429)


def is_unknown_payment(e: PaymentProviderError) -> bool:
    code = e.status_code
    return (code is not None and 400 <= code < 500
            and code not in RETRYABLE_CLIENT_STATUSES)


class OutcomeResult(TypedDict):
    order_reference: str
    outcome: str
    affected: List[int]


# called with (order_reference, outcome) after a paid/released transition
SettledHook = Callable[[str, str], Awaitable[None]]


class ReconciliationHandler:
    def __init__(
        self,
        store: InventoryStore,
        provider: PaymentProvider,
        *,
        on_settled: Optional[SettledHook] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.on_settled = on_settled

    async def _resolve(
        self,
        order_reference: Optional[str],
        payment_handle: Optional[str],
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        if order_reference:
            rows = await self.store.find_by_order_reference(order_reference)
        if not rows and payment_handle:
            rows = await self.store.find_by_payment_handle(payment_handle)
        if not rows:
            raise UnknownReferenceError(order_reference, payment_handle)
        return rows

    async def apply_outcome(
        self,
        outcome: str,
        *,
        order_reference: Optional[str] = None,
        payment_handle: Optional[str] = None,
    ) -> OutcomeResult:
        """
        Apply one payment outcome to the order identified by reference or
        payment handle. Raises UnknownReferenceError when neither resolves;
        an order that is already settled is a no-op, not an error.
        """
        rows = await self._resolve(order_reference, payment_handle)
        ref = rows[0]["order_reference"]

        affected: List[int] = []
        if outcome == APPROVED:
            async with timeit("inventory.mark_paid"):
                affected = await self.store.mark_paid(ref)
            if affected:
                logger.info("order %s PAID: %s", ref, affected)
            else:
                logger.info("order %s approval already applied", ref)
        elif outcome == REJECTED:
            async with timeit("inventory.release"):
                affected = await self.store.release(ref)
            if affected:
                logger.info("order %s released: %s", ref, affected)
            else:
                logger.info(
                    "order %s rejection ignored, status %s",
                    ref, sorted({r["status"] for r in rows}),
                )
        else:
            logger.info("order %s: no transition for outcome %s",
                        ref, outcome)

        if affected and self.on_settled is not None:
            await self.on_settled(ref, outcome)
        return {"order_reference": ref, "outcome": outcome,
                "affected": affected}

    async def handle_notification(
        self, query: Dict[str, str], body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Webhook entry point. The notification itself is not trusted: only
        its payment id is used, status and external reference come from the
        provider. A payment the provider answers 404 (or similar) for is
        acknowledged and ignored. Other PaymentProviderErrors and
        TransientStoreError propagate so the caller can ask for redelivery.
        """
        topic, payment_id = self.provider.notification_ids(query, body)
        if topic != "payment" or not payment_id:
            logger.info("notification ignored: topic=%r id=%r",
                        topic, payment_id)
            return {"ok": True, "ignored": "not a payment notification"}

        try:
            async with timeit("provider.get_payment"):
                info = await self.provider.get_payment(payment_id)
        except PaymentProviderError as e:
            if not is_unknown_payment(e):
                raise
            # test pings and payments of other integrations
            logger.info("payment %s unknown to provider (%s), ignored",
                        payment_id, e.status_code)
            return {"ok": True, "ignored": "unknown payment"}

        outcome = classify(info["status"])
        logger.info(
            "notification for payment %s: status=%s ref=%s",
            payment_id, info["status"], info["external_reference"],
        )

        try:
            result = await self.apply_outcome(
                outcome,
                order_reference=info["external_reference"],
                payment_handle=payment_id,
            )
        except UnknownReferenceError:
            if outcome == APPROVED:
                # e.g. approved after the reservation expired
                logger.warning(
                    "approved payment %s matches no order (ref=%s), "
                    "needs manual refund", payment_id,
                    info["external_reference"],
                )
            else:
                logger.info("payment %s matches no order", payment_id)
            return {"ok": True, "ignored": "unknown reference"}

        return {"ok": True, "order_reference": result["order_reference"],
                "outcome": outcome, "affected": result["affected"]}

    async def query_status(self, order_reference: str) -> Dict[str, Any]:
        """
        Polling view of an order: approved | pending | released | unknown.
        While RESERVED, the provider is asked for a finer status; a terminal
        one is applied right away. Provider failures degrade to pending.
        """
        rows = await self.store.find_by_order_reference(order_reference)
        out: Dict[str, Any] = {
            "order_reference": order_reference,
            "status": "unknown",
            "provider_status": None,
            "numbers": [r["number"] for r in rows],
        }
        if not rows:
            return out

        statuses = {r["status"] for r in rows}
        if PAID in statuses:
            out["status"] = "approved"
            return out
        if statuses == {AVAILABLE}:
            out["status"] = "released"
            return out

        out["status"] = "pending"
        handle = next(
            (r["payment_handle"] for r in rows if r["payment_handle"]), None
        )
        if RESERVED not in statuses or not handle:
            return out

        try:
            async with timeit("provider.get_payment"):
                info = await self.provider.get_payment(handle)
        except PaymentProviderError as e:
            logger.warning("status poll for %s: provider failed: %s",
                           order_reference, e)
            return out

        out["provider_status"] = info["status"]
        outcome = classify(info["status"])
        if outcome == UNKNOWN:
            return out

        try:
            await self.apply_outcome(outcome, order_reference=order_reference)
        except UnknownReferenceError:
            # released by the sweep between our read and the update
            out["status"] = "unknown"
            return out

        # whatever won the race is what the store says now
        rows = await self.store.find_by_order_reference(order_reference)
        statuses = {r["status"] for r in rows}
        if not rows:
            out["status"] = "released" if outcome == REJECTED else "unknown"
        elif PAID in statuses:
            out["status"] = "approved"
        return out
