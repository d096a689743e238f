"""
Exception taxonomy shared by the reservation engine, reconciliation and the
HTTP layer.

    RaffleError
    ├── ValidationError        malformed input, store never touched
    ├── ConflictError          units not available, transaction rolled back
    ├── PaymentProviderError   provider call failed, reservation released
    ├── UnknownReferenceError  reconciliation target not found, dropped
    └── TransientStoreError    lock timeout / connection loss, retryable
"""
from __future__ import annotations
from typing import List, Dict, Any, Optional


class RaffleError(Exception):
    """Base class for all rafflepay errors."""


class ValidationError(RaffleError):
    pass


class ConflictError(RaffleError):
    def __init__(self, unavailable: List[Dict[str, Any]]):
        self.unavailable = sorted(unavailable, key=lambda u: u["number"])
        listed = ", ".join(
            f"#{u['number']} ({u['status']})" for u in self.unavailable
        )
        super().__init__(f"units not available: {listed}")

    @property
    def numbers(self) -> List[int]:
        return [u["number"] for u in self.unavailable]


class PaymentProviderError(RaffleError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnknownReferenceError(RaffleError):
    def __init__(
        self,
        order_reference: Optional[str] = None,
        payment_handle: Optional[str] = None,
    ):
        self.order_reference = order_reference
        self.payment_handle = payment_handle
        super().__init__(
            f"no units for order_reference={order_reference!r} "
            f"payment_handle={payment_handle!r}"
        )


class TransientStoreError(RaffleError):
    pass
