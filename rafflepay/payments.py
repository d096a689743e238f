from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
import logging
import uuid

import httpx

from .errors import PaymentProviderError
from .helpers import cents_to_decimal

logger = logging.getLogger(__name__)

MP_API_BASE = "https://api.mercadopago.com"


# ----------------------------
# Payment Provider Interface
# ----------------------------
class Payer(TypedDict):
    email: str
    document_type: str
    document: str


class PaymentHandle(TypedDict):
    payment_id: str
    status: str
    # what the buyer needs to pay: pix copy-paste code, qr image, urls
    presentation: Dict[str, str]


class PaymentInfo(TypedDict):
    payment_id: str
    status: str
    external_reference: Optional[str]


class PaymentProvider(ABC):
    name = "abstract"

    @abstractmethod
    async def create_payment(
        self, *,
        order_reference: str,
        amount: int,
        currency: str,
        description: str,
        payer: Payer,
    ) -> PaymentHandle: ...

    @abstractmethod
    async def get_payment(self, payment_id: str) -> PaymentInfo: ...

    # (topic, payment_id) of an inbound notification
    def notification_ids(
        self, query: Dict[str, str], body: Dict[str, Any]
    ) -> Tuple[str, Optional[str]]:
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        topic = (
            query.get("topic") or query.get("type")
            or body.get("topic") or body.get("type") or ""
        )
        payment_id = query.get("id") or query.get("data.id") or data.get("id")
        return str(topic), (str(payment_id) if payment_id else None)

    async def aclose(self) -> None:
        return None


# ----------------------------
# Mercado Pago (PIX) implementation
# ----------------------------
class MercadoPago(PaymentProvider):
    name = "mercadopago"

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = MP_API_BASE,
        notification_url: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not access_token:
            raise ValueError("Mercado Pago requires an access token")
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.notification_url = notification_url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(
        self, method: str, path: str, *,
        headers: Optional[Dict[str, str]] = None, **kw
    ) -> Dict[str, Any]:
        h = {"Authorization": f"Bearer {self.access_token}"}
        h.update(headers or {})
        try:
            r = await self.client.request(
                method, f"{self.base_url}{path}", headers=h, **kw
            )
        except httpx.HTTPError as e:
            raise PaymentProviderError(
                f"mercadopago {method} {path} failed: {e!r}"
            ) from e
        if r.status_code >= 400:
            raise PaymentProviderError(
                f"mercadopago {method} {path} returned {r.status_code}: "
                f"{r.text[:200]}",
                status_code=r.status_code,
            )
        try:
            return r.json()
        except ValueError as e:
            raise PaymentProviderError(
                f"mercadopago {method} {path} returned invalid JSON"
            ) from e

    async def create_payment(
        self, *,
        order_reference: str,
        amount: int,
        currency: str,
        description: str,
        payer: Payer,
    ) -> PaymentHandle:
        body: Dict[str, Any] = {
            "transaction_amount": cents_to_decimal(amount),
            "description": description,
            "payment_method_id": "pix",
            "external_reference": order_reference,
            "payer": {
                "email": payer["email"],
                "identification": {
                    "type": payer["document_type"],
                    "number": payer["document"],
                },
            },
        }
        if self.notification_url:
            body["notification_url"] = self.notification_url

        # one order reference can only ever bill once at the provider
        data = await self._request(
            "POST", "/v1/payments", json=body,
            headers={"X-Idempotency-Key": order_reference},
        )
        if "id" not in data:
            raise PaymentProviderError("mercadopago response without id")

        tx = (data.get("point_of_interaction") or {}).get(
            "transaction_data") or {}
        return {
            "payment_id": str(data["id"]),
            "status": data.get("status") or "",
            "presentation": {
                "qr_code": tx.get("qr_code") or "",
                "qr_code_base64": tx.get("qr_code_base64") or "",
                "ticket_url": tx.get("ticket_url") or "",
            },
        }

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return {
            "payment_id": str(data.get("id", payment_id)),
            "status": data.get("status") or "",
            "external_reference": data.get("external_reference"),
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentProvider):
    """
    In-process provider for development and tests. Payments live in memory
    and change status only through `set_status()` (the /mockpay emit
    endpoint), so a single worker process is assumed.
    """
    name = "mock"

    def __init__(self) -> None:
        self.payments: Dict[str, Dict[str, Any]] = {}

    async def create_payment(
        self, *,
        order_reference: str,
        amount: int,
        currency: str,
        description: str,
        payer: Payer,
    ) -> PaymentHandle:
        payment_id = f"mock_{uuid.uuid4().hex}"
        self.payments[payment_id] = {
            "status": "pending",
            "external_reference": order_reference,
            "amount": amount,
            "currency": currency,
        }
        return {
            "payment_id": payment_id,
            "status": "pending",
            "presentation": {
                "qr_code": f"MOCKPIX-{payment_id}",
                "qr_code_base64": "",
                "ticket_url": f"/mockpay/{payment_id}",
            },
        }

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        p = self.payments.get(payment_id)
        if p is None:
            raise PaymentProviderError(
                f"unknown mock payment {payment_id}", status_code=404
            )
        return {
            "payment_id": payment_id,
            "status": p["status"],
            "external_reference": p["external_reference"],
        }

    def set_status(self, payment_id: str, status: str) -> None:
        if payment_id not in self.payments:
            raise KeyError(payment_id)
        self.payments[payment_id]["status"] = status

    def notification_for(self, payment_id: str) -> Dict[str, Any]:
        return {"type": "payment", "data": {"id": payment_id}}
