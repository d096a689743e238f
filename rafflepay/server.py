from __future__ import annotations
import sys

import httpx
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError
from redis.exceptions import RedisError
import redis.asyncio as redis

from .errors import (
    ConflictError, PaymentProviderError, TransientStoreError,
    UnknownReferenceError, ValidationError,
)
from .helpers import ct_equal, now_ts
from .infra.sql import make_async_engine
from .infra.timings import install_shutdown_log, timeit, aggregates
from .logs import setup_logging
from .model.inventory import InventoryStore
from .model.unit import Base
from .model.paymentsession import (
    PaymentSessionStore, new_store, BACKEND as PAYSESSION_BACKEND
)
from .payments import PaymentProvider, MercadoPago, MockPay, MP_API_BASE
from .reclaimer import ExpiryReclaimer
from .reconciliation import APPROVED, REJECTED, ReconciliationHandler
from .reservations import Buyer, PaymentCorrelator, ReservationEngine

# ----------------------------
# Config & Constants
# ----------------------------
setup_logging(
    log_level=os.environ.get("LOG_LEVEL", "INFO"),
    log_dir=os.environ.get("LOG_DIR") or None,
)
logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.critical("NEED DATABASE_URL! e.g. sqlite:///./rafflepay.db")
    sys.exit(1)

INVENTORY_SIZE = int(os.environ.get("INVENTORY_SIZE", "100"))
UNIT_PRICE_CENTS = int(os.environ.get("UNIT_PRICE_CENTS", "300"))
CURRENCY = os.environ.get("CURRENCY", "brl")
RESERVATION_TIMEOUT_SECONDS = int(
    os.environ.get("RESERVATION_TIMEOUT_SECONDS", str(60 * 60))
)
SWEEP_PERIOD_SECONDS = int(os.environ.get("SWEEP_PERIOD_SECONDS", str(5 * 60)))
DB_LOCK_TIMEOUT_MS = int(os.environ.get("DB_LOCK_TIMEOUT_MS", "5000"))
# payment sessions outlive the reservation they describe by a minute
PAYSESSION_TTL_SECONDS = RESERVATION_TIMEOUT_SECONDS + 60

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
MP_ACCESS_TOKEN = os.environ.get("MP_ACCESS_TOKEN", "")
MP_NOTIFICATION_URL = os.environ.get("MP_NOTIFICATION_URL") or None
PAYER_EMAIL = os.environ.get("PAYER_EMAIL", "pagamentos@example.com")
PAYER_DOCUMENT = os.environ.get("PAYER_DOCUMENT", "")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev-admin-token")

if PAYMENT_PROVIDER == "mercadopago" and not MP_ACCESS_TOKEN:
    logger.critical("PAYMENT_PROVIDER=mercadopago needs MP_ACCESS_TOKEN")
    sys.exit(1)


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

store = InventoryStore(
    session_factory=SessionAsync,
    gated=gated,
    lock_timeout_ms=DB_LOCK_TIMEOUT_MS,
)

app = FastAPI(
    title="rafflepay",
    default_response_class=ORJSONResponse,
)

install_shutdown_log(app)


def make_provider() -> PaymentProvider:
    if PAYMENT_PROVIDER == "mercadopago":
        return MercadoPago(
            MP_ACCESS_TOKEN,
            base_url=os.environ.get("MP_API_BASE", MP_API_BASE),
            notification_url=MP_NOTIFICATION_URL,
        )
    return MockPay()


@asynccontextmanager
async def open_paymentsessions() -> AsyncIterator[PaymentSessionStore]:
    if PAYSESSION_BACKEND == "redis":
        yield new_store(r=app.state.redis, ttl_seconds=PAYSESSION_TTL_SECONDS)
    else:
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated,
                            ttl_seconds=PAYSESSION_TTL_SECONDS)


async def paymentsessions() -> AsyncIterator[PaymentSessionStore]:
    async with open_paymentsessions() as rs:
        yield rs


def get_engine() -> ReservationEngine:
    return app.state.engine


def get_reconciler() -> ReconciliationHandler:
    return app.state.reconciler


def get_reclaimer() -> ExpiryReclaimer:
    return app.state.reclaimer


# ---
# payment session housekeeping (best effort: unit state is already committed)
# ---
async def _flush_pending(order_reference: str, outcome: str) -> None:
    try:
        async with open_paymentsessions() as rs:
            await rs.remove_pending(order_reference)
    except (SQLAlchemyError, RedisError):
        logger.exception("could not flush payment session %s",
                         order_reference)


async def _flush_released(released: Dict[str, List[int]]) -> None:
    for ref in released:
        await _flush_pending(ref, REJECTED)
    try:
        async with open_paymentsessions() as rs:
            purged = await rs.purge_expired()
        if purged:
            logger.info("purged %d expired payment sessions", purged)
    except (SQLAlchemyError, RedisError):
        logger.exception("could not purge expired payment sessions")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("rafflepay is starting up...")
    logger.info("   - Units: %d at %d cents (%s)",
                INVENTORY_SIZE, UNIT_PRICE_CENTS, CURRENCY)
    logger.info("   - Payment provider: %s", PAYMENT_PROVIDER)
    logger.info("   - Payment sessions backend: %s", PAYSESSION_BACKEND)
    logger.info("   - Reservation timeout: %ss, sweep every %ss",
                RESERVATION_TIMEOUT_SECONDS, SWEEP_PERIOD_SECONDS)
    logger.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if PAYSESSION_BACKEND != "redis":
            from .model.paymentsession._sql import create_schema
            await create_schema(conn)
    await store.initialize(INVENTORY_SIZE)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if PAYSESSION_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _core_start():
    provider = make_provider()
    correlator = PaymentCorrelator(
        store, provider,
        unit_price=UNIT_PRICE_CENTS,
        currency=CURRENCY,
        payer_email=PAYER_EMAIL,
        payer_document=PAYER_DOCUMENT,
    )
    app.state.provider = provider
    app.state.engine = ReservationEngine(
        store, correlator, capacity=INVENTORY_SIZE
    )
    app.state.reconciler = ReconciliationHandler(
        store, provider, on_settled=_flush_pending
    )
    app.state.reclaimer = ExpiryReclaimer(
        store,
        timeout_seconds=RESERVATION_TIMEOUT_SECONDS,
        period_seconds=SWEEP_PERIOD_SECONDS,
        on_released=_flush_released,
    )
    # first sweep runs immediately: reclaims what a restart abandoned
    app.state.reclaimer.start()


@app.on_event("shutdown")
async def _reclaimer_stop():
    reclaimer = getattr(app.state, "reclaimer", None)
    if reclaimer is not None:
        await reclaimer.stop()


@app.on_event("shutdown")
async def _provider_stop():
    provider = getattr(app.state, "provider", None)
    if provider is not None:
        await provider.aclose()
        app.state.provider = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await engine.dispose()


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return ORJSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict_error(request: Request, exc: ConflictError):
    return ORJSONResponse(status_code=409, content={
        "detail": "some numbers are not available",
        "numbers": exc.unavailable,
    })


@app.exception_handler(PaymentProviderError)
async def _provider_error(request: Request, exc: PaymentProviderError):
    return ORJSONResponse(status_code=502, content={
        "detail": "payment could not be created, please try again",
    })


@app.exception_handler(TransientStoreError)
async def _store_error(request: Request, exc: TransientStoreError):
    return ORJSONResponse(
        status_code=503,
        content={"detail": "temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


# ----------------------------
# Helpers
# ----------------------------
def require_admin(request: Request) -> None:
    token = request.headers.get("x-admin-token", "")
    if not token or not ct_equal(token, ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="admin token required")


def _coerce_numbers(raw: Any) -> Any:
    # form posts send numbers as strings
    if not isinstance(raw, list):
        return raw
    out = []
    for n in raw:
        if isinstance(n, str) and n.strip().isdigit():
            out.append(int(n.strip()))
        else:
            out.append(n)
    return out


async def _json_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ----------------------------
# API: units
# ----------------------------
@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/api/units")
async def list_units():
    async with timeit("inventory.list_all"):
        return await store.list_all()


@app.get("/api/inventory")
async def get_inventory():
    return await store.summary()


@app.get("/api/buyers/{phone}/units")
async def units_by_phone(phone: str):
    rows = await store.find_by_phone(phone.strip())
    if not rows:
        raise HTTPException(404, detail="no numbers found for this phone")
    return rows


# ----------------------------
# API: reserve
# ----------------------------
@app.post("/api/reserve")
async def reserve(
    payload: dict,
    engine_: ReservationEngine = Depends(get_engine),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    document = payload.get("document") or payload.get("cpf")
    buyer = Buyer(
        name=str(payload.get("name") or payload.get("nome") or ""),
        phone=str(payload.get("phone") or payload.get("telefone") or ""),
        document=str(document) if document else None,
    )
    numbers = _coerce_numbers(
        payload.get("numbers", payload.get("numeros"))
    )

    async with timeit("api.reserve"):
        result = await engine_.reserve_units(numbers, buyer)

    try:
        async with timeit("paymentsession.save"):
            await rs.save_payment_session(result["order_reference"], {
                "payment_id": result["payment_handle"],
                "numbers": result["numbers"],
                "amount": result["amount"],
                "currency": result["currency"],
                "buyer_phone": buyer.phone.strip(),
                "presentation": result["presentation"],
                "created_at": now_ts(),
            })
    except (SQLAlchemyError, RedisError):
        # the buyer already has everything needed to pay
        logger.exception("could not cache payment session for %s",
                         result["order_reference"])

    return {
        "success": True,
        **result,
        "buyer": {"name": buyer.name, "phone": buyer.phone},
    }


# ----------------------------
# API: order status (polled by the client)
# ----------------------------
@app.get("/api/orders/{order_reference}")
async def get_order(
    order_reference: str,
    reconciler: ReconciliationHandler = Depends(get_reconciler),
):
    async with timeit("api.order_status"):
        out = await reconciler.query_status(order_reference)
    if out["status"] == "unknown":
        return ORJSONResponse(status_code=404, content={
            **out, "detail": "order reference not found or expired",
        })
    return out


@app.get("/api/orders/{order_reference}/payment")
async def get_order_payment(
    order_reference: str,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    ps = await rs.get_payment_session(order_reference)
    if not ps:
        raise HTTPException(404, detail="payment session not found")
    return ps


@app.get("/api/pending")
async def api_pending(
    limit: int = 100,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    limit = max(1, min(limit, 500))
    total, items = await rs.get_recent_payment_sessions(limit=limit)
    return {"items": items, "limit": limit, "total": total}


# ----------------------------
# Webhook endpoint (provider push)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    reconciler: ReconciliationHandler = Depends(get_reconciler),
):
    query = dict(request.query_params)
    body = await _json_body(request)
    try:
        async with timeit("api.webhook"):
            return await reconciler.handle_notification(query, body)
    except (PaymentProviderError, TransientStoreError) as e:
        # retryable: let the provider deliver again
        logger.warning("webhook processing failed, asking for retry: %s", e)
        return ORJSONResponse(status_code=503, content={"ok": False})
    except Exception:
        # acknowledged anyway, redelivering would hit the same bug
        logger.exception("webhook processing error: query=%s body=%s",
                         query, body)
        return {"ok": False}


# ----------------------------
# MockPay: drive a mock payment to a final status
# ----------------------------
@app.post("/mockpay/{payment_id}/emit")
async def mockpay_emit(payment_id: str, payload: dict):
    provider = app.state.provider
    if not isinstance(provider, MockPay):
        raise HTTPException(404, detail="mock payments are disabled")

    status = payload.get("status")
    if status not in {"approved", "rejected", "cancelled", "refunded",
                      "pending", "in_process"}:
        raise HTTPException(400, detail="invalid status")
    try:
        provider.set_status(payment_id, status)
    except KeyError:
        raise HTTPException(404, detail="payment not found")

    delivered = False
    if payload.get("deliver", True):
        client_http: httpx.AsyncClient = app.state.http
        try:
            r = await client_http.post(
                MOCK_WEBHOOK_URL,
                json=provider.notification_for(payment_id),
            )
            delivered = r.status_code < 400
        except httpx.HTTPError as e:
            # the client can still poll /api/orders/{ref}
            logger.warning("mock webhook delivery failed: %r", e)

    return {"ok": True, "payment_id": payment_id, "status": status,
            "delivered": delivered}


# ----------------------------
# Admin
# ----------------------------
async def _admin_outcome(
    reconciler: ReconciliationHandler, order_reference: str, outcome: str
) -> Dict[str, Any]:
    try:
        result = await reconciler.apply_outcome(
            outcome, order_reference=order_reference
        )
    except UnknownReferenceError:
        result = None
    if not result or not result["affected"]:
        raise HTTPException(
            404, detail=f"no RESERVED numbers for {order_reference}"
        )
    return {"ok": True, **result}


@app.post("/admin/approve/{order_reference}",
          dependencies=[Depends(require_admin)])
async def admin_approve(
    order_reference: str,
    reconciler: ReconciliationHandler = Depends(get_reconciler),
):
    logger.warning("admin: forcing approval of %s", order_reference)
    return await _admin_outcome(reconciler, order_reference, APPROVED)


@app.post("/admin/reject/{order_reference}",
          dependencies=[Depends(require_admin)])
async def admin_reject(
    order_reference: str,
    reconciler: ReconciliationHandler = Depends(get_reconciler),
):
    logger.warning("admin: forcing rejection of %s", order_reference)
    return await _admin_outcome(reconciler, order_reference, REJECTED)


@app.post("/admin/reset", dependencies=[Depends(require_admin)])
async def admin_reset():
    await store.reset(INVENTORY_SIZE)
    return {"ok": True, "capacity": INVENTORY_SIZE}


@app.post("/admin/sweep", dependencies=[Depends(require_admin)])
async def admin_sweep(reclaimer: ExpiryReclaimer = Depends(get_reclaimer)):
    released = await reclaimer.sweep()
    return {"ok": True, "released": released}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return aggregates()
