import time

import pytest
import pytest_asyncio

from rafflepay.model.paymentsession import new_store
from rafflepay.model.paymentsession._sql import PaymentSessionStore


@pytest_asyncio.fixture
async def sessions(db):
    _, SessionAsync, gated = db
    async with SessionAsync() as s:
        yield PaymentSessionStore(db=s, ttl_seconds=60, gated=gated)


def mapping(**kw):
    m = {
        "payment_id": "mock_1",
        "numbers": [3, 4],
        "amount": 600,
        "currency": "brl",
        "buyer_phone": "11999990000",
        "presentation": {"qr_code": "MOCKPIX-mock_1", "ticket_url": "/x"},
    }
    m.update(kw)
    return m


class TestSqlPaymentSessions:
    @pytest.mark.asyncio
    async def test_save_and_get(self, sessions):
        await sessions.save_payment_session("RIFA-1", mapping())
        got = await sessions.get_payment_session("RIFA-1")
        assert got["order_reference"] == "RIFA-1"
        assert got["payment_id"] == "mock_1"
        assert got["numbers"] == [3, 4]
        assert got["amount"] == 600
        assert got["presentation"]["qr_code"] == "MOCKPIX-mock_1"
        assert await sessions.get_payment_session("RIFA-2") is None

    @pytest.mark.asyncio
    async def test_save_is_an_upsert(self, sessions):
        await sessions.save_payment_session("RIFA-1", mapping())
        await sessions.save_payment_session(
            "RIFA-1", mapping(payment_id="mock_2", numbers=[9])
        )
        got = await sessions.get_payment_session("RIFA-1")
        assert got["payment_id"] == "mock_2"
        assert got["numbers"] == [9]
        total, items = await sessions.get_recent_payment_sessions()
        assert total == 1

    @pytest.mark.asyncio
    async def test_expired_sessions_are_invisible(self, sessions):
        old = time.time() - 3600
        await sessions.save_payment_session("RIFA-OLD",
                                            mapping(created_at=old))
        assert await sessions.get_payment_session("RIFA-OLD") is None
        assert await sessions.purge_expired() == 1

    @pytest.mark.asyncio
    async def test_recent_lists_newest_first(self, sessions):
        now = time.time()
        await sessions.save_payment_session("RIFA-A",
                                            mapping(created_at=now - 20))
        await sessions.save_payment_session("RIFA-B",
                                            mapping(created_at=now - 10))
        total, items = await sessions.get_recent_payment_sessions(limit=10)
        assert total == 2
        assert [i["order_reference"] for i in items] == ["RIFA-B", "RIFA-A"]
        assert items[0]["status"] == "PENDING"
        assert items[0]["age_ms"] >= 10_000

    @pytest.mark.asyncio
    async def test_remove_pending(self, sessions):
        await sessions.save_payment_session("RIFA-1", mapping())
        await sessions.remove_pending("RIFA-1")
        total, items = await sessions.get_recent_payment_sessions()
        assert (total, items) == (0, [])
        # the session itself stays readable for the status page
        assert await sessions.get_payment_session("RIFA-1") is not None

    @pytest.mark.asyncio
    async def test_recent_drops_dangling_pending_entries(self, sessions):
        await sessions.save_payment_session("RIFA-LIVE", mapping())
        await sessions.save_payment_session(
            "RIFA-GONE", mapping(created_at=time.time() - 3600)
        )
        await sessions.purge_expired()

        total, items = await sessions.get_recent_payment_sessions()

        assert total == 1
        assert [i["order_reference"] for i in items] == ["RIFA-LIVE"]
        again, _ = await sessions.get_recent_payment_sessions()
        assert again == 1


class TestFactory:
    def test_sql_backend_requires_session_and_gate(self):
        with pytest.raises(RuntimeError):
            new_store()
        with pytest.raises(RuntimeError):
            new_store(db=object())

    @pytest.mark.asyncio
    async def test_sql_backend(self, db):
        _, SessionAsync, gated = db
        async with SessionAsync() as s:
            store = new_store(db=s, gated=gated, ttl_seconds=10)
            assert isinstance(store, PaymentSessionStore)
            assert store.ttl == 10
