import pytest
from fastapi.testclient import TestClient

from rafflepay import server

from .conftest import FailingLookupPay

ADMIN = {"x-admin-token": "test-admin-token"}


@pytest.fixture(scope="module")
def client():
    # one client for the module: the app, its DB gate and the reclaimer
    # task all live on the client's event loop
    with TestClient(server.app) as c:
        yield c


@pytest.fixture(autouse=True)
def fresh_inventory(client):
    r = client.post("/admin/reset", headers=ADMIN)
    assert r.status_code == 200


def reserve(client, numbers, phone="11999990000", **extra):
    payload = {"name": "Maria Silva", "phone": phone, "numbers": numbers}
    payload.update(extra)
    return client.post("/api/reserve", json=payload)


def webhook_for(client, payment_id, status):
    client.post(f"/mockpay/{payment_id}/emit",
                json={"status": status, "deliver": False})
    return client.post("/payments/webhook",
                       json={"type": "payment", "data": {"id": payment_id}})


class TestReads:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}

    def test_units_and_inventory(self, client):
        units = client.get("/api/units").json()
        assert len(units) == server.INVENTORY_SIZE
        assert units[0] == {"number": 1, "status": "AVAILABLE",
                            "buyer_name": None, "buyer_phone": None}
        inv = client.get("/api/inventory").json()
        assert inv["available"] == server.INVENTORY_SIZE
        assert inv["sold_out"] is False


class TestReserve:
    def test_reserve_returns_payment_presentation(self, client):
        r = reserve(client, [3, "1", 2], cpf=12345678909)
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["numbers"] == [1, 2, 3]
        assert body["amount"] == 3 * server.UNIT_PRICE_CENTS
        assert body["buyer"] == {"name": "Maria Silva",
                                 "phone": "11999990000"}
        assert body["presentation"]["qr_code"].startswith("MOCKPIX-")

        ref = body["order_reference"]
        ps = client.get(f"/api/orders/{ref}/payment").json()
        assert ps["payment_id"] == body["payment_handle"]
        assert ps["numbers"] == [1, 2, 3]

        pending = client.get("/api/pending", params={"limit": 1000}).json()
        assert pending["limit"] == 500
        assert ref in [i["order_reference"] for i in pending["items"]]

    def test_portuguese_field_names(self, client):
        r = client.post("/api/reserve", json={
            "nome": "Joao", "telefone": "21988887777", "numeros": [10],
        })
        assert r.status_code == 200
        assert r.json()["buyer"]["name"] == "Joao"

    def test_conflict(self, client):
        assert reserve(client, [7]).status_code == 200
        r = reserve(client, [6, 7, 8], phone="21988887777")
        assert r.status_code == 409
        assert r.json()["numbers"] == [{"number": 7, "status": "RESERVED"}]
        units = client.get("/api/units").json()
        assert units[5]["status"] == "AVAILABLE"
        assert units[7]["status"] == "AVAILABLE"

    @pytest.mark.parametrize("payload", [
        {"name": "Maria", "phone": "1", "numbers": []},
        {"name": "Maria", "phone": "1", "numbers": [0]},
        {"name": "Maria", "phone": "1", "numbers": [10_000]},
        {"name": "Maria", "phone": "1", "numbers": ["abc"]},
        {"name": "Maria", "phone": "1", "numbers": 5},
        {"name": "Maria", "phone": "1", "numbers": {"a": 1}},
        {"name": "", "phone": "1", "numbers": [1]},
        {"name": "Maria", "numbers": [1]},
        {"name": "Maria", "phone": "1"},
    ])
    def test_validation(self, client, payload):
        r = client.post("/api/reserve", json=payload)
        assert r.status_code == 400
        inv = client.get("/api/inventory").json()
        assert inv["available"] == server.INVENTORY_SIZE


class TestPaymentFlow:
    def test_approved_webhook_marks_paid(self, client):
        body = reserve(client, [4, 5]).json()
        ref, pid = body["order_reference"], body["payment_handle"]
        assert client.get(f"/api/orders/{ref}").json()["status"] == "pending"

        r = webhook_for(client, pid, "approved")

        assert r.status_code == 200
        assert r.json()["affected"] == [4, 5]
        status = client.get(f"/api/orders/{ref}").json()
        assert status["status"] == "approved"
        assert client.get("/api/buyers/11999990000/units").json() == [
            {"number": 4, "status": "PAID"},
            {"number": 5, "status": "PAID"},
        ]
        pending = client.get("/api/pending").json()
        assert ref not in [i["order_reference"] for i in pending["items"]]

    def test_duplicate_webhook(self, client):
        pid = reserve(client, [9]).json()["payment_handle"]
        assert webhook_for(client, pid, "approved").json()["affected"] == [9]
        assert webhook_for(client, pid, "approved").json()["affected"] == []

    def test_rejected_webhook_releases(self, client):
        body = reserve(client, [11]).json()
        webhook_for(client, body["payment_handle"], "rejected")
        r = client.get(f"/api/orders/{body['order_reference']}")
        assert r.status_code == 404
        assert client.get("/api/units").json()[10]["status"] == "AVAILABLE"

    def test_poll_picks_up_provider_status(self, client):
        body = reserve(client, [12]).json()
        client.post(f"/mockpay/{body['payment_handle']}/emit",
                    json={"status": "approved", "deliver": False})
        status = client.get(f"/api/orders/{body['order_reference']}").json()
        assert status["status"] == "approved"
        assert status["provider_status"] == "approved"

    def test_ignored_and_failing_webhooks(self, client):
        r = client.post("/payments/webhook",
                        json={"type": "merchant_order", "data": {"id": "1"}})
        assert r.status_code == 200
        assert r.json()["ok"] is True

        r = client.post("/payments/webhook", content=b"not json")
        assert r.status_code == 200

        r = client.post("/payments/webhook",
                        params={"topic": "payment", "id": "mock_missing"})
        assert r.status_code == 200
        assert r.json() == {"ok": True, "ignored": "unknown payment"}

    def test_webhook_asks_for_redelivery_when_provider_down(
        self, client, monkeypatch
    ):
        monkeypatch.setattr(client.app.state.reconciler, "provider",
                            FailingLookupPay())
        r = client.post("/payments/webhook",
                        params={"topic": "payment", "id": "123"})
        assert r.status_code == 503
        assert r.json() == {"ok": False}

    def test_emit_errors(self, client):
        r = client.post("/mockpay/mock_missing/emit",
                        json={"status": "approved", "deliver": False})
        assert r.status_code == 404
        pid = reserve(client, [13]).json()["payment_handle"]
        r = client.post(f"/mockpay/{pid}/emit", json={"status": "paid"})
        assert r.status_code == 400

    def test_unknown_order_and_phone(self, client):
        assert client.get("/api/orders/RIFA-0-none").status_code == 404
        assert client.get("/api/orders/RIFA-0-none/payment").status_code \
            == 404
        assert client.get("/api/buyers/000/units").status_code == 404


class TestAdmin:
    def test_requires_token(self, client):
        assert client.post("/admin/sweep").status_code == 401
        assert client.post("/admin/sweep",
                           headers={"x-admin-token": "nope"}).status_code \
            == 401
        assert client.get("/api/admin/timings").status_code == 401

    def test_approve_and_reject(self, client):
        a = reserve(client, [20]).json()["order_reference"]
        b = reserve(client, [21]).json()["order_reference"]

        r = client.post(f"/admin/approve/{a}", headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["affected"] == [20]
        assert client.post(f"/admin/approve/{a}",
                           headers=ADMIN).status_code == 404

        r = client.post(f"/admin/reject/{b}", headers=ADMIN)
        assert r.status_code == 200
        assert client.post(f"/admin/reject/{b}",
                           headers=ADMIN).status_code == 404
        assert client.post("/admin/reject/RIFA-0-none",
                           headers=ADMIN).status_code == 404

    def test_sweep_and_timings(self, client):
        reserve(client, [30])
        r = client.post("/admin/sweep", headers=ADMIN)
        assert r.json() == {"ok": True, "released": {}}
        timings = client.get("/api/admin/timings", headers=ADMIN).json()
        assert "api.reserve" in timings
        assert timings["api.reserve"]["n"] >= 1
