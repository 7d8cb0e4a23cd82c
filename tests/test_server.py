import json
from dataclasses import replace

import httpx
import pytest
from fastapi.testclient import TestClient

from boxoffice.server import create_app

from conftest import PNG_BYTES


@pytest.fixture
def app(settings, sink):
    return create_app(settings, sink=sink)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def login(client, password="supasecret"):
    return client.post("/admin/login",
                       data={"username": "admin", "password": password})


def buy_paynow(client, items=None, proof=PNG_BYTES):
    items = items or [{"ticket_type_id": "early-bird", "quantity": 2}]
    files = {"proof": ("proof.png", proof, "image/png")} if proof else None
    return client.post(
        "/api/checkout/paynow",
        data={
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "phone": "+65 8123 4567",
            "items": json.dumps(items),
        },
        files=files,
    )


def start_card(client, items=None, method="card"):
    return client.post("/api/checkout/card", json={
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "phone": "+65 8123 4567",
        "items": items or [{"ticket_type_id": "table", "quantity": 1}],
        "method": method,
    })


class TestPublic:
    def test_health(self, client):
        body = client.get("/").json()
        assert body["ok"] is True
        assert body["payment_provider"] == "mock"
        assert body["paysession_backend"] == "pg"

    def test_inventory(self, client):
        items = {i["id"]: i for i in client.get("/api/inventory").json()
                 ["items"]}
        assert items["early-bird"] == {
            "id": "early-bird", "name": "Early Bird",
            "price": 2500, "available": 150,
        }

    def test_cart_check(self, client):
        res = client.post("/api/cart/check", json={"items": [
            {"ticket_type_id": "early-bird", "quantity": 151},
        ]})
        assert res.status_code == 200
        assert res.json() == {
            "valid": False,
            "errors": ["Only 150 Early Bird tickets left"],
        }
        res = client.post("/api/cart/check", json={"items": [
            {"ticket_type_id": "early-bird", "quantity": 0},
        ]})
        assert res.status_code == 400

    def test_fees(self, client):
        res = client.get("/api/fees", params={"subtotal": 10000,
                                              "method": "card"})
        assert res.json()["total"] == 10611
        every = client.get("/api/fees", params={"subtotal": 10000}).json()
        assert every["methods"]["paynow"]["total"] == 10200
        assert client.get("/api/fees", params={
            "subtotal": 100, "method": "cheque"
        }).status_code == 400
        assert client.get("/api/fees", params={
            "subtotal": -1
        }).status_code == 400

    def test_unknown_order(self, client):
        res = client.get("/api/orders/MASK-NOPE")
        assert res.status_code == 404
        assert res.json() == {"error": "Order not found"}


class TestPayNow:
    def test_submit(self, client):
        res = buy_paynow(client)
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "pending"
        assert body["total"] == 5100

        order = client.get(f"/api/orders/{body['order_number']}").json()
        assert order["status"] == "pending"
        assert order["tickets"] == []
        assert "admin_notes" not in order

    def test_missing_proof(self, client):
        res = buy_paynow(client, proof=None)
        assert res.status_code == 400
        assert res.json()["error"] == "Please upload your proof of payment"

    def test_bad_details(self, client):
        res = client.post("/api/checkout/paynow", data={
            "name": "", "email": "nope", "phone": "", "items": "[]",
        })
        assert res.status_code == 400
        assert set(res.json()["fields"]) == {"name", "email", "phone"}

    def test_bad_items(self, client):
        res = buy_paynow(client, items=[{"ticket_type_id": "table"}])
        assert res.status_code == 400

    def test_sold_out(self, client):
        res = buy_paynow(client, items=[
            {"ticket_type_id": "table", "quantity": 21},
        ])
        assert res.status_code == 409
        assert res.json()["errors"] == ["Only 20 Table for 4 tickets left"]


class TestCard:
    def test_mockpay_success(self, app, sink):
        with TestClient(app) as client:
            started = start_card(client).json()
            psid = started["payment_session_id"]
            assert started["redirect_url"] == f"/mockpay/{psid}"

            screen = client.get(started["redirect_url"]).json()
            assert screen["state"] == "pending"
            assert screen["amount"] == started["amount"]

            res = client.post(f"/mockpay/{psid}/emit",
                              data={"t": "succeeded"})
            assert res.json()["result"]["order_status"] == "verified"

            order = client.get(
                f"/api/orders/{started['order_number']}"
            ).json()
            assert order["status"] == "verified"
            assert len(order["tickets"]) == 1
            assert order["customer_pays"] == started["amount"]

        # shutdown drains pending notifications
        assert [n.order_number for n in sink.sent] == \
            [started["order_number"]]

    def test_mockpay_failure_releases(self, client):
        started = start_card(client, items=[
            {"ticket_type_id": "table", "quantity": 20},
        ]).json()
        client.post(f"/mockpay/{started['payment_session_id']}/emit",
                    data={"t": "failed"})
        items = {i["id"]: i for i in client.get("/api/inventory").json()
                 ["items"]}
        assert items["table"]["available"] == 20

    def test_webhook_signature(self, app, client):
        mock = app.state.checkout.provider
        started = start_card(client).json()
        payload = mock.build_event(started["payment_session_id"],
                                   "succeeded", started["amount"], "sgd")

        res = client.post("/payments/webhook", content=payload,
                          headers={"x-mockpay-signature": "forged"})
        assert res.status_code == 400

        res = client.post("/payments/webhook", content=payload,
                          headers={"x-mockpay-signature": mock.sign(payload)})
        assert res.json()["order_status"] == "verified"
        res = client.post("/payments/webhook", content=payload,
                          headers={"x-mockpay-signature": mock.sign(payload)})
        assert res.json() == {"ok": True, "idempotent": True}

    def test_sold_out(self, client):
        res = start_card(client, items=[
            {"ticket_type_id": "table", "quantity": 21},
        ])
        assert res.status_code == 409

    def test_unknown_session(self, client):
        assert client.get("/mockpay/ps_nope").status_code == 404


class TestProviderIsolation:
    @pytest.fixture
    def stripe_app(self, settings, sink):
        def handler(request):
            return httpx.Response(200, json={
                "id": "pi_real", "client_secret": "pi_real_secret_1",
            })

        s = replace(settings, payment_provider="stripe",
                    stripe_secret_key="sk_test_123",
                    stripe_webhook_secret="whsec_test")
        return create_app(s, sink=sink,
                          transport=httpx.MockTransport(handler))

    def test_mockpay_cannot_settle_stripe_session(self, stripe_app, sink):
        with TestClient(stripe_app) as client:
            started = start_card(client).json()
            psid = started["payment_session_id"]
            assert started["simulated"] is False
            assert started["client_secret"] == "pi_real_secret_1"

            assert client.get(f"/mockpay/{psid}").status_code == 404
            res = client.post(f"/mockpay/{psid}/emit",
                              data={"t": "succeeded"})
            assert res.status_code == 404

            mock = stripe_app.state.checkout.fallback
            payload = mock.build_event(psid, "succeeded", started["amount"],
                                       "sgd")
            res = client.post("/payments/mockpay/webhook", content=payload,
                              headers={"x-mockpay-signature": mock.sign(payload)})
            assert res.status_code == 409

            res = client.get(f"/api/orders/{started['order_number']}")
            assert res.status_code == 404
            items = {i["id"]: i for i in client.get("/api/inventory").json()
                     ["items"]}
            # still held for the real payment
            assert items["table"]["available"] == 19
        assert sink.sent == []

class TestAdmin:
    def test_requires_login(self, client):
        assert client.get("/api/admin/orders").status_code == 401
        assert login(client, password="wrong").status_code == 401
        assert client.get("/api/admin/orders").status_code == 401
        assert login(client).status_code == 200
        assert client.get("/api/admin/orders").status_code == 200
        client.post("/admin/logout")
        assert client.get("/api/admin/orders").status_code == 401

    def test_verify_and_scan(self, client, sink):
        number = buy_paynow(client).json()["order_number"]
        login(client)
        [order] = client.get("/api/admin/orders").json()["items"]
        assert order["order_number"] == number
        assert order["has_proof"] is True

        proof = client.get(f"/api/admin/orders/{order['id']}/proof")
        assert proof.content == PNG_BYTES
        assert proof.headers["content-type"] == "image/png"

        res = client.post(f"/api/admin/orders/{order['id']}/status",
                          json={"status": "verified"})
        assert res.status_code == 200
        verified = res.json()
        assert verified["status"] == "verified"
        assert len(verified["tickets"]) == 2

        ticket = verified["tickets"][0]
        res = client.post("/api/door/validate",
                          json={"qr": ticket["qr_payload"]})
        assert res.json()["ok"] is True
        res = client.post("/api/door/validate", json={
            "order_number": number, "ticket_id": ticket["ticket_id"],
        })
        assert res.json()["ok"] is False
        assert res.json()["message"].startswith("Ticket already used on")

        scanned = client.get(f"/api/admin/orders/{order['id']}").json()
        assert scanned["tickets"][0]["scanned_by"] == "admin"
        assert scanned["scan_progress"] == \
            {"scanned": 1, "total": 2, "percentage": 50}

    def test_override_required(self, client):
        buy_paynow(client)
        login(client)
        [order] = client.get("/api/admin/orders").json()["items"]
        url = f"/api/admin/orders/{order['id']}/status"
        client.post(url, json={"status": "verified"})

        res = client.post(url, json={"status": "pending"})
        assert res.status_code == 403
        res = client.post(url, json={"status": "pending",
                                     "override_token": "override"})
        assert res.json()["status"] == "pending"

    def test_reports(self, client):
        buy_paynow(client)
        login(client)
        stats = client.get("/api/admin/stats").json()
        assert stats["orders"]["pending"] == 1
        assert stats["inventory"]["total_sold"] == 2

        csv_res = client.get("/api/admin/orders.csv")
        assert csv_res.headers["content-type"].startswith("text/csv")
        assert csv_res.text.splitlines()[0].startswith("Order Number,")

        fin = client.get("/api/admin/financials").json()
        assert fin["orders"] == 0

        recon = client.get("/api/admin/reconcile").json()["items"]
        assert all(r["consistent"] for r in recon)

    def test_inventory_admin(self, client):
        buy_paynow(client, items=[{"ticket_type_id": "table", "quantity": 5}])
        login(client)
        url = "/api/admin/inventory/table/total"
        assert client.post(url, json={"total": 4}).status_code == 409
        res = client.post(url, json={"total": 5})
        assert res.json()["available"] == 0
        assert client.post("/api/admin/inventory/backstage/total",
                           json={"total": 5}).status_code == 404

        assert client.post("/api/admin/inventory/reset").json()["ok"]
        items = client.get("/api/admin/inventory").json()["items"]
        assert {i["id"]: i["sold"] for i in items}["table"] == 0

    def test_delete_restocks(self, client):
        buy_paynow(client)
        login(client)
        [order] = client.get("/api/admin/orders").json()["items"]
        res = client.delete(f"/api/admin/orders/{order['id']}")
        assert res.json()["ok"] is True
        stats = client.get("/api/admin/stats").json()
        assert stats["inventory"]["total_sold"] == 0
        assert stats["orders"]["total"] == 0

    def test_pending_sessions_and_reap(self, client):
        start_card(client)
        login(client)
        pending = client.get("/api/pending").json()
        assert pending["total"] == 1
        assert pending["items"][0]["status"] == "PENDING"
        # nothing is old enough yet
        assert client.post("/api/admin/reap").json() == {"released": 0}

    def test_door_needs_input(self, client):
        login(client)
        res = client.post("/api/door/validate", json={})
        assert res.status_code == 400
        res = client.post("/api/door/validate", json={"qr": "junk"})
        assert res.json()["message"] == "Invalid QR code format"

    def test_timings(self, client):
        buy_paynow(client)
        login(client)
        assert "checkout.paynow" in client.get("/api/admin/timings").json()
        assert client.post("/api/admin/timings/reset").json() == {"ok": True}
