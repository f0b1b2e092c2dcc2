"""HTTP API"""

import asyncio
import logging

import httpx
import pytest
import pytest_asyncio

from app.config import Settings
from app import main
from app.main import create_app


@pytest_asyncio.fixture
async def client(session_factory, gateway, notifier, publisher):
    app = create_app(
        Settings(),
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
        publisher=publisher,
    )
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://checkout.test") as client:
            yield client


@pytest.fixture
def checkout_body():
    def _body(product_id: str, quantity: int = 1, payment_method: str = "cod", **item) -> dict:
        return {
            "customer": {"name": "Asha Rao", "email": "asha.rao@gmail.com", "phone": "9876543210"},
            "shipping_address": {
                "line1": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "postal_code": "560001",
            },
            "items": [{"product_id": product_id, "quantity": quantity, **item}],
            "payment_method": payment_method,
        }

    return _body


@pytest.fixture
def catalog(seed_product, seed_variant):
    async def _seed(stock=5):
        product_id = await seed_product()
        variant_id = await seed_variant(product_id, label="i5 / 8GB", price="500.00", stock=stock)
        return product_id, variant_id

    return _seed


class TestCheckoutEndpoint:
    async def test_cod_checkout(self, client, catalog, checkout_body):
        product_id, variant_id = await catalog()

        resp = await client.post("/api/checkout", json=checkout_body(product_id, 2))

        assert resp.status_code == 201
        body = resp.json()
        assert body["total"] == 1180.0
        assert body["currency"] == "INR"
        assert body["payment_method"] == "cod"
        assert "gateway_intent" not in body
        assert "saga_log" not in body

        stock = await client.get(f"/queries/variants/{variant_id}/stock")
        assert stock.json()["stock"] == 3

    async def test_online_checkout_returns_intent(self, client, gateway, catalog, checkout_body):
        product_id, _ = await catalog()

        resp = await client.post("/api/checkout", json=checkout_body(product_id, 1, "online"))

        assert resp.status_code == 201
        intent = resp.json()["gateway_intent"]
        assert intent["amount"] == 59000
        assert intent["key"] == gateway.key_id

    async def test_insufficient_stock(self, client, catalog, checkout_body):
        product_id, _ = await catalog(stock=1)

        resp = await client.post("/api/checkout", json=checkout_body(product_id, 2))

        assert resp.status_code == 409
        assert resp.json() == {
            "error": "insufficient_stock",
            "message": "Requested quantity exceeds available stock. Please reduce the quantity",
        }

    async def test_unknown_variant(self, client, catalog, checkout_body):
        product_id, _ = await catalog()

        resp = await client.post("/api/checkout", json=checkout_body(product_id, 1, variant="i9 / 64GB"))

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_variant_selection"

    async def test_gateway_failure(self, client, gateway, catalog, checkout_body):
        product_id, variant_id = await catalog()
        gateway.configure(should_succeed=False)

        resp = await client.post("/api/checkout", json=checkout_body(product_id, 1, "online"))

        assert resp.status_code == 502
        assert resp.json()["error"] == "gateway_error"
        stock = await client.get(f"/queries/variants/{variant_id}/stock")
        assert stock.json()["stock"] == 5

    @pytest.mark.parametrize(
        "patch",
        [
            {"customer": {"name": "A", "email": "asha.rao@gmail.com", "phone": "9876543210"}},
            {"customer": {"name": "Asha", "email": "not-an-email", "phone": "9876543210"}},
            {"payment_method": "cheque"},
            {"items": []},
            {"items": [{"product_id": "p", "quantity": 11}]},
        ],
    )
    async def test_request_validation(self, client, checkout_body, patch):
        body = checkout_body("p")
        body.update(patch)

        resp = await client.post("/api/checkout", json=body)

        assert resp.status_code == 422


class TestVerifyEndpoint:
    async def test_verify(self, client, gateway, catalog, checkout_body):
        product_id, _ = await catalog()
        placed = (await client.post("/api/checkout", json=checkout_body(product_id, 1, "online"))).json()
        intent_id = placed["gateway_intent"]["intent_id"]

        resp = await client.post(
            "/api/checkout/verify",
            json={
                "order_id": placed["order_id"],
                "gateway_order_id": intent_id,
                "gateway_payment_id": "pay_001",
                "signature": gateway.sign(intent_id, "pay_001"),
            },
        )

        assert resp.status_code == 200
        assert resp.json() == {"message": "Payment verified"}

    async def test_bad_signature(self, client, catalog, checkout_body):
        product_id, _ = await catalog()
        placed = (await client.post("/api/checkout", json=checkout_body(product_id, 1, "online"))).json()

        resp = await client.post(
            "/api/checkout/verify",
            json={
                "order_id": placed["order_id"],
                "gateway_order_id": placed["gateway_intent"]["intent_id"],
                "gateway_payment_id": "pay_001",
                "signature": "forged",
            },
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "signature_invalid"

    async def test_unknown_order(self, client):
        resp = await client.post(
            "/api/checkout/verify",
            json={"order_id": "missing", "gateway_order_id": "o", "gateway_payment_id": "p", "signature": "s"},
        )

        assert resp.status_code == 404


class TestClientDisconnect:
    async def test_saga_failure_after_disconnect_is_logged(
        self, session_factory, gateway, notifier, publisher, checkout_body, caplog
    ):
        started = asyncio.Event()
        finish = asyncio.Event()

        class StalledSaga:
            async def place_order(self, **kwargs):
                started.set()
                await finish.wait()
                raise RuntimeError("gateway timed out")

        app = create_app(
            Settings(), session_factory=session_factory, gateway=gateway, notifier=notifier, publisher=publisher
        )
        async with app.router.lifespan_context(app):
            app.state.orchestrator = StalledSaga()
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://checkout.test") as client:
                request = asyncio.ensure_future(client.post("/api/checkout", json=checkout_body("p-1")))
                await started.wait()
                request.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await request

            [saga] = main._detached_sagas
            with caplog.at_level(logging.ERROR, logger="app.main"):
                finish.set()
                await asyncio.gather(saga, return_exceptions=True)

        assert main._detached_sagas == set()
        [record] = [r for r in caplog.records if r.name == "app.main"]
        assert record.getMessage() == "Checkout saga failed after client disconnected"
        assert isinstance(record.exc_info[1], RuntimeError)

    async def test_cancelled_saga_is_not_logged(self, caplog):
        saga = asyncio.ensure_future(asyncio.sleep(10))
        main._detached_sagas.add(saga)
        saga.add_done_callback(main._log_detached_saga)

        with caplog.at_level(logging.ERROR, logger="app.main"):
            saga.cancel()
            await asyncio.gather(saga, return_exceptions=True)

        assert main._detached_sagas == set()
        assert [r for r in caplog.records if r.name == "app.main"] == []


async def test_health(client):
    resp = await client.get("/health")

    assert resp.json() == {"status": "ok", "service": "checkout-service"}
