import pytest
from fastapi.testclient import TestClient

from stockledger.app.api.deps import get_db
from stockledger.app.main import app


@pytest.fixture
def client(session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def variant(client):
    product = client.post("/v1/products", json={"name": "API Tee"}).json()
    r = client.post("/v1/variants", json={"product_id": product["id"], "sku": "API-TEE-M", "opening_stock": 10})
    assert r.status_code == 201
    return r.json()


def test_health(client, engine):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "database": engine.dialect.name}


def test_catalog_endpoints(client, variant):
    assert variant["available_stock"] == 10
    assert variant["reserved_stock"] == 0

    dup = client.post("/v1/variants", json={"product_id": variant["product_id"], "sku": "API-TEE-M"})
    assert dup.status_code == 400
    assert dup.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    missing = client.post("/v1/variants", json={"product_id": 999, "sku": "API-TEE-L"})
    assert missing.status_code == 404

    stock = client.get("/v1/stock").json()
    assert [s["sku"] for s in stock] == ["API-TEE-M"]
    assert client.get("/v1/products").json()[0]["name"] == "API Tee"


def test_order_lifecycle(client, variant):
    preview = client.get("/v1/orders/next-id").json()
    order = client.post("/v1/orders", json={"notes": "web"}).json()
    assert order["readable_id"] == preview["preview_id"]
    assert preview["sequence"] == 101

    r = client.post(
        "/v1/stock-movements/reserve",
        json={"order_id": order["id"], "items": [{"variant_id": variant["id"], "quantity": 4}]},
        headers={"X-Actor": "web"},
    )
    assert r.status_code == 200
    assert r.json()["items"][0]["new_stock"] == 6

    r = client.post(
        "/v1/stock-movements/confirm",
        json={"order_id": order["id"], "variant_id": variant["id"], "quantity": 4},
    )
    assert r.status_code == 200
    assert r.json()["items"][0]["new_reserved"] == 0

    r = client.post(
        "/v1/stock-movements/restore",
        json={"order_id": order["id"], "items": [{"variant_id": variant["id"], "quantity": 4}]},
    )
    assert r.status_code == 200
    assert r.json()["skipped"] == [variant["id"]]

    movements = client.get("/v1/stock-movements", params={"order_id": order["id"]}).json()
    assert [m["movement_type"] for m in movements] == ["confirmed", "sold"]
    assert movements[1]["created_by"] == "web"
    assert movements[0]["reserved_delta"] == -4

    report = client.get(f"/v1/stock/{variant['id']}/reconcile").json()
    assert report["balanced"] is True
    assert report["replayed_available"] == 6


def test_failures_map_to_status_codes(client, variant):
    r = client.post("/v1/stock-movements/reserve", json={"items": [{"variant_id": variant["id"], "quantity": 11}]})
    assert r.status_code == 409
    body = r.json()
    assert body["success"] is False
    assert body["error_code"] == "INSUFFICIENT_STOCK"
    assert body["errors"][0]["shortfall"] == 1

    r = client.post("/v1/stock-movements/reserve", json={"items": []})
    assert r.status_code == 400

    r = client.post(
        "/v1/stock-movements/adjust",
        json={"variant_id": variant["id"], "quantity_delta": 5, "reason": "ok"},
    )
    assert r.status_code == 400

    r = client.post(
        "/v1/stock-movements/adjust-batch",
        json={"adjustments": [{"variant_id": variant["id"], "quantity": -20, "reason": "Shrinkage"}]},
    )
    assert r.status_code == 409
    assert r.json()["processed_before_failure"] == 0

    r = client.post("/v1/stock-movements/confirm", json={"order_id": 1, "variant_id": variant["id"], "quantity": 1})
    assert r.status_code == 404

    assert client.get("/v1/stock/9999/reconcile").status_code == 404

    # nothing above touched the balance
    stock = client.get("/v1/stock").json()[0]
    assert (stock["available_stock"], stock["reserved_stock"]) == (10, 0)


def test_adjust_endpoints(client, variant):
    r = client.post(
        "/v1/stock-movements/adjust",
        json={"variant_id": variant["id"], "quantity_delta": -3, "reason": "Damaged"},
        headers={"X-Actor": "alice"},
    )
    assert r.status_code == 200
    assert r.json()["items"][0]["new_stock"] == 7

    r = client.post(
        "/v1/stock-movements/adjust-batch",
        json={"adjustments": [{"variant_id": variant["id"], "quantity": 2}]},
    )
    assert r.status_code == 200
    assert r.json()["items"][0]["new_stock"] == 9

    latest = client.get("/v1/stock-movements", params={"variant_id": variant["id"], "limit": 1}).json()
    assert latest[0]["reason"] == "Batch adjustment"


def test_readable_id_patch(client):
    legacy = client.post("/v1/orders", json={"readable_id": "LEGACY-0042"}).json()

    ok = client.patch(f"/v1/orders/{legacy['id']}", json={"readable_id": "26-02-05-140"})
    assert ok.status_code == 200
    assert ok.json()["order"]["readable_id"] == "26-02-05-140"

    refused = client.patch(f"/v1/orders/{legacy['id']}", json={"readable_id": "26-02-05-141"})
    assert refused.status_code == 409
    assert refused.json()["error_code"] == "IMMUTABLE_FIELD_VIOLATION"

    assert client.patch("/v1/orders/9999", json={"readable_id": "26-02-05-1"}).status_code == 404


def test_malformed_items_get_a_structured_result(client, variant):
    r = client.post("/v1/stock-movements/reserve", json={"items": [{"variant_id": "not-a-number", "quantity": 1}]})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error_code"] == "VALIDATION_ERROR"
    assert "position 1" in body["message"]

    r = client.post("/v1/stock-movements/restore", json={"items": ["junk"]})
    assert r.status_code == 400
    assert r.json()["error_code"] == "VALIDATION_ERROR"

    r = client.post("/v1/stock-movements/adjust-batch", json={})
    assert r.status_code == 400
    assert r.json()["error_code"] == "VALIDATION_ERROR"


def test_store_counter_endpoints(client, variant):
    r = client.post(
        "/v1/stock-movements/sale",
        json={"items": [{"variant_id": variant["id"], "quantity": 3}]},
        headers={"X-Actor": "till-1"},
    )
    assert r.status_code == 200
    assert r.json()["items"][0]["new_stock"] == 7

    r = client.post("/v1/stock-movements/sale", json={"items": [{"variant_id": variant["id"], "quantity": 8}]})
    assert r.status_code == 409
    assert r.json()["error_code"] == "INSUFFICIENT_STOCK"

    r = client.post("/v1/stock-movements/return", json={"variant_id": variant["id"], "quantity": 1})
    assert r.status_code == 200
    assert r.json()["items"][0]["new_stock"] == 8

    history = client.get("/v1/stock-movements", params={"variant_id": variant["id"]}).json()
    assert [m["movement_type"] for m in history[:2]] == ["return", "sale"]
    assert client.get(f"/v1/stock/{variant['id']}/reconcile").json()["balanced"] is True
