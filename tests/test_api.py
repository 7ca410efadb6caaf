"""HTTP surface of the order service: envelopes, principals and status codes."""

import httpx
import pytest

from factories import MITRA_ID, ORDERER
from order_service import config
from order_service.main import create_app
from order_service.rate_limiting import RateLimitStore

ORDER_BODY = {
    "serviceId": "svc-kurir",
    "ordererIdentifier": ORDERER,
    "details": {
        "pickupAddress": {"address": "Jl. Merdeka 1, Jakarta"},
        "dropoffAddress": {"address": "Jl. Sudirman 10, Jakarta"},
        "distanceKm": 5.2,
    },
}

AS_MITRA = {"X-Principal-Id": MITRA_ID}
AS_USER = {"X-Principal-Id": ORDERER}
AS_SYSTEM = {"X-Principal-Id": "refund-job", "X-Principal-Role": "SYSTEM"}


def as_driver(driver_id="drv-1"):
    return {"X-Principal-Id": driver_id}


@pytest.fixture
def app(session_factory, proof_storage):
    return create_app(session_factory=session_factory, rate_limit_store=RateLimitStore(), proof_storage=proof_storage)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://orders") as client:
        yield client


async def place(client, **overrides):
    response = await client.post("/api/orders", json={**ORDER_BODY, **overrides})
    assert response.status_code == 201, response.text
    return response.json()["data"]["orderId"]


async def assigned_to_driver(client, driver_id="drv-1"):
    order_id = await place(client)
    await client.post(f"/api/mitra/orders/{order_id}/accept", headers=AS_MITRA)
    await client.post(f"/api/mitra/orders/{order_id}/request-driver", headers=AS_MITRA)
    response = await client.post(
        f"/api/mitra/orders/{order_id}/assign-driver", json={"driverId": driver_id}, headers=AS_MITRA,
    )
    assert response.status_code == 200, response.text
    return order_id


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert set(response.json()["rateLimit"]) == {"totalKeys", "activeKeys"}


async def test_place_order_envelope(client):
    response = await client.post("/api/orders", json=ORDER_BODY)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "PENDING"
    assert body["data"]["estimatedCost"] == 20200
    assert body["data"]["costBreakdown"]["distanceFee"] == 18200
    assert response.headers["X-RateLimit-Limit"] == "10"


async def test_cost_estimate(client):
    response = await client.post("/api/orders/cost-estimate", json={
        "serviceId": "svc-kurir",
        "details": ORDER_BODY["details"],
    })
    assert response.status_code == 200
    assert response.json()["data"]["costBreakdown"]["total"] == 20200


async def test_malformed_wa_number(client):
    response = await client.post("/api/orders", json={**ORDER_BODY, "receiverWaNumber": "12345"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_unknown_cargo_is_a_pricing_error(client):
    details = {**ORDER_BODY["details"], "selectedMuatanId": "piano"}
    response = await client.post("/api/orders", json={**ORDER_BODY, "details": details})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_CARGO_SELECTION"


async def test_unknown_service(client):
    response = await client.post("/api/orders", json={**ORDER_BODY, "serviceId": "svc-nope"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SERVICE_NOT_FOUND"


async def test_missing_principal(client):
    order_id = await place(client)
    response = await client.post(f"/api/mitra/orders/{order_id}/accept")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "UNAUTHENTICATED"


async def test_driver_path_must_match_principal(client):
    order_id = await assigned_to_driver(client)
    response = await client.post(f"/api/driver/drv-1/orders/{order_id}/accept", headers=as_driver("drv-2"))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


async def test_invalid_transition(client):
    order_id = await place(client)
    await client.post(f"/api/mitra/orders/{order_id}/accept", headers=AS_MITRA)
    response = await client.post(f"/api/mitra/orders/{order_id}/accept", headers=AS_MITRA)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "INVALID_STATUS_TRANSITION"
    assert error["details"] == {
        "currentStatus": "ACCEPTED_BY_MITRA",
        "requestedStatus": "ACCEPTED_BY_MITRA",
        "actorType": "MITRA",
    }


async def test_stale_expected_version(client):
    order_id = await place(client)
    response = await client.post(f"/api/mitra/orders/{order_id}/accept", json={"expectedVersion": 7}, headers=AS_MITRA)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"


async def test_customer_cancel(client):
    order_id = await place(client)
    response = await client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Changed my mind"}, headers=AS_USER)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "CANCELLED_BY_USER"


async def test_delivery_over_http(client):
    order_id = await assigned_to_driver(client)
    base = f"/api/driver/drv-1/orders/{order_id}"
    headers = as_driver()

    assert (await client.post(f"{base}/accept", headers=headers)).status_code == 200
    response = await client.post(f"{base}/update-status", json={"status": "DRIVER_AT_PICKUP"}, headers=headers)
    assert response.status_code == 200

    upload = await client.post(f"{base}/request-upload-url", json={"filename": "pickup.jpg"}, headers=headers)
    assert upload.status_code == 200
    key = upload.json()["data"]["key"]
    assert key.startswith(f"proofs/{MITRA_ID}/{order_id}/")

    response = await client.post(f"{base}/update-status", json={"status": "PICKED_UP"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PROOF_PHOTO_REQUIRED"

    for step in (
        {"status": "PICKED_UP", "photoKey": key, "location": {"lat": -6.2, "lon": 106.8}},
        {"status": "IN_TRANSIT"},
        {"status": "DRIVER_AT_DROPOFF"},
        {"status": "DELIVERED", "photoKey": key, "photoCaption": "Left with security"},
    ):
        response = await client.post(f"{base}/update-status", json=step, headers=headers)
        assert response.status_code == 200, response.text

    assert response.json()["data"]["finalCost"] == 20200

    tracking = await client.get(f"/api/orders/{order_id}/track")
    assert tracking.status_code == 200
    events = tracking.json()["data"]["events"]
    assert events[0]["eventType"] == "PHOTO_UPLOADED"
    assert events[1]["data"]["newStatus"] == "DELIVERED"
    assert all(event["actorId"] is None for event in events)

    detail = await client.get(f"/api/mitra/orders/{order_id}", headers=AS_MITRA)
    assert detail.json()["data"]["events"][0]["actorId"] == ORDERER


async def test_unsupported_upload_type(client):
    order_id = await assigned_to_driver(client)
    response = await client.post(
        f"/api/driver/drv-1/orders/{order_id}/request-upload-url",
        json={"filename": "notes.pdf", "contentType": "application/pdf"},
        headers=as_driver(),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSUPPORTED_CONTENT_TYPE"


async def test_notes_and_recompute(client):
    order_id = await place(client)

    note = await client.post(f"/api/mitra/orders/{order_id}/add-note", json={"note": "Fragile"}, headers=AS_MITRA)
    assert note.status_code == 200
    assert note.json()["data"]["eventType"] == "NOTE_ADDED"

    response = await client.post(
        f"/api/mitra/orders/{order_id}/recompute-cost", json={"distanceKm": 10}, headers=AS_MITRA,
    )
    assert response.status_code == 200
    assert response.json()["data"]["estimatedCost"] == 37000


async def test_refund_requires_system_role(client):
    order_id = await place(client, talanganAmount=50000, receiverWaNumber="081234567890")
    await client.post(f"/api/mitra/orders/{order_id}/cancel", headers=AS_MITRA)

    denied = await client.post(f"/api/system/orders/{order_id}/refund", headers={"X-Principal-Id": "refund-job"})
    assert denied.status_code == 403

    # A caller cannot promote itself with the role header unless the deployment trusts it
    spoofed = await client.post(f"/api/system/orders/{order_id}/refund", headers=AS_SYSTEM)
    assert spoofed.status_code == 403
    assert spoofed.json()["error"]["code"] == "FORBIDDEN"


async def test_refund_with_trusted_role_header(client, monkeypatch):
    monkeypatch.setattr(config, "TRUST_PRINCIPAL_ROLE_HEADER", True)
    order_id = await place(client, talanganAmount=50000, receiverWaNumber="081234567890")
    await client.post(f"/api/mitra/orders/{order_id}/cancel", headers=AS_MITRA)

    response = await client.post(f"/api/system/orders/{order_id}/refund", headers=AS_SYSTEM)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "REFUNDED"


async def test_refund_with_gateway_role(app, client):
    @app.middleware("http")
    async def gateway(request, call_next):
        if request.url.path.startswith("/api/system/"):
            request.state.principal_role = "SYSTEM"
        return await call_next(request)

    order_id = await place(client, talanganAmount=50000, receiverWaNumber="081234567890")
    await client.post(f"/api/mitra/orders/{order_id}/cancel", headers=AS_MITRA)

    response = await client.post(f"/api/system/orders/{order_id}/refund", headers={"X-Principal-Id": "refund-job"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "REFUNDED"


async def test_tracking_unknown_order(client):
    response = await client.get("/api/orders/nope/track")

    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": {"code": "ORDER_NOT_FOUND", "message": "Order nope not found"},
    }


async def test_order_placement_is_rate_limited(client):
    for _ in range(10):
        await place(client)

    response = await client.post("/api/orders", json=ORDER_BODY)

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert "Retry-After" in response.headers


@pytest.mark.parametrize("method, path, status_code, code", [
    ("GET", "/api/orders/abc/cancel", 405, "METHOD_NOT_ALLOWED"),
    ("GET", "/api/nowhere", 404, "NOT_FOUND"),
])
async def test_routing_errors_use_error_envelope(client, method, path, status_code, code):
    response = await client.request(method, path)

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert "detail" not in body


async def test_mitra_order_list(client):
    first = await place(client)
    second = await place(client)
    await client.post(f"/api/mitra/orders/{first}/accept", headers=AS_MITRA)

    response = await client.get("/api/mitra/orders", params={"status": "PENDING", "limit": 1}, headers=AS_MITRA)
    assert response.status_code == 200
    data = response.json()["data"]
    assert [order["orderId"] for order in data["orders"]] == [second]
    assert (data["page"], data["limit"], data["hasMore"]) == (1, 1, False)

    everything = await client.get("/api/mitra/orders", headers=AS_MITRA)
    assert [order["orderId"] for order in everything.json()["data"]["orders"]] == [second, first]

    other = await client.get("/api/mitra/orders", headers={"X-Principal-Id": "mitra-2"})
    assert other.json()["data"]["orders"] == []


async def test_mitra_order_list_rejects_bad_query(client):
    response = await client.get("/api/mitra/orders", params={"limit": 500}, headers=AS_MITRA)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_driver_assigned_orders(client):
    order_id = await assigned_to_driver(client)

    response = await client.get("/api/driver/drv-1/orders/assigned", headers=as_driver())
    assert response.status_code == 200
    orders = response.json()["data"]
    assert [order["orderId"] for order in orders] == [order_id]
    assert orders[0]["status"] == "DRIVER_ASSIGNED"
    assert orders[0]["serviceAlias"] == "Kurir Kilat"

    idle = await client.get("/api/driver/drv-2/orders/assigned", headers=as_driver("drv-2"))
    assert idle.json()["data"] == []

    peek = await client.get("/api/driver/drv-1/orders/assigned", headers=as_driver("drv-2"))
    assert peek.status_code == 403
