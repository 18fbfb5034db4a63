import hashlib
import json

import httpx
import pytest

from conftest import create_product, create_user, stock_of
from shop.main import create_app

pytestmark = pytest.mark.anyio

SERVER_KEY = "SB-Mid-server-test"


def _snap(request: httpx.Request) -> httpx.Response:
    if request.method == "GET":
        return httpx.Response(200, json={"transaction_status": "pending"})
    order_number = json.loads(request.content)["transaction_details"]["order_id"]
    return httpx.Response(
        201,
        json={"token": f"snap-{order_number}", "redirect_url": f"https://pay/{order_number}"},
    )


@pytest.fixture
def app(settings, engine, redis):
    return create_app(
        settings.model_copy(update={"gateway_server_key": SERVER_KEY}),
        engine=engine,
        redis=redis,
        gateway_transport=httpx.MockTransport(_snap),
    )


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


def _auth(app, user_id, role="user", email="u@example.com"):
    token = app.state.tokens.issue(user_id, email, role)
    return {"Authorization": f"Bearer {token}"}


async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_register_login_me_refresh(client):
    resp = await client.post(
        "/auth/register",
        json={
            "username": "alice",
            "email": "alice@example.com",
            "password": "secret123",
            "full_name": "Alice Example",
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["token_type"] == "Bearer"
    assert body["user"]["email"] == "alice@example.com"
    assert "password_hash" not in body["user"]

    resp = await client.post(
        "/auth/login", json={"email": "alice@example.com", "password": "secret123"}
    )
    assert resp.status_code == 200
    headers = {"Authorization": f"Bearer {resp.json()['token']}"}

    me = await client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["username"] == "alice"

    refreshed = await client.post("/auth/refresh", headers=headers)
    assert refreshed.status_code == 200
    assert refreshed.json()["token"]

    assert (await client.post("/auth/logout", headers=headers)).status_code == 200


async def test_login_with_wrong_password(client, session_factory):
    await create_user(session_factory, email="bob@example.com")

    resp = await client.post(
        "/auth/login", json={"email": "bob@example.com", "password": "wrong-password"}
    )

    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == "bad_credentials"


async def test_identity_sign_in(client, session_factory):
    identity = {"external_id": "g-42", "email": "gina@example.com", "name": "Gina"}

    first = await client.post("/auth/identity/google", json=identity)
    assert first.status_code == 200
    assert first.json()["token_type"] == "Bearer"
    assert first.json()["user"]["email"] == "gina@example.com"

    again = await client.post("/auth/identity/google", json=identity)
    assert again.json()["user"]["id"] == first.json()["user"]["id"]

    me = await client.get(
        "/auth/me", headers={"Authorization": f"Bearer {again.json()['token']}"}
    )
    assert me.json()["oauth_provider"] == "google"

    await create_user(session_factory, email="pat@example.com")
    taken = await client.post(
        "/auth/identity/facebook",
        json={"external_id": "f-1", "email": "pat@example.com", "name": "Pat"},
    )
    assert taken.status_code == 409

    unknown = await client.post("/auth/identity/myspace", json=identity)
    assert unknown.status_code == 400


async def test_register_validation_error(client):
    resp = await client.post("/auth/register", json={"username": "x", "email": "nope"})

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "validation"


@pytest.mark.parametrize(
    "headers, code",
    [
        ({}, "missing_token"),
        ({"Authorization": "Bearer not-a-token"}, "bad_format"),
        ({"Authorization": "Token abc"}, "missing_token"),
    ],
)
async def test_orders_require_token(client, headers, code):
    resp = await client.get("/orders", headers=headers)

    assert resp.status_code == 401
    assert resp.json()["detail"]["code"] == code


async def test_order_lifecycle(app, client, session_factory):
    user_id = await create_user(session_factory)
    other_id = await create_user(session_factory)
    product_id = await create_product(session_factory, price="100", stock=5)
    headers = _auth(app, user_id)

    resp = await client.post(
        "/orders",
        json={"order_items": [{"product_id": product_id, "quantity": 2}], "notes": "ring twice"},
        headers=headers,
    )
    assert resp.status_code == 201
    order = resp.json()
    assert order["status"] == "pending"
    assert float(order["total_amount"]) == 200
    assert await stock_of(session_factory, product_id) == 3

    listing = (await client.get("/orders", headers=headers)).json()
    assert listing["pagination"]["total"] == 1
    assert listing["data"][0]["items"][0]["quantity"] == 2

    assert (await client.get(f"/orders/{order['id']}", headers=headers)).status_code == 200
    forbidden = await client.get(f"/orders/{order['id']}", headers=_auth(app, other_id))
    assert forbidden.status_code == 403
    assert (await client.get("/orders/missing", headers=headers)).status_code == 404

    cancelled = await client.put(f"/orders/{order['id']}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert await stock_of(session_factory, product_id) == 5

    again = await client.delete(f"/orders/{order['id']}", headers=headers)
    assert again.status_code == 400
    assert again.json()["detail"]["code"] == "invalid_transition"


async def test_create_order_errors(app, client, session_factory):
    user_id = await create_user(session_factory)
    product_id = await create_product(session_factory, stock=1)
    headers = _auth(app, user_id)

    empty = await client.post("/orders", json={"order_items": []}, headers=headers)
    assert empty.status_code == 400

    too_many = await client.post(
        "/orders", json={"order_items": [{"product_id": product_id, "quantity": 3}]}, headers=headers
    )
    assert too_many.status_code == 400
    assert too_many.json()["detail"]["code"] == "insufficient_stock"

    missing = await client.post(
        "/orders", json={"order_items": [{"product_id": "nope", "quantity": 1}]}, headers=headers
    )
    assert missing.status_code == 404


async def test_status_update_is_admin_only(app, client, session_factory):
    user_id = await create_user(session_factory)
    admin_id = await create_user(session_factory, role="admin")
    product_id = await create_product(session_factory, stock=5)
    order = (
        await client.post(
            "/orders",
            json={"order_items": [{"product_id": product_id, "quantity": 1}]},
            headers=_auth(app, user_id),
        )
    ).json()

    denied = await client.put(
        f"/orders/{order['id']}/status", json={"status": "processing"}, headers=_auth(app, user_id)
    )
    assert denied.status_code == 403

    admin = _auth(app, admin_id, role="admin")
    invalid = await client.put(
        f"/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin
    )
    assert invalid.status_code == 400

    unknown = await client.put(
        f"/orders/{order['id']}/status", json={"status": "lost"}, headers=admin
    )
    assert unknown.status_code == 400

    ok = await client.put(
        f"/orders/{order['id']}/status", json={"status": "processing"}, headers=admin
    )
    assert ok.status_code == 200
    assert ok.json()["status"] == "processing"

    everything = (await client.get("/orders", headers=admin)).json()
    assert everything["pagination"]["total"] == 1


async def test_payment_flow(app, client, session_factory):
    user_id = await create_user(session_factory)
    product_id = await create_product(session_factory, price="100", stock=5)
    headers = _auth(app, user_id)

    resp = await client.post(
        "/payments/create",
        json={
            "order_items": [{"product_id": product_id, "quantity": 2}],
            "payment_method": "credit_card",
        },
        headers=headers,
    )
    assert resp.status_code == 201
    payment = resp.json()
    assert payment["amount"] == 200
    assert payment["snap_token"] == f"snap-{payment['order_number']}"

    body = {
        "order_id": payment["order_number"],
        "status_code": "200",
        "gross_amount": "200.00",
        "transaction_status": "settlement",
    }
    raw = body["order_id"] + body["status_code"] + body["gross_amount"] + SERVER_KEY
    body["signature_key"] = hashlib.sha512(raw.encode()).hexdigest()

    hook = await client.post("/payments/notification", content=json.dumps(body))
    assert hook.status_code == 200
    assert hook.json()["payment_status"] == "success"
    assert hook.json()["status"] == "processing"

    history = (await client.get("/payments/history", headers=headers)).json()
    assert history["data"][0]["payment_status"] == "success"
    assert history["data"][0]["items"] == []


async def test_payment_create_requires_method(app, client, session_factory):
    user_id = await create_user(session_factory)
    product_id = await create_product(session_factory)

    resp = await client.post(
        "/payments/create",
        json={"order_items": [{"product_id": product_id, "quantity": 1}]},
        headers=_auth(app, user_id),
    )

    assert resp.status_code == 400


@pytest.mark.parametrize(
    "content, status",
    [
        (b"{broken", 400),
        (b"{}", 400),
        (
            json.dumps(
                {
                    "order_id": "ORD-1",
                    "status_code": "200",
                    "gross_amount": "1.00",
                    "transaction_status": "settlement",
                    "signature_key": "forged",
                }
            ).encode(),
            401,
        ),
    ],
)
async def test_notification_rejects_bad_input(client, content, status):
    resp = await client.post("/payments/notification", content=content)

    assert resp.status_code == status


async def test_payment_status(app, client, session_factory):
    user_id = await create_user(session_factory)
    other_id = await create_user(session_factory)
    product_id = await create_product(session_factory)
    order = (
        await client.post(
            "/orders",
            json={"order_items": [{"product_id": product_id, "quantity": 1}]},
            headers=_auth(app, user_id),
        )
    ).json()

    resp = await client.get(f"/payments/status/{order['order_number']}", headers=_auth(app, user_id))
    assert resp.status_code == 200
    assert resp.json()["order"]["order_number"] == order["order_number"]
    assert resp.json()["midtrans_status"] == {"transaction_status": "pending"}

    denied = await client.get(
        f"/payments/status/{order['order_number']}", headers=_auth(app, other_id)
    )
    assert denied.status_code == 403


async def test_rate_limit(settings, engine, redis):
    app = create_app(
        settings.model_copy(
            update={"ratelimit_enabled": True, "ratelimit_requests": 2, "ratelimit_period": 60}
        ),
        engine=engine,
        redis=redis,
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        first = await client.get("/orders")
        await client.get("/orders")
        limited = await client.get("/orders")
        health = await client.get("/health")

    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "60"
    assert health.status_code == 200
