from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from repaircoin_api.core.settings import settings
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.shop import Shop


CUSTOMER = "0x1234567890abcdef1234567890abcdef12345678"
SIGNATURE = "0x" + "cd" * 65


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        session.add(Shop(shop_id="shop001", name="Fix-It", active=True, verified=True))
        session.add(Shop(shop_id="shop002", name="Screen Doctor", active=True, verified=True))
        session.add(
            Customer(
                address=CUSTOMER,
                lifetime_earnings=Decimal("100"),
                total_redemptions=Decimal("30"),
                pending_mint_balance=Decimal("10"),
            )
        )
        await session.commit()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_redemption_session_http_flow(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER.upper().replace("0X", "0x"), "shopId": "shop001", "amount": "40"},
        )
        assert created.status_code == 201
        session_payload = created.json()
        assert session_payload["status"] == "pending"
        assert session_payload["customerAddress"] == CUSTOMER
        assert session_payload["maxAmount"] == 40.0
        session_id = session_payload["sessionId"]

        fetched = await client.get(f"/api/v1/redemption-sessions/{session_id}")
        assert fetched.status_code == 200
        assert fetched.json()["sessionId"] == session_id

        approved = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/approve",
            json={"signature": SIGNATURE, "transactionHash": "0xbeef"},
            headers={"X-Customer-Address": CUSTOMER},
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert approved.json()["metadata"]["transactionHash"] == "0xbeef"

        consumed = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/consume",
            json={"shopId": "shop001"},
        )
        assert consumed.status_code == 200
        body = consumed.json()
        assert body["session"]["status"] == "used"
        assert body["amount"] == 40.0
        assert body["remainingBalance"] == 20.0
        assert body["transactionId"]

        replay = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/consume",
            json={"shopId": "shop001"},
        )
        assert replay.status_code == 409
        assert replay.json()["detail"]["kind"] == "invalid_state"

        balance = await client.get(f"/api/v1/customers/{CUSTOMER}/balance")
        assert balance.json()["availableBalance"] == 20.0
        assert balance.json()["totalRedemptions"] == 70.0


@pytest.mark.asyncio
async def test_approve_requires_owning_customer(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        created = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "10"},
        )
        session_id = created.json()["sessionId"]

        missing = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/approve",
            json={"signature": SIGNATURE},
        )
        assert missing.status_code == 401

        malformed = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/approve",
            json={"signature": SIGNATURE},
            headers={"X-Customer-Address": "not-a-wallet"},
        )
        assert malformed.status_code == 400

        stranger = await client.post(
            f"/api/v1/redemption-sessions/{session_id}/approve",
            json={"signature": SIGNATURE},
            headers={"X-Customer-Address": "0x" + "f" * 40},
        )
        assert stranger.status_code == 403
        assert stranger.json()["detail"]["kind"] == "forbidden"

        unknown = await client.post(
            "/api/v1/redemption-sessions/does-not-exist/approve",
            json={"signature": SIGNATURE},
            headers={"X-Customer-Address": CUSTOMER},
        )
        assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_create_rejects_amount_above_balance(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "75"},
        )

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["kind"] == "insufficient_balance"
    assert detail["deficit"] == pytest.approx(15.0)


@pytest.mark.asyncio
async def test_reject_and_cancel_endpoints(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        first = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "5"},
        )
        second = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop002", "amount": "5"},
        )

        rejected = await client.post(
            f"/api/v1/redemption-sessions/{first.json()['sessionId']}/reject",
            headers={"X-Customer-Address": CUSTOMER},
        )
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"

        foreign = await client.post(
            f"/api/v1/redemption-sessions/{second.json()['sessionId']}/cancel",
            json={"shopId": "shop001"},
        )
        assert foreign.status_code == 403

        cancelled = await client.post(
            f"/api/v1/redemption-sessions/{second.json()['sessionId']}/cancel",
            json={"shopId": "shop002"},
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["metadata"]["cancelledByShop"] is True

        pending = await client.get("/api/v1/shops/shop002/redemption-sessions/pending")
        assert pending.status_code == 200
        assert pending.json() == []


@pytest.mark.asyncio
async def test_customer_session_listing_filters_active(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        kept = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "5"},
        )
        dropped = await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop002", "amount": "5"},
        )
        await client.post(
            f"/api/v1/redemption-sessions/{dropped.json()['sessionId']}/reject",
            headers={"X-Customer-Address": CUSTOMER},
        )

        everything = await client.get(f"/api/v1/customers/{CUSTOMER}/redemption-sessions")
        active = await client.get(
            f"/api/v1/customers/{CUSTOMER}/redemption-sessions",
            params={"activeOnly": "true"},
        )
        pending = await client.get("/api/v1/shops/shop001/redemption-sessions/pending")
        unknown_shop = await client.get("/api/v1/shops/shop404/redemption-sessions/pending")

    assert len(everything.json()) == 2
    assert [item["sessionId"] for item in active.json()] == [kept.json()["sessionId"]]
    assert [item["sessionId"] for item in pending.json()] == [kept.json()["sessionId"]]
    assert unknown_shop.status_code == 404


@pytest.mark.asyncio
async def test_shop_endpoints_require_api_key(app_with_db, monkeypatch) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)
    monkeypatch.setattr(settings, "shop_api_key", "shop-secret")

    async with _client(app) as client:
        denied = await client.post(
            "/api/v1/redemption-sessions/validate",
            json={"customerAddress": CUSTOMER, "amount": "5"},
        )
        wrong = await client.post(
            "/api/v1/redemption-sessions/validate",
            json={"customerAddress": CUSTOMER, "amount": "5"},
            headers={"X-API-Key": "guess"},
        )
        allowed = await client.post(
            "/api/v1/redemption-sessions/validate",
            json={"customerAddress": CUSTOMER, "amount": "5"},
            headers={"X-API-Key": "shop-secret"},
        )
        snapshot = await client.get("/api/v1/observability/redemptions")

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "Invalid API key"
    assert allowed.status_code == 200
    assert allowed.json()["approvable"] is True
    assert snapshot.status_code == 401


@pytest.mark.asyncio
async def test_observability_reports_transitions_and_failures(app_with_db) -> None:
    app, session_factory = app_with_db
    await _seed(session_factory)

    async with _client(app) as client:
        await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "5"},
        )
        await client.post(
            "/api/v1/redemption-sessions",
            json={"customerAddress": CUSTOMER, "shopId": "shop001", "amount": "5"},
        )

        snapshot = await client.get("/api/v1/observability/redemptions")
        metrics = await client.get("/api/v1/observability/prometheus")

    assert snapshot.status_code == 200
    payload = snapshot.json()
    assert payload["transitions"] == {"pending": 1}
    assert payload["failures"] == {"invalid_state": 1}

    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    assert 'repaircoin_redemption_session_transitions_total{status="pending"} 1' in metrics.text
    assert 'repaircoin_redemption_failures_total{kind="invalid_state"} 1' in metrics.text


@pytest.mark.asyncio
async def test_health_and_readiness(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        health = await client.get("/healthz")
        ready = await client.get("/api/v1/readyz")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert ready.status_code == 200
    body = ready.json()
    assert body["status"] == "ready"
    assert body["components"]["database"]["status"] == "ready"
    assert body["components"]["redemption_sweep"]["status"] == "disabled"
