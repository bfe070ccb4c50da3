"""API tests for the v1 distribution, gate and progression routers.

Uses a FastAPI app with only the v1 router mounted and in-memory services on
app.state (see conftest.api_client).
"""

from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.dealflow.errors import DealCreationError


async def _seed(client: AsyncClient) -> dict[str, str]:
    """Register L1 and two buyers, distribute to both. Returns buyer ids."""
    resp = await client.post("/api/v1/listings", json={"listing_id": "L1"})
    assert resp.status_code == 201

    ids = {}
    for label in ("a", "b"):
        resp = await client.post("/api/v1/buyers", json={"email": f"{label}@example.com"})
        assert resp.status_code == 201
        ids[label] = resp.json()["id"]

    resp = await client.post(
        "/api/v1/listings/L1/distributions",
        json={"recipient_ids": [ids["a"], ids["b"]]},
    )
    assert resp.status_code == 201
    return ids


# ── Distributions ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_distribution_defaults_to_listing_type(api_client):
    await api_client.post("/api/v1/listings", json={"listing_id": "L1", "listing_type": "PUBLIC"})
    buyer = (await api_client.post("/api/v1/buyers", json={"email": "x@example.com"})).json()

    resp = await api_client.post(
        "/api/v1/listings/L1/distributions", json={"recipient_ids": [buyer["id"]]}
    )

    assert resp.status_code == 201
    data = resp.json()
    assert data["listing_type"] == "PUBLIC"
    assert [r["buyer_id"] for r in data["recipients"]] == [buyer["id"]]


@pytest.mark.asyncio
async def test_create_distribution_empty_ids_rejected(api_client):
    await api_client.post("/api/v1/listings", json={"listing_id": "L1"})
    resp = await api_client.post("/api/v1/listings/L1/distributions", json={"recipient_ids": []})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_distribution_unknown_listing(api_client):
    resp = await api_client.post(
        "/api/v1/listings/L404/distributions", json={"recipient_ids": ["x"]}
    )
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "NotFoundError"


@pytest.mark.asyncio
async def test_add_recipients_by_email(api_client):
    await _seed(api_client)
    distribution = (await api_client.get("/api/v1/listings/L1/distributions")).json()[0]

    resp = await api_client.post(
        f"/api/v1/distributions/{distribution['id']}/recipients",
        json={"emails": ["new@example.com", "broken"]},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert [a["email"] for a in data["added"]] == ["new@example.com"]
    assert data["errors"] == [{"email": "broken", "reason": "Invalid email format"}]


@pytest.mark.asyncio
async def test_add_recipients_by_id(api_client):
    ids = await _seed(api_client)
    distribution = (await api_client.get("/api/v1/listings/L1/distributions")).json()[0]
    newcomer = (await api_client.post("/api/v1/buyers", json={"email": "c@example.com"})).json()

    resp = await api_client.post(
        f"/api/v1/distributions/{distribution['id']}/recipient-ids",
        json={"buyer_ids": [newcomer["id"], ids["a"], "ghost"]},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert [a["buyer_id"] for a in data["added"]] == [newcomer["id"]]
    assert data["errors"] == [
        {"buyer_id": ids["a"], "reason": "Already a recipient"},
        {"buyer_id": "ghost", "reason": "Unknown buyer"},
    ]

    entry = await api_client.get(f"/api/v1/listings/L1/buyers/{newcomer['id']}")
    assert entry.status_code == 200
    assert entry.json()["authorization"]["status"] == "PENDING"


@pytest.mark.asyncio
async def test_add_recipients_by_id_unknown_distribution(api_client):
    resp = await api_client.post(
        "/api/v1/distributions/dist-missing/recipient-ids", json={"buyer_ids": ["x"]}
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_record_view(api_client):
    await _seed(api_client)
    distribution = (await api_client.get("/api/v1/listings/L1/distributions")).json()[0]
    recipient_id = distribution["recipients"][0]["id"]

    resp = await api_client.post(
        f"/api/v1/recipients/{recipient_id}/views",
        json={"duration_sec": 12, "pages_viewed": [1]},
    )

    assert resp.status_code == 200
    assert resp.json()["view_count"] == 1


# ── Ledger ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_ledger_flow_and_funnel(api_client):
    ids = await _seed(api_client)
    a = ids["a"]

    resp = await api_client.post(
        f"/api/v1/listings/L1/buyers/{a}/response", json={"response": "INTERESTED"}
    )
    assert resp.status_code == 200

    funnel = (await api_client.get("/api/v1/listings/L1/funnel")).json()
    assert funnel == {
        "distributed": 2,
        "views": 0,
        "responded": 1,
        "interested": 1,
        "authorized": 0,
        "nda_sent": 0,
        "nda_signed": 0,
        "in_data_room": 0,
    }

    queue = (await api_client.get("/api/v1/listings/L1/review-queue")).json()
    assert [e["buyer_id"] for e in queue] == [a]

    resp = await api_client.post(f"/api/v1/listings/L1/buyers/{a}/authorize")
    assert resp.status_code == 200
    assert resp.json()["authorization"]["access_level"] == "STANDARD"

    authorized = (
        await api_client.get("/api/v1/listings/L1/authorizations", params={"status": "AUTHORIZED"})
    ).json()
    assert [e["buyer_id"] for e in authorized] == [a]


@pytest.mark.asyncio
async def test_decline_without_body_stores_empty_reason(api_client):
    ids = await _seed(api_client)

    resp = await api_client.post(f"/api/v1/listings/L1/buyers/{ids['a']}/decline")

    assert resp.status_code == 200
    authorization = resp.json()["authorization"]
    assert authorization["status"] == "DECLINED"
    assert authorization["decline_reason"] == ""


@pytest.mark.asyncio
async def test_decline_reason_kept_verbatim_over_http(api_client):
    ids = await _seed(api_client)

    resp = await api_client.post(
        f"/api/v1/listings/L1/buyers/{ids['b']}/decline", json={"reason": " too small "}
    )

    assert resp.status_code == 200
    assert resp.json()["authorization"]["decline_reason"] == " too small "


@pytest.mark.asyncio
async def test_authorize_declined_buyer_conflict(api_client):
    ids = await _seed(api_client)
    b = ids["b"]
    await api_client.post(f"/api/v1/listings/L1/buyers/{b}/decline", json={"reason": "no"})

    resp = await api_client.post(f"/api/v1/listings/L1/buyers/{b}/authorize")

    assert resp.status_code == 409
    assert resp.json()["detail"]["current_state"] == "DECLINED"


@pytest.mark.asyncio
async def test_send_nda_for_pending_buyer_conflict(api_client):
    ids = await _seed(api_client)
    resp = await api_client.post(f"/api/v1/listings/L1/buyers/{ids['a']}/nda/send")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_unknown_buyer_entry_404(api_client):
    await _seed(api_client)
    resp = await api_client.get("/api/v1/listings/L1/buyers/nobody")
    assert resp.status_code == 404


# ── Bulk ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_bulk_authorize_partial_failure(api_client):
    ids = await _seed(api_client)

    resp = await api_client.post(
        "/api/v1/listings/L1/bulk/authorize",
        json={"buyer_ids": [ids["a"], ids["b"], "nonexistent"]},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["completed"] is True
    assert sorted(data["succeeded"]) == sorted([ids["a"], ids["b"]])
    assert [f["target"] for f in data["failed"]] == ["nonexistent"]


@pytest.mark.asyncio
async def test_bulk_empty_ids_complete_immediately(api_client):
    await _seed(api_client)

    resp = await api_client.post("/api/v1/listings/L1/bulk/decline", json={"buyer_ids": []})

    assert resp.status_code == 200
    data = resp.json()
    assert data["completed"] is True
    assert data["total"] == 0
    assert data["completed_count"] == 0
    assert data["succeeded"] == []
    assert data["failed"] == []


@pytest.mark.asyncio
async def test_bulk_unknown_listing_404(api_client):
    resp = await api_client.post("/api/v1/listings/L404/bulk/decline", json={"buyer_ids": ["x"]})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_background_bulk_lifecycle(api_client):
    ids = await _seed(api_client)

    resp = await api_client.post(
        "/api/v1/listings/L1/bulk-operations",
        json={"kind": "DECLINE", "buyer_ids": [ids["a"]]},
    )
    assert resp.status_code == 202
    operation_id = resp.json()["operation_id"]

    snapshot = (await api_client.get(f"/api/v1/bulk-operations/{operation_id}")).json()
    for _ in range(50):
        if snapshot["completed"]:
            break
        await asyncio.sleep(0.01)
        snapshot = (await api_client.get(f"/api/v1/bulk-operations/{operation_id}")).json()
    assert snapshot["completed"] is True
    assert snapshot["succeeded"] == [ids["a"]]

    resp = await api_client.delete(f"/api/v1/bulk-operations/{operation_id}")
    assert resp.status_code == 204
    resp = await api_client.get(f"/api/v1/bulk-operations/{operation_id}")
    assert resp.status_code == 404


# ── Progression ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_progression_end_to_end(api_client, deal_client):
    ids = await _seed(api_client)
    a, b = ids["a"], ids["b"]

    resp = await api_client.post("/api/v1/listings/L1/advance")
    assert resp.status_code == 409
    assert resp.json()["detail"]["unmet"] == ["no authorized buyer"]

    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/authorize")
    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/nda/send")
    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/nda/confirm")

    resp = await api_client.post("/api/v1/listings/L1/advance")
    assert resp.status_code == 200
    assert resp.json()["phase"] == "ACTIVE_DD"

    resp = await api_client.post(
        "/api/v1/listings/L1/convert", json={"winning_buyer_id": a, "notes": "closed"}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["deal_id"] == "deal-123"
    assert data["listing"]["phase"] == "CONVERTED"
    assert data["listing"]["winning_buyer_id"] == a

    resp = await api_client.post("/api/v1/listings/L1/convert", json={"winning_buyer_id": b})
    assert resp.status_code == 409
    deal_client.create_deal.assert_awaited_once()



@pytest.mark.asyncio
async def test_convert_collaborator_failure_is_bad_gateway(api_client, deal_client):
    ids = await _seed(api_client)
    a = ids["a"]
    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/authorize")
    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/nda/send")
    await api_client.post(f"/api/v1/listings/L1/buyers/{a}/nda/confirm")
    await api_client.post("/api/v1/listings/L1/advance")
    deal_client.create_deal.side_effect = DealCreationError(
        "Deal service response was not a JSON object", context={"listing_id": "L1"}
    )

    resp = await api_client.post("/api/v1/listings/L1/convert", json={"winning_buyer_id": a})

    assert resp.status_code == 502
    listing = (await api_client.get("/api/v1/listings/L1")).json()
    assert listing["phase"] == "ACTIVE_DD"
    assert listing["external_deal_id"] is None


# ── Service Wiring ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_services_return_503():
    from src.dealflow.api.v1.router import router

    app = FastAPI()
    app.include_router(router, prefix="/api/v1")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/v1/listings/L1/funnel")

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
