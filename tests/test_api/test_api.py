"""
HTTP-level tests for the /api/v1 routers.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from app.dependencies import get_db
from app.main import app
from app.models.database import close_db


@pytest.fixture
async def client(session_factory):
    async def _get_db():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_db] = _get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers(company_id):
    return {"X-Company-ID": str(company_id), "X-User-ID": "reviewer-1"}


class TestHealth:

    async def test_health(self, client):
        try:
            response = await client.get("/health")
        finally:
            await close_db()
        assert response.status_code == 200
        assert response.json()["status"] in ("healthy", "degraded")


class TestTenantScope:

    async def test_bad_company_header(self, client):
        response = await client.get("/api/v1/matches/pending", headers={"X-Company-ID": "acme"})
        assert response.status_code == 400

    async def test_missing_company_header(self, client):
        response = await client.get("/api/v1/matches/pending")
        assert response.status_code == 422

    async def test_unknown_receipt_is_404(self, client, headers):
        response = await client.get(f"/api/v1/matches/receipts/{uuid.uuid4()}/candidates", headers=headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "ERR_NOT_FOUND"

    async def test_other_company_record_is_404(self, client, other_company_id, add_transaction):
        tx = await add_transaction(company_id=other_company_id)
        response = await client.post(
            f"/api/v1/fraud/transactions/{tx.id}",
            headers={"X-Company-ID": str(uuid.uuid4())},
        )
        assert response.status_code == 404


class TestMatchFlow:

    async def test_auto_match_then_confirm(self, client, headers, add_receipt, add_transaction):
        receipt = await add_receipt()
        tx = await add_transaction()

        response = await client.post(f"/api/v1/matches/receipts/{receipt.id}/auto-match", headers=headers)
        assert response.status_code == 200
        body = response.json()
        assert body["matched"]
        assert body["transaction_id"] == str(tx.id)

        pending = (await client.get("/api/v1/matches/pending", headers=headers)).json()
        assert [m["match_id"] for m in pending] == [body["match_id"]]

        confirmed = await client.post(f"/api/v1/matches/{body['match_id']}/confirm", headers=headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"
        assert confirmed.json()["confirmed_by"] == "reviewer-1"

        stats = (await client.get("/api/v1/matches/stats", headers=headers)).json()
        assert stats["confirmed_matches"] == 1

    async def test_manual_match(self, client, headers, add_receipt, add_transaction):
        receipt = await add_receipt()
        tx = await add_transaction(amount="42.00", description="SHELL OIL")

        response = await client.post(
            "/api/v1/matches",
            headers=headers,
            json={"transaction_id": str(tx.id), "receipt_id": str(receipt.id), "confirm": True},
        )

        assert response.status_code == 201
        assert response.json()["user_confirmed"]

    async def test_receipt_confirmed_twice_is_409(self, client, headers, add_receipt, add_transaction):
        receipt = await add_receipt()
        first = await add_transaction()
        second = await add_transaction(description="STARBUCKS 2")
        await client.post(
            "/api/v1/matches",
            headers=headers,
            json={"transaction_id": str(first.id), "receipt_id": str(receipt.id), "confirm": True},
        )

        response = await client.post(
            "/api/v1/matches",
            headers=headers,
            json={"transaction_id": str(second.id), "receipt_id": str(receipt.id), "confirm": True},
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "ERR_ALREADY_CONFIRMED"

    async def test_threshold_out_of_range(self, client, headers):
        response = await client.post("/api/v1/matches/auto-match", headers=headers, json={"threshold": 500})
        assert response.status_code == 422


class TestDuplicateFlow:

    async def test_group_detail_and_dismiss(self, client, headers, add_transaction):
        original = await add_transaction()
        repeat = await add_transaction()

        result = (await client.post(f"/api/v1/duplicates/transactions/{repeat.id}", headers=headers)).json()
        assert result["group_created"]
        group_id = result["group_id"]

        detail = (await client.get(f"/api/v1/duplicates/groups/{group_id}", headers=headers)).json()
        assert detail["primary_transaction_id"] == str(original.id)
        assert [m["is_primary"] for m in detail["members"]] == [True, False]

        patched = await client.patch(
            f"/api/v1/duplicates/groups/{group_id}", headers=headers, json={"status": "dismissed"}
        )
        assert patched.json()["status"] == "dismissed"

        removed = await client.delete(
            f"/api/v1/duplicates/groups/{group_id}/members/{repeat.id}", headers=headers
        )
        assert removed.json() == {"removed": str(repeat.id), "group_deleted": True}


class TestFraudFlow:

    async def test_alert_review(self, client, headers, add_transaction):
        tx = await add_transaction(amount="250.00", description="CASH ADVANCE")

        analysis = (await client.post(f"/api/v1/fraud/transactions/{tx.id}", headers=headers)).json()
        assert analysis["requires_review"]
        alert_id = analysis["alerts"][0]["alert_id"]

        alerts = (await client.get("/api/v1/fraud/alerts", headers=headers)).json()
        assert [a["alert_id"] for a in alerts] == [alert_id]

        reviewed = (await client.patch(
            f"/api/v1/fraud/alerts/{alert_id}", headers=headers, json={"status": "confirmed"}
        )).json()
        assert reviewed["reviewed_by"] == "reviewer-1"

        stats = (await client.get("/api/v1/fraud/stats", headers=headers)).json()
        assert stats["total_alerts"] == 1
        assert stats["pending_alerts"] == 0


class TestAdvancedFlow:

    async def test_split_then_list(self, client, headers, add_transaction, add_receipt):
        tx = await add_transaction()
        receipts = [await add_receipt(amount="60.00"), await add_receipt(amount="40.00")]
        body = {"receipt_ids": [str(r.id) for r in receipts]}

        created = await client.post(f"/api/v1/advanced/transactions/{tx.id}/splits", headers=headers, json=body)
        assert created.status_code == 201
        assert created.json()["can_split"]

        splits = (await client.get(f"/api/v1/advanced/transactions/{tx.id}/splits", headers=headers)).json()
        assert len(splits) == 2

    async def test_split_with_unknown_receipt(self, client, headers, add_transaction):
        tx = await add_transaction()
        response = await client.post(
            f"/api/v1/advanced/transactions/{tx.id}/splits/analyze",
            headers=headers,
            json={"receipt_ids": [str(uuid.uuid4())]},
        )
        assert response.status_code == 404

    async def test_split_with_repeated_receipt(self, client, headers, add_transaction, add_receipt):
        tx = await add_transaction()
        receipt = await add_receipt(amount="50.00")
        response = await client.post(
            f"/api/v1/advanced/transactions/{tx.id}/splits",
            headers=headers,
            json={"receipt_ids": [str(receipt.id), str(receipt.id)]},
        )
        assert response.status_code == 422

        splits = (await client.get(f"/api/v1/advanced/transactions/{tx.id}/splits", headers=headers)).json()
        assert splits == []

    async def test_create_and_list_pattern(self, client, headers):
        created = await client.post(
            "/api/v1/advanced/recurring-patterns",
            headers=headers,
            json={
                "pattern_name": "Office rent",
                "frequency": "quarterly",
                "expected_amount": "3000.00",
                "last_occurrence": "2024-01-01",
            },
        )
        assert created.status_code == 201
        assert created.json()["next_expected"] == "2024-04-01"

        listed = (await client.get("/api/v1/advanced/recurring-patterns", headers=headers)).json()
        assert [p["pattern_name"] for p in listed] == ["Office rent"]
