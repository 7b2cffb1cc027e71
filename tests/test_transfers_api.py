import pytest
import asyncio
import uuid
import httpx
from fastapi.testclient import TestClient
from unittest.mock import patch

from main import app
from config import get_settings

client = TestClient(app)


def create_account(currency="NGN", balance=0):
    response = client.post("/accounts", json={"business_id": "biz-001", "currency": currency})
    assert response.status_code == 201
    account_id = response.json()["id"]
    if balance:
        top_up = client.post(f"/accounts/{account_id}/top-up", json={"amount": balance})
        assert top_up.status_code == 200
    return account_id


def transfer_body(source, dest, amount=100.00, currency="NGN", reference=None):
    return {
        "source_account_id": source,
        "destination_account_id": dest,
        "amount": amount,
        "currency": currency,
        "reference": reference or f"ref-{uuid.uuid4()}",
    }


def balance_of(account_id):
    return client.get(f"/accounts/{account_id}").json()["available_balance"]


class TestBasicTransfers:
    """Test basic transfer functionality."""

    def test_transfer_success(self):
        """Test successful transfer between two accounts."""
        source = create_account(balance=1000)
        dest = create_account()

        response = client.post("/transfers", json=transfer_body(source, dest, 100.50, reference="basic-001"))

        assert response.status_code == 201
        data = response.json()

        assert data["status"] == "COMPLETED"
        assert data["amount"] == 100.50
        assert data["reference"] == "basic-001"
        assert data["source_account_id"] == source
        assert data["destination_account_id"] == dest
        assert "id" in data
        assert "created_at" in data

        assert balance_of(source) == 899.50
        assert balance_of(dest) == 100.50

    def test_insufficient_funds(self):
        """Test transfer larger than the available balance."""
        source = create_account(balance=100000)
        dest = create_account()

        response = client.post("/transfers", json=transfer_body(source, dest, 200000))

        assert response.status_code == 422
        data = response.json()
        assert data["error_code"] == "INSUFFICIENT_BALANCE"
        assert data["detail"] == "Insufficient available balance"
        assert balance_of(source) == 100000
        assert client.get(f"/accounts/{source}/transfers").json()["meta"]["total"] == 0

    def test_account_not_found(self):
        """Test transfer to a non-existent account."""
        source = create_account(balance=100)
        missing = str(uuid.uuid4())

        response = client.post("/transfers", json=transfer_body(source, missing, 50))

        assert response.status_code == 404
        data = response.json()
        assert data["error_code"] == "ACCOUNT_NOT_FOUND"
        assert data["context"]["account_id"] == missing

    def test_currency_mismatch(self):
        source = create_account("NGN", balance=1000)
        dest = create_account("USD")

        response = client.post("/transfers", json=transfer_body(source, dest, 10, currency="NGN"))

        assert response.status_code == 422
        assert response.json()["error_code"] == "CURRENCY_MISMATCH"
        assert client.get(f"/accounts/{source}/ledger-entries").json()["meta"]["total"] == 1

    def test_frozen_account(self):
        source = create_account(balance=1000)
        dest = create_account()
        patch_response = client.patch(f"/accounts/{source}", json={"status": "FROZEN"})
        assert patch_response.status_code == 200
        assert patch_response.json()["status"] == "FROZEN"

        response = client.post("/transfers", json=transfer_body(source, dest, 10))

        assert response.status_code == 422
        data = response.json()
        assert data["error_code"] == "ACCOUNT_NOT_ACTIVE"
        assert data["context"] == {"account_id": source, "status": "FROZEN"}
        assert source in data["detail"]


class TestIdempotency:
    """Test idempotency functionality."""

    def test_idempotent_requests(self):
        """Test that duplicate references return the same transfer."""
        source = create_account(balance=1000)
        dest = create_account()
        body = transfer_body(source, dest, 150.00, reference="idempotent_test_001")

        response1 = client.post("/transfers", json=body)
        assert response1.status_code == 201

        response2 = client.post("/transfers", json=body)
        assert response2.status_code == 201

        # Should return identical responses
        assert response1.json() == response2.json()

        # Balance should only be affected once
        assert balance_of(source) == 850.00
        assert client.get(f"/accounts/{dest}/ledger-entries").json()["meta"]["total"] == 1

    def test_reference_reuse_with_different_amount(self):
        source = create_account(balance=1000)
        dest = create_account()

        client.post("/transfers", json=transfer_body(source, dest, 150.00, reference="conflict-001"))
        response = client.post("/transfers", json=transfer_body(source, dest, 151.00, reference="conflict-001"))

        assert response.status_code == 409
        assert response.json()["error_code"] == "IDEMPOTENCY_CONFLICT"
        assert balance_of(source) == 850.00

    def test_different_references(self):
        """Test that different references create separate transfers."""
        source = create_account(balance=500)
        dest = create_account()

        response1 = client.post("/transfers", json=transfer_body(source, dest, 25.00, reference="multi_test_001"))
        response2 = client.post("/transfers", json=transfer_body(source, dest, 25.00, reference="multi_test_002"))

        assert response1.status_code == 201
        assert response2.status_code == 201
        assert response1.json()["id"] != response2.json()["id"]
        assert balance_of(source) == 450.00


class TestConcurrency:
    """Test concurrent transfer processing."""

    @pytest.mark.asyncio
    async def test_concurrent_transfers_same_account(self):
        """Test multiple concurrent transfers draining the same account."""
        source = create_account(balance=1000)
        dest = create_account()

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [
                ac.post("/transfers", json=transfer_body(source, dest, 10.00, reference=f"concurrent_{i}"))
                for i in range(10)
            ]
            results = await asyncio.gather(*tasks)

            assert all(r.status_code == 201 for r in results)

            source_data = (await ac.get(f"/accounts/{source}")).json()
            dest_data = (await ac.get(f"/accounts/{dest}")).json()
            assert source_data["available_balance"] == 900.00
            assert dest_data["available_balance"] == 100.00

    @pytest.mark.asyncio
    async def test_concurrent_insufficient_funds(self):
        """Test concurrent transfers that would overdraw the account."""
        source = create_account(balance=500)
        dest = create_account()

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [
                ac.post("/transfers", json=transfer_body(source, dest, 200.00, reference=f"insufficient_{i}"))
                for i in range(5)
            ]
            results = await asyncio.gather(*tasks)

        successful = [r for r in results if r.status_code == 201]
        failed = [r for r in results if r.status_code == 422]

        assert len(successful) == 2  # Only 2 should succeed
        assert len(failed) == 3     # 3 should fail with insufficient funds
        assert balance_of(source) == 100.00


class TestValidation:
    """Test input validation."""

    def test_invalid_account_id_format(self):
        response = client.post("/transfers", json=transfer_body("invalid_account", str(uuid.uuid4())))

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_zero_amount(self):
        response = client.post("/transfers", json=transfer_body(str(uuid.uuid4()), str(uuid.uuid4()), 0))
        assert response.status_code == 400

    def test_negative_amount(self):
        response = client.post("/transfers", json=transfer_body(str(uuid.uuid4()), str(uuid.uuid4()), -5))
        assert response.status_code == 400

    def test_same_account(self):
        account = str(uuid.uuid4())
        response = client.post("/transfers", json=transfer_body(account, account))

        assert response.status_code == 400
        assert "must be different" in response.json()["detail"]

    def test_empty_reference(self):
        body = transfer_body(str(uuid.uuid4()), str(uuid.uuid4()))
        body["reference"] = "   "
        response = client.post("/transfers", json=body)
        assert response.status_code == 400

    def test_currency_too_long(self):
        body = transfer_body(str(uuid.uuid4()), str(uuid.uuid4()), currency="NAIRA")
        response = client.post("/transfers", json=body)
        assert response.status_code == 400

    def test_invalid_path_id(self):
        response = client.get("/accounts/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"


class TestReadEndpoints:

    def test_get_transfer_by_id_and_reference(self):
        source = create_account(balance=100)
        dest = create_account()
        created = client.post("/transfers", json=transfer_body(source, dest, 10, reference="read-001")).json()

        by_id = client.get(f"/transfers/{created['id']}")
        by_reference = client.get("/transfers", params={"reference": "read-001"})

        assert by_id.status_code == 200
        assert by_id.json() == created
        assert by_reference.json() == created

    def test_unknown_transfer(self):
        response = client.get(f"/transfers/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

        response = client.get("/transfers", params={"reference": "missing"})
        assert response.status_code == 404

    def test_list_transfers_pagination(self):
        source = create_account(balance=1000)
        dest = create_account()
        references = [f"page-{i}" for i in range(5)]
        for reference in references:
            client.post("/transfers", json=transfer_body(source, dest, 1, reference=reference))

        first_page = client.get(f"/accounts/{dest}/transfers", params={"limit": 2, "offset": 0}).json()
        last_page = client.get(f"/accounts/{dest}/transfers", params={"limit": 2, "offset": 4}).json()

        assert first_page["meta"] == {"total": 5, "limit": 2, "offset": 0}
        assert [t["reference"] for t in first_page["transfers"]] == ["page-4", "page-3"]
        assert [t["reference"] for t in last_page["transfers"]] == ["page-0"]

    def test_pagination_is_clamped(self):
        account = create_account()
        data = client.get(f"/accounts/{account}/transfers", params={"limit": 5000, "offset": -3}).json()
        assert data["meta"] == {"total": 0, "limit": get_settings().max_page_size, "offset": 0}

        data = client.get(f"/accounts/{account}/ledger-entries").json()
        assert data["meta"]["limit"] == get_settings().default_page_size

    def test_ledger_entries_newest_first(self):
        source = create_account(balance=1000)
        dest = create_account()
        transfer = client.post("/transfers", json=transfer_body(source, dest, 40)).json()

        entries = client.get(f"/accounts/{source}/ledger-entries").json()["ledger_entries"]

        assert [e["type"] for e in entries] == ["DEBIT", "CREDIT"]
        assert entries[0]["transfer_id"] == transfer["id"]
        assert entries[0]["balance_after"] == 960
        assert entries[1]["transfer_id"] is None

    def test_list_for_unknown_account(self):
        response = client.get(f"/accounts/{uuid.uuid4()}/ledger-entries")
        assert response.status_code == 404

    def test_reconciliation(self):
        source = create_account(balance=1000)
        dest = create_account()
        client.post("/transfers", json=transfer_body(source, dest, 250))

        data = client.get(f"/accounts/{source}/reconciliation").json()

        assert data["balanced"] is True
        assert data["computed_balance"] == 750
        assert data["entries_count"] == 2


class TestAccounts:

    def test_create_account_defaults(self):
        response = client.post("/accounts", json={"business_id": "biz-9", "currency": "USD"})

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ACTIVE"
        assert data["available_balance"] == 0
        assert data["ledger_balance"] == 0

    def test_create_account_requires_three_letter_currency(self):
        response = client.post("/accounts", json={"business_id": "biz-9", "currency": "US"})
        assert response.status_code == 400

    def test_patch_unknown_account(self):
        response = client.patch(f"/accounts/{uuid.uuid4()}", json={"status": "CLOSED"})
        assert response.status_code == 404

    def test_patch_invalid_status(self):
        account = create_account()
        response = client.patch(f"/accounts/{account}", json={"status": "DELETED"})
        assert response.status_code == 400

    def test_top_up_frozen_account(self):
        account = create_account()
        client.patch(f"/accounts/{account}", json={"status": "FROZEN"})

        response = client.post(f"/accounts/{account}/top-up", json={"amount": 10})

        assert response.status_code == 422
        assert response.json()["error_code"] == "ACCOUNT_NOT_ACTIVE"

    def test_test_endpoints_can_be_disabled(self):
        with patch.object(get_settings(), "enable_test_endpoints", False):
            response = client.post("/accounts", json={"business_id": "biz-9", "currency": "USD"})

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        create_account()
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()

        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["accounts_count"] == 1
        assert data["transfers_processed"] == 0

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()

        assert "message" in data
        assert "docs" in data

    def test_error_catalogue(self):
        data = client.get("/errors").json()
        assert "IDEMPOTENCY_CONFLICT" in data
        assert "INSUFFICIENT_BALANCE" in data

    def test_request_id_is_echoed(self):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

        source = create_account()
        error = client.post(
            "/transfers",
            json=transfer_body(source, str(uuid.uuid4())),
            headers={"X-Request-ID": "req-456"},
        )
        assert error.json()["request_id"] == "req-456"


class TestErrorHandling:
    """Test error handling scenarios."""

    def test_malformed_json(self):
        response = client.post(
            "/transfers",
            content="{'invalid': 'json'",  # Invalid JSON
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_missing_required_fields(self):
        response = client.post("/transfers", json={"reference": "test_missing_fields"})

        assert response.status_code == 400
        assert len(response.json()["context"]["fields"]) >= 4

    def test_unexpected_error_is_internal(self):
        source = create_account(balance=100)
        dest = create_account()
        failing_client = TestClient(app, raise_server_exceptions=False)

        with patch("services.TransferService._attempt", side_effect=RuntimeError("disk on fire")):
            response = failing_client.post("/transfers", json=transfer_body(source, dest, 10))

        assert response.status_code == 500
        assert response.json()["error_code"] == "INTERNAL_ERROR"
        assert balance_of(source) == 100

    @patch('services.logger')
    def test_logging_on_error(self, mock_logger):
        """Test that rule violations are logged."""
        source = create_account(balance=10)
        dest = create_account()

        response = client.post("/transfers", json=transfer_body(source, dest, 100))

        assert response.status_code == 422
        mock_logger.warning.assert_called()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
