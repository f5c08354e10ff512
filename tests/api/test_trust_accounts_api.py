"""
Tests for trust account and client ledger endpoints.

These test the HTTP layer: status codes, response format and the
error envelope. Business rules are tested in tests/services.
"""

from decimal import Decimal


def create_account(client, merchant_id=21):
    response = client.post("/iolta/trust-accounts", json={
        "merchant_id": merchant_id,
        "account_name": "Garcia Law IOLTA",
        "bank_name": "Harbor Bank",
        "account_number": "8800123",
        "routing_number": "026009593",
        "jurisdiction": "TX",
    })
    assert response.status_code == 201
    return response.json()


def create_ledger(client, account_id, **fields):
    body = {"client_id": "CLI-1", "client_name": "Maria Client"}
    body.update(fields)
    return client.post(f"/iolta/trust-accounts/{account_id}/ledgers", json=body)


class TestTrustAccountEndpoints:

    def test_create_returns_account(self, client):
        data = create_account(client)
        assert data["merchant_id"] == 21
        assert data["status"] == "active"
        assert data["currency"] == "USD"
        assert Decimal(data["balance"]) == Decimal("0")

    def test_merchant_is_required(self, client):
        response = client.post("/iolta/trust-accounts", json={
            "account_name": "No Owner",
            "bank_name": "Harbor Bank",
            "account_number": "1",
            "routing_number": "2",
            "jurisdiction": "TX",
        })
        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "ERR_VALIDATION"
        assert body["details"]["errors"]

    def test_get_and_list(self, client):
        created = create_account(client, merchant_id=5)
        create_account(client, merchant_id=6)

        response = client.get(f"/iolta/trust-accounts/{created['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

        listed = client.get("/iolta/trust-accounts", params={"merchant_id": 5}).json()
        assert [a["id"] for a in listed] == [created["id"]]

    def test_unknown_account_returns_404(self, client):
        response = client.get("/iolta/trust-accounts/999")
        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "ERR_TRUST_ACCOUNT_NOT_FOUND"
        assert body["details"] == {"trust_account_id": 999}

    def test_status_change(self, client):
        account = create_account(client)
        response = client.patch(
            f"/iolta/trust-accounts/{account['id']}/status",
            json={"new_status": "inactive", "reason": "bank migration"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "inactive"


class TestClientLedgerEndpoints:

    def test_create_ledger_defaults_jurisdiction(self, client):
        account = create_account(client)
        response = create_ledger(client, account["id"])

        assert response.status_code == 201
        data = response.json()
        assert data["jurisdiction"] == "Unknown"
        assert data["trust_account_id"] == account["id"]
        assert data["merchant_id"] == 21
        assert Decimal(data["current_balance"]) == Decimal("0")

    def test_duplicate_ledger_returns_409(self, client):
        account = create_account(client)
        create_ledger(client, account["id"], matter_number="2026-7")
        response = create_ledger(client, account["id"], matter_number="2026-7")

        assert response.status_code == 409
        assert response.json()["error_code"] == "ERR_DUPLICATE_LEDGER"

    def test_list_ledgers(self, client):
        account = create_account(client)
        create_ledger(client, account["id"], client_id="A")
        create_ledger(client, account["id"], client_id="B")

        response = client.get(f"/iolta/trust-accounts/{account['id']}/ledgers")
        assert [l["client_id"] for l in response.json()] == ["A", "B"]

    def test_lookup_by_ledger_id_and_client_id(self, client):
        account = create_account(client)
        ledger = create_ledger(client, account["id"], client_id="CLI-42").json()

        by_id = client.get(f"/iolta/ledgers/{ledger['id']}")
        by_client = client.get("/iolta/ledgers/by-client/CLI-42")

        assert by_id.json()["client_id"] == "CLI-42"
        assert by_client.json()["id"] == ledger["id"]

    def test_unknown_client_returns_404(self, client):
        response = client.get("/iolta/ledgers/by-client/nobody")
        assert response.status_code == 404
        assert response.json()["error_code"] == "ERR_LEDGER_NOT_FOUND"

    def test_close_ledger(self, client):
        account = create_account(client)
        ledger = create_ledger(client, account["id"]).json()

        response = client.patch(
            f"/iolta/ledgers/{ledger['id']}/status",
            json={"new_status": "closed"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "closed"
        assert response.json()["closed_at"] is not None
