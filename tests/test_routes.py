"""
API tests: routing, error envelope and the payment flow end to end
"""
import pytest

LICENSE_PAYLOAD = {
    "tenant_id": 42,
    "license_type": "standard",
    "billing_cycle_months": 1,
    "base_price_usd": "3.00",
    "minimum_seats": 5,
    "current_period_start": "2024-01-01T00:00:00Z",
    "current_period_end": "2024-01-31T00:00:00Z",
    "initial_seats": 10,
}


def create_license(client, **overrides):
    payload = dict(LICENSE_PAYLOAD, **overrides)
    response = client.post("/v1/licenses/", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    def test_health_reports_build(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data["build"]

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestLicenseRoutes:

    def test_create_and_fetch(self, client):
        created = create_license(client)

        assert created["total_seats_purchased"] == 10
        assert created["status"] == "ACTIVE"

        by_id = client.get(f"/v1/licenses/{created['id']}").json()
        by_guid = client.get(f"/v1/licenses/guid/{created['guid']}").json()
        assert by_id["id"] == by_guid["id"] == created["id"]

    def test_patch_is_partial(self, client):
        created = create_license(client)
        response = client.patch(f"/v1/licenses/{created['id']}", json={"minimum_seats": 12})

        assert response.status_code == 200
        assert response.json()["minimum_seats"] == 12
        assert response.json()["license_type"] == "standard"

    def test_invariant_violation_is_422(self, client):
        response = client.post("/v1/licenses/", json=dict(
            LICENSE_PAYLOAD, current_period_end="2023-12-01T00:00:00Z"
        ))

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "INVARIANT_VIOLATION"
        assert "request_id" in body

    def test_unknown_license_is_404(self, client):
        response = client.get("/v1/licenses/9999")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_illegal_transition_is_409(self, client):
        created = create_license(client)
        assert client.post(f"/v1/licenses/{created['id']}/terminate").status_code == 200

        response = client.post(f"/v1/licenses/{created['id']}/renew")
        assert response.status_code == 409
        assert response.json()["details"]["current_status"] == "TERMINATED"

    def test_patch_cannot_change_status(self, client):
        created = create_license(client)
        response = client.patch(f"/v1/licenses/{created['id']}", json={"status": "SUSPENDED"})

        assert response.status_code == 409
        assert client.get(f"/v1/licenses/{created['id']}").json()["status"] == "ACTIVE"

    def test_request_body_validation(self, client):
        response = client.post("/v1/licenses/", json={"tenant_id": 0})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestPaymentFlow:

    @pytest.fixture
    def cycle(self, client):
        license = create_license(client)
        response = client.post("/v1/billing-cycles/build", json={"license_id": license["id"]})
        assert response.status_code == 201, response.text
        return response.json()

    def test_cycle_built_from_seats(self, cycle):
        assert cycle["final_employee_count"] == 10
        assert cycle["total_amount_usd"] == 30.0
        assert cycle["billing_status"] == "PENDING"

    def test_pay_through_transaction(self, client, cycle):
        response = client.post("/v1/payment-transactions/", json={
            "payment_method": "card",
            "billing_cycle_id": cycle["id"],
        })
        assert response.status_code == 201, response.text
        transaction = response.json()
        assert transaction["amount_usd"] == 30.0

        early = client.post(f"/v1/payment-transactions/{transaction['id']}/complete")
        assert early.status_code == 409

        assert client.post(f"/v1/payment-transactions/{transaction['id']}/process").status_code == 200
        completed = client.post(f"/v1/payment-transactions/{transaction['id']}/complete", json={
            "gateway_response": {"charge": "ch_42"},
        })
        assert completed.status_code == 200
        assert completed.json()["transaction_status"] == "COMPLETED"

        settled = client.get(f"/v1/billing-cycles/{cycle['id']}").json()
        assert settled["billing_status"] == "COMPLETED"
        assert settled["payment_completed_at"] is not None

    def test_transaction_needs_one_parent(self, client, cycle):
        response = client.post("/v1/payment-transactions/", json={"payment_method": "card"})
        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_VALUE"

    def test_failed_payment_needs_reason(self, client, cycle):
        transaction = client.post("/v1/payment-transactions/", json={
            "payment_method": "card",
            "billing_cycle_id": cycle["id"],
        }).json()

        response = client.post(f"/v1/payment-transactions/{transaction['id']}/fail",
                               json={"failure_reason": " "})
        assert response.status_code == 422

        response = client.post(f"/v1/payment-transactions/{transaction['id']}/fail",
                               json={"failure_reason": "card declined"})
        assert response.json()["transaction_status"] == "FAILED"

    def test_partial_payment_and_stats(self, client, cycle):
        transaction = client.post("/v1/payment-transactions/", json={
            "payment_method": "card",
            "billing_cycle_id": cycle["id"],
            "amount_usd": "10.00",
        }).json()
        client.post(f"/v1/payment-transactions/{transaction['id']}/process")
        completed = client.post(f"/v1/payment-transactions/{transaction['id']}/complete")
        assert completed.status_code == 200

        assert client.get(f"/v1/billing-cycles/{cycle['id']}").json()["billing_status"] == "PENDING"

        stats = client.get("/v1/payment-transactions/stats").json()
        assert stats["total_count"] == 1
        assert stats["by_status"]["COMPLETED"] == {"count": 1, "total_usd": 10.0}
        assert stats["success_rate"] == 100.0

        count = client.get("/v1/payment-transactions/count", params={"status": "completed"}).json()
        assert count == {"status": "COMPLETED", "count": 1}

        listed = client.get("/v1/payment-transactions/", params={"currency": "usd", "min_amount": "5"}).json()
        assert [t["id"] for t in listed] == [transaction["id"]]
        assert client.get("/v1/payment-transactions/", params={"max_amount": "5"}).json() == []

    def test_overpayment_is_422(self, client, cycle):
        response = client.post("/v1/payment-transactions/", json={
            "payment_method": "card",
            "billing_cycle_id": cycle["id"],
            "amount_usd": "31.00",
        })
        assert response.status_code == 422
        assert response.json()["code"] == "INVARIANT_VIOLATION"

    def test_lookup_by_guid(self, client, cycle):
        assert client.get(f"/v1/billing-cycles/guid/{cycle['guid']}").json()["id"] == cycle["id"]

        transaction = client.post("/v1/payment-transactions/", json={
            "payment_method": "card",
            "billing_cycle_id": cycle["id"],
        }).json()
        by_guid = client.get(f"/v1/payment-transactions/guid/{transaction['guid']}").json()
        assert by_guid["payment_reference"] == transaction["payment_reference"]

        adjustment = client.post("/v1/license-adjustments/", json={
            "license_id": cycle["license_id"],
            "employees_added_count": 2,
            "adjustment_date": "2024-01-16T00:00:00Z",
        }).json()
        by_guid = client.get(f"/v1/license-adjustments/guid/{adjustment['guid']}").json()
        assert by_guid["id"] == adjustment["id"]

        assert client.get("/v1/payment-transactions/guid/1").status_code == 404


class TestTaxRoutes:

    def test_lookup_returns_calculation(self, client):
        response = client.post("/v1/tax-rules/", json={
            "country_code": "NG",
            "tax_type": "VAT",
            "tax_name": "Nigeria VAT",
            "tax_rate": "7.5",
            "effective_date": "2020-02-01T00:00:00Z",
        })
        assert response.status_code == 201, response.text

        lookup = client.get("/v1/tax-rules/lookup", params={
            "country_code": "NG",
            "subtotal": "100.00",
            "reference_date": "2024-01-01T00:00:00Z",
        }).json()

        assert lookup["rule"]["tax_name"] == "Nigeria VAT"
        assert lookup["calculation"]["tax_amount"] == 7.5
        assert lookup["calculation"]["total"] == 107.5
