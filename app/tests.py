"""
Tests de la API HTTP: encabezados de tenant, flujo completo y errores
"""

from decimal import Decimal
from uuid import uuid4

from app.modules.business.models import StaffRole


def create_bill(client, headers, customer_id, rate="100.00", **extra):
    body = {
        "customer_id": str(customer_id),
        "items": [{"product_name": "Servicio", "quantity": "1", "rate": rate}],
        **extra,
    }
    return client.post("/api/v1/bills/", json=body, headers=headers)


class TestTenantHeaders:

    def test_health_is_public(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_headers(self, client):
        response = client.get("/api/v1/bills/")
        assert response.status_code == 400
        assert response.json()["kind"] == "validation_error"

    def test_malformed_header(self, client, owner_id):
        response = client.get("/api/v1/bills/", headers={"X-Business-ID": "abc", "X-User-ID": str(owner_id)})
        assert response.status_code == 400

    def test_tenant_echoed(self, client, headers, business):
        response = client.get("/api/v1/bills/", headers=headers)
        assert response.status_code == 200
        assert response.headers["X-Tenant-ID"] == str(business.id)


class TestCustomers:

    def test_create_and_get(self, client, headers):
        created = client.post("/api/v1/customers/", json={"name": "Cliente API"}, headers=headers)
        assert created.status_code == 201
        customer_id = created.json()["id"]

        fetched = client.get(f"/api/v1/customers/{customer_id}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Cliente API"

    def test_customer_scoped_to_business(self, client, customer, other_business):
        foreign = {"X-Business-ID": str(other_business.id), "X-User-ID": str(other_business.owner_id)}
        assert client.get(f"/api/v1/customers/{customer.id}", headers=foreign).status_code == 404


class TestBillFlow:

    def test_create_submit_pay(self, client, headers, customer):
        created = create_bill(client, headers, customer.id)
        assert created.status_code == 201
        bill = created.json()
        assert bill["status"] == "DRAFT"
        assert Decimal(bill["total_amount"]) == Decimal("100.00")

        submitted = client.post(f"/api/v1/approvals/bills/{bill['id']}/submit", json={}, headers=headers)
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "PENDING"

        paid = client.post(
            "/api/v1/payments/",
            json={"bill_id": bill["id"], "amount": "30", "method": "CASH"},
            headers=headers,
        )
        assert paid.status_code == 201
        assert Decimal(paid.json()["allocation"]["bill_balance_after"]) == Decimal("70.00")

        detail = client.get(f"/api/v1/bills/{bill['id']}", headers=headers).json()
        assert detail["status"] == "PARTIAL"
        assert Decimal(detail["balance_amount"]) == Decimal("70.00")

        history = client.get(f"/api/v1/bills/{bill['id']}/history", headers=headers).json()
        assert [h["action"] for h in history] == ["CREATED", "SUBMITTED", "PAYMENT_ALLOCATED"]

        allocations = client.get(f"/api/v1/bills/{bill['id']}/allocations", headers=headers).json()
        assert len(allocations) == 1

    def test_bulk_payment(self, client, headers, customer):
        for rate in ("100.00", "50.00"):
            bill = create_bill(client, headers, customer.id, rate=rate).json()
            client.post(f"/api/v1/approvals/bills/{bill['id']}/submit", json={}, headers=headers)

        response = client.post(
            "/api/v1/payments/bulk",
            json={"customer_id": str(customer.id), "amount": "200", "method": "UPI"},
            headers=headers,
        )
        assert response.status_code == 201
        result = response.json()
        assert len(result["allocations"]) == 2
        assert Decimal(result["payment"]["unallocated_amount"]) == Decimal("50.00")
        assert result["payment"]["status"] == "COMPLETED"

    def test_approval_decision_via_api(self, client, headers, customer):
        bill = create_bill(client, headers, customer.id).json()
        client.post(
            f"/api/v1/approvals/bills/{bill['id']}/submit", json={"requires_approval": True}, headers=headers
        )

        blocked = client.post(
            "/api/v1/payments/",
            json={"bill_id": bill["id"], "amount": "10", "method": "CASH"},
            headers=headers,
        )
        assert blocked.status_code == 409
        assert blocked.json()["kind"] == "invalid_state"

        approved = client.post(
            f"/api/v1/approvals/bills/{bill['id']}/decision", json={"action": "approve"}, headers=headers
        )
        assert approved.json()["approval_status"] == "APPROVED"

        again = client.post(
            f"/api/v1/approvals/bills/{bill['id']}/decision", json={"action": "reject"}, headers=headers
        )
        assert again.status_code == 409
        assert again.json()["kind"] == "conflict"


class TestErrors:

    def test_validation_error_shape(self, client, headers, customer):
        response = create_bill(client, headers, customer.id, rate="-1")
        assert response.status_code == 422
        body = response.json()
        assert body["kind"] == "validation_error"
        assert body["errors"][0]["field"] == "items[0].rate"

    def test_null_bill_date_on_update(self, client, headers, customer):
        bill = create_bill(client, headers, customer.id).json()
        response = client.patch(f"/api/v1/bills/{bill['id']}", json={"bill_date": None}, headers=headers)
        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "bill_date"

    def test_not_found(self, client, headers):
        response = client.get(f"/api/v1/bills/{uuid4()}", headers=headers)
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_forbidden(self, client, business, customer, staff_factory):
        viewer = staff_factory(StaffRole.VIEWER)
        headers = {"X-Business-ID": str(business.id), "X-User-ID": str(viewer)}
        response = create_bill(client, headers, customer.id)
        assert response.status_code == 403
        assert response.json()["kind"] == "forbidden"

    def test_other_tenant_cannot_read(self, client, headers, other_business, customer):
        bill = create_bill(client, headers, customer.id).json()
        foreign = {"X-Business-ID": str(other_business.id), "X-User-ID": str(other_business.owner_id)}
        assert client.get(f"/api/v1/bills/{bill['id']}", headers=foreign).status_code == 404
