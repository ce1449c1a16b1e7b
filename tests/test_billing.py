from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from backoffice import main as app_main
from backoffice.domain.models import AuditLog, EventRecord
from backoffice.infra import db
from backoffice.infra.auth import create_access_token

PERIOD = {"period_start": "2024-02-01T00:00:00+00:00", "period_end": "2024-03-01T00:00:00+00:00"}


@pytest.fixture()
def billing_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "billing_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)

    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()


def _auth_header(permissions: list[str] | None = None) -> dict[str, str]:
    token = create_access_token(user_id="ops-1", permissions=permissions or ["*"])
    return {"Authorization": f"Bearer {token}"}


def _bootstrap_customer(client: TestClient) -> tuple[str, str]:
    headers = _auth_header()
    customer_resp = client.post(
        "/api/registry/customers",
        json={"code": "acme", "name": "Acme Retail"},
        headers=headers,
    )
    assert customer_resp.status_code == 201
    customer = customer_resp.json()
    assert customer["code"] == "ACME"

    contract_resp = client.post(
        f"/api/registry/customers/{customer['id']}/contracts",
        json={"name": "Master services agreement", "contract_number": "MSA-001", "start_date": "2024-01-01"},
        headers=headers,
    )
    assert contract_resp.status_code == 201
    return customer["id"], contract_resp.json()["id"]


def _create_rate_card(client: TestClient, customer_id: str, contract_id: str) -> dict:
    response = client.post(
        f"/api/customers/{customer_id}/rate-cards",
        json={
            "effective_date": "2024-01-01T00:00:00Z",
            "rates": {
                "storage": {"pallet_monthly": "20"},
                "fulfillment": {"base_order": "3.00"},
                "vas": {"kitting": "2.00"},
            },
            "billing_cycles": {"storage": "MONTHLY", "fulfillment": "MONTHLY"},
            "minimum_monthly_charge": "500",
            "contract_ids": [contract_id],
        },
        headers=_auth_header(),
    )
    assert response.status_code == 201
    return response.json()


def _ingest(client: TestClient, customer_id: str, body: dict) -> dict:
    response = client.post(
        f"/api/billing/customers/{customer_id}/activities",
        json=body,
        headers=_auth_header(),
    )
    assert response.status_code == 201
    return response.json()


def test_billing_requires_token_and_permission(billing_client: TestClient) -> None:
    missing = billing_client.get("/api/billing/invoices")
    assert missing.status_code == 401

    forbidden = billing_client.post(
        "/api/registry/customers",
        json={"code": "nope", "name": "No Permission"},
        headers=_auth_header(["billing.read"]),
    )
    assert forbidden.status_code == 403

    garbage = billing_client.get("/api/billing/invoices", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401


def test_rate_card_conflict_is_reported_with_card_id(billing_client: TestClient) -> None:
    customer_id, contract_id = _bootstrap_customer(billing_client)
    card = _create_rate_card(billing_client, customer_id, contract_id)

    conflict = billing_client.post(
        f"/api/customers/{customer_id}/rate-cards",
        json={
            "effective_date": "2024-06-01T00:00:00Z",
            "rates": {"storage": {"pallet_monthly": "25"}},
            "contract_ids": [contract_id],
        },
        headers=_auth_header(),
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["conflicting_rate_card_id"] == card["id"]

    check = billing_client.get(
        f"/api/customers/{customer_id}/rate-cards/conflicts",
        params={"effective_date": "2024-06-01T00:00:00+00:00"},
        headers=_auth_header(),
    )
    assert check.status_code == 200
    assert check.json()["has_conflict"] is True
    assert check.json()["conflicting_rate_card"]["id"] == card["id"]


def test_rate_card_versioning_over_http(billing_client: TestClient) -> None:
    customer_id, contract_id = _bootstrap_customer(billing_client)
    card = _create_rate_card(billing_client, customer_id, contract_id)

    version_resp = billing_client.post(
        f"/api/rate-cards/{card['id']}/versions",
        json={"effective_date": "2024-07-01T00:00:00Z", "rates": {"storage": {"pallet_monthly": "22"}}},
        headers=_auth_header(),
    )
    assert version_resp.status_code == 201
    v2 = version_resp.json()
    assert v2["version"] == 2
    assert v2["supersedes_id"] == card["id"]

    adjustment_resp = billing_client.post(
        f"/api/rate-cards/{v2['id']}/adjustments",
        json={"effective_date": "2024-11-01T00:00:00Z", "rates": {"storage": {"pallet_monthly": "18"}}},
        headers=_auth_header(),
    )
    assert adjustment_resp.status_code == 201

    nested = billing_client.post(
        f"/api/rate-cards/{adjustment_resp.json()['id']}/adjustments",
        json={"effective_date": "2024-12-01T00:00:00Z", "rates": {"storage": {"pallet_monthly": "17"}}},
        headers=_auth_header(),
    )
    assert nested.status_code == 422

    effective = billing_client.get(
        f"/api/customers/{customer_id}/effective-rates",
        params={"at": "2024-11-15T00:00:00+00:00", "service_type": "storage"},
        headers=_auth_header(),
    )
    assert effective.status_code == 200
    assert Decimal(effective.json()["rates"]["pallet_monthly"]) == Decimal("18")

    for_date = billing_client.get(
        f"/api/customers/{customer_id}/rate-cards/for-date",
        params={"at": "2024-03-01T00:00:00+00:00"},
        headers=_auth_header(),
    )
    assert for_date.status_code == 200
    assert for_date.json()["id"] == card["id"]

    history = billing_client.get(f"/api/customers/{customer_id}/rate-cards", headers=_auth_header())
    assert [(item["version"], item["rate_card_type"]) for item in history.json()] == [
        (2, "ADJUSTMENT"),
        (2, "STANDARD"),
        (1, "STANDARD"),
    ]

    missing = billing_client.post(
        "/api/rate-cards/does-not-exist/versions",
        json={"effective_date": "2024-08-01T00:00:00Z"},
        headers=_auth_header(),
    )
    assert missing.status_code == 404


def test_activity_ingest_deduplicates_by_reference(billing_client: TestClient) -> None:
    customer_id, _ = _bootstrap_customer(billing_client)
    body = {
        "occurred_at": "2024-02-10T12:00:00Z",
        "activity_type": "order_fulfillment",
        "quantity": "12",
        "reference_id": "WMS-42",
    }

    first = _ingest(billing_client, customer_id, body)
    second = _ingest(billing_client, customer_id, body)

    assert first["deduplicated"] is False
    assert second["deduplicated"] is True
    assert second["activity"]["id"] == first["activity"]["id"]

    listed = billing_client.get(f"/api/billing/customers/{customer_id}/activities", headers=_auth_header())
    assert len(listed.json()) == 1

    zero = billing_client.post(
        f"/api/billing/customers/{customer_id}/activities",
        json={**body, "quantity": "0", "reference_id": "WMS-43"},
        headers=_auth_header(),
    )
    assert zero.status_code == 422


def test_invoice_lifecycle_with_minimum_and_payments(billing_client: TestClient) -> None:
    customer_id, contract_id = _bootstrap_customer(billing_client)
    card = _create_rate_card(billing_client, customer_id, contract_id)
    _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-10T00:00:00Z", "activity_type": "storage_pallet_monthly", "quantity": "15"},
    )
    _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-11T00:00:00Z", "activity_type": "order_fulfillment", "quantity": "40"},
    )
    _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-12T00:00:00Z", "activity_type": "pick_line", "quantity": "9"},
    )

    preview = billing_client.get(
        f"/api/billing/customers/{customer_id}/invoice-lines",
        params=PERIOD,
        headers=_auth_header(),
    )
    assert preview.status_code == 200
    assert Decimal(preview.json()["subtotal"]) == Decimal("420.00")
    assert preview.json()["unpriced_line_count"] == 1

    generate = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json=PERIOD,
        headers=_auth_header(),
    )
    assert generate.status_code == 201
    invoice = generate.json()
    assert invoice["invoice_number"] == "INV-20240201-ACME-M01"
    assert invoice["status"] == "DRAFT"
    assert Decimal(invoice["total"]) == Decimal("500.00")
    assert invoice["data_snapshot"]["rate_card_ids"] == [card["id"]]
    assert invoice["data_snapshot"]["unpriced_line_count"] == 1

    detail = billing_client.get(f"/api/billing/invoices/{invoice['id']}", headers=_auth_header())
    lines = detail.json()["lines"]
    minimum_line = next(line for line in lines if line["category"] == "minimum")
    assert Decimal(minimum_line["line_total"]) == Decimal("80.00")
    assert [line["line_order"] for line in lines] == list(range(1, len(lines) + 1))

    again = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json=PERIOD,
        headers=_auth_header(),
    )
    assert again.json()["id"] == invoice["id"]

    _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-20T00:00:00Z", "activity_type": "storage_pallet_monthly", "quantity": "5"},
    )
    recomputed = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json={**PERIOD, "force_recompute": True},
        headers=_auth_header(),
    )
    assert recomputed.json()["id"] == invoice["id"]
    assert Decimal(recomputed.json()["total"]) == Decimal("520.00")

    issued = billing_client.post(f"/api/billing/invoices/{invoice['id']}/issue", headers=_auth_header())
    assert issued.status_code == 200
    assert issued.json()["status"] == "ISSUED"
    assert issued.json()["due_date"] is not None

    blocked = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json={**PERIOD, "force_recompute": True},
        headers=_auth_header(),
    )
    assert blocked.status_code == 409

    shortcut = billing_client.post(
        f"/api/billing/invoices/{invoice['id']}/status",
        json={"status": "PAID"},
        headers=_auth_header(),
    )
    assert shortcut.status_code == 422

    partial = billing_client.post(
        f"/api/billing/invoices/{invoice['id']}/payments",
        json={"amount": "200.00", "reference": "ACH-1"},
        headers=_auth_header(),
    )
    assert partial.json()["status"] == "PARTIAL"
    assert Decimal(partial.json()["balance_due"]) == Decimal("320.00")

    overpay = billing_client.post(
        f"/api/billing/invoices/{invoice['id']}/payments",
        json={"amount": "400.00"},
        headers=_auth_header(),
    )
    assert overpay.status_code == 422

    paid = billing_client.post(
        f"/api/billing/invoices/{invoice['id']}/payments",
        json={"amount": "320.00", "reference": "ACH-2"},
        headers=_auth_header(),
    )
    assert paid.json()["status"] == "PAID"
    assert Decimal(paid.json()["balance_due"]) == Decimal("0.00")

    void = billing_client.post(
        f"/api/billing/invoices/{invoice['id']}/void",
        json={"reason": "too late"},
        headers=_auth_header(),
    )
    assert void.status_code == 409

    listed = billing_client.get(
        "/api/billing/invoices",
        params={"customer_id": customer_id, "status": "PAID"},
        headers=_auth_header(),
    )
    assert [item["id"] for item in listed.json()] == [invoice["id"]]

    with Session(db.engine) as session:
        audit_actions = {row.action for row in session.exec(select(AuditLog)).all()}
        event_types = [row.event_type for row in session.exec(select(EventRecord)).all()]
    assert "billing.invoice.generate" in audit_actions
    assert "billing.invoice.payment" in audit_actions
    assert event_types.count("invoice.payment_applied") == 2


def test_voided_invoice_can_be_regenerated(billing_client: TestClient) -> None:
    customer_id, contract_id = _bootstrap_customer(billing_client)
    _create_rate_card(billing_client, customer_id, contract_id)
    _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-10T00:00:00Z", "activity_type": "storage_pallet_monthly", "quantity": "30"},
    )

    first = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json=PERIOD,
        headers=_auth_header(),
    ).json()
    void = billing_client.post(
        f"/api/billing/invoices/{first['id']}/void",
        json={"reason": "wrong period"},
        headers=_auth_header(),
    )
    assert void.json()["status"] == "VOID"
    assert void.json()["voided_at"] is not None

    second = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json=PERIOD,
        headers=_auth_header(),
    )
    assert second.status_code == 201
    assert second.json()["id"] != first["id"]
    assert second.json()["invoice_number"] == "INV-20240201-ACME-M02"
    assert Decimal(second.json()["total"]) == Decimal("600.00")


def test_each_activity_is_billed_on_its_service_cycle_only(billing_client: TestClient) -> None:
    customer_id, contract_id = _bootstrap_customer(billing_client)
    rejected = billing_client.post(
        f"/api/customers/{customer_id}/rate-cards",
        json={
            "effective_date": "2024-01-01T00:00:00Z",
            "rates": {"storage": {"pallet_monthly": "20"}},
            "billing_cycles": {"storage": "WEEKLY"},
            "contract_ids": [contract_id],
        },
        headers=_auth_header(),
    )
    assert rejected.status_code == 422

    created = billing_client.post(
        f"/api/customers/{customer_id}/rate-cards",
        json={
            "effective_date": "2024-01-01T00:00:00Z",
            "rates": {"storage": {"pallet_monthly": "20"}, "fulfillment": {"base_order": "3.00"}},
            "billing_cycles": {"storage": "MONTHLY", "fulfillment": "WEEKLY"},
            "contract_ids": [contract_id],
        },
        headers=_auth_header(),
    )
    assert created.status_code == 201
    storage = _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-03T00:00:00Z", "activity_type": "storage_pallet_monthly", "quantity": "10"},
    )["activity"]
    orders = _ingest(
        billing_client,
        customer_id,
        {"occurred_at": "2024-02-03T00:00:00Z", "activity_type": "order_fulfillment", "quantity": "40"},
    )["activity"]

    weekly_period = {"period_start": "2024-02-01T00:00:00+00:00", "period_end": "2024-02-08T00:00:00+00:00"}
    preview = billing_client.get(
        f"/api/billing/customers/{customer_id}/invoice-lines",
        params={**weekly_period, "billing_cycle": "WEEKLY"},
        headers=_auth_header(),
    )
    assert preview.status_code == 200
    assert [line["subtype"] for line in preview.json()["lines"]] == ["base_order"]

    weekly = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json={**weekly_period, "billing_cycle": "WEEKLY"},
        headers=_auth_header(),
    )
    monthly = billing_client.post(
        f"/api/billing/customers/{customer_id}/invoices",
        json={**PERIOD, "billing_cycle": "MONTHLY"},
        headers=_auth_header(),
    )

    assert weekly.status_code == 201
    assert monthly.status_code == 201
    assert weekly.json()["invoice_number"] == "INV-20240201-ACME-W01"
    assert weekly.json()["data_snapshot"]["activity_ids"] == [orders["id"]]
    assert Decimal(weekly.json()["total"]) == Decimal("120.00")
    assert monthly.json()["data_snapshot"]["activity_ids"] == [storage["id"]]
    assert Decimal(monthly.json()["total"]) == Decimal("200.00")


def test_invoice_sequence_treats_customer_code_literally(billing_client: TestClient) -> None:
    headers = _auth_header()
    numbers: dict[str, str] = {}
    for code in ("ABC", "A_C"):
        customer = billing_client.post(
            "/api/registry/customers",
            json={"code": code, "name": f"{code} Logistics"},
            headers=headers,
        ).json()
        invoice = billing_client.post(
            f"/api/billing/customers/{customer['id']}/invoices",
            json=PERIOD,
            headers=headers,
        )
        assert invoice.status_code == 201
        numbers[code] = invoice.json()["invoice_number"]

    assert numbers == {"ABC": "INV-20240201-ABC-M01", "A_C": "INV-20240201-A_C-M01"}


def test_billing_services_catalog(billing_client: TestClient) -> None:
    reader = _auth_header(["billing.read"])

    catalog = billing_client.get("/api/billing/services", headers=reader)
    assert catalog.status_code == 200
    categories = {item["code"]: item for item in catalog.json()}
    assert list(categories) == ["receiving", "storage", "fulfillment", "shipping", "vas"]
    assert categories["storage"]["allowed_billing_cycles"] == ["MONTHLY"]
    storage_codes = {service["code"]: service["unit"] for service in categories["storage"]["services"]}
    assert storage_codes["storage_pallet_monthly"] == "pallet"

    order = billing_client.get("/api/billing/services/order_fulfillment", headers=reader)
    assert order.status_code == 200
    assert order.json()["name"] == "Order fulfillment"
    assert order.json()["service_type"] == "fulfillment"
    assert order.json()["subtype"] == "base_order"

    kitting = billing_client.get("/api/billing/services/vas.kitting", headers=reader)
    assert kitting.status_code == 200
    assert kitting.json()["category"] == "vas"

    missing = billing_client.get("/api/billing/services/teleportation", headers=reader)
    assert missing.status_code == 404

    forbidden = billing_client.get("/api/billing/services", headers=_auth_header(["rate_card.read"]))
    assert forbidden.status_code == 403
