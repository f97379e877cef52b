import logging
from datetime import date

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db
from errors import ConflictError
from models import (
    AccountType,
    BankAccount,
    IncomeEvent,
    IncomeStatus,
    Payment,
    SpendingCategory,
    Transaction,
)
from services import BudgetCategoryService

FAMILY_HEADERS = {"X-Family-Id": "1", "X-Actor-Id": "42"}


def make_client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), SessionLocal


def test_allocation_flow_uses_camel_case_and_decimal_strings() -> None:
    client, SessionLocal = make_client()
    with SessionLocal() as session:
        event = IncomeEvent(
            family_id=1, name="Salary", scheduled_date=date(2025, 1, 1), amount_cents=100_000
        )
        session.add(event)
        session.commit()
        event_id = event.id

    for name, pct in (("Needs", "50"), ("Wants", "30"), ("Savings", "20")):
        resp = client.post(
            "/api/budget-categories",
            json={"name": name, "targetPercentage": pct},
            headers=FAMILY_HEADERS,
        )
        assert resp.status_code == 201
        assert resp.json()["targetPercentage"] == f"{pct}.00"

    resp = client.post(f"/api/income-events/{event_id}/allocate", headers=FAMILY_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["isComplete"] is True
    assert body["allocatedAmount"] == "1000.00"
    assert [c["amount"] for c in body["categories"]] == ["500.00", "300.00", "200.00"]


def test_error_kinds_map_to_status_codes() -> None:
    client, _ = make_client()

    resp = client.post("/api/income-events/999/allocate", headers=FAMILY_HEADERS)
    assert resp.status_code == 404
    assert resp.json() == {"error": "not_found", "message": "Income event not found"}

    resp = client.post(
        "/api/budget-categories",
        json={"name": "Too much", "targetPercentage": "101"},
        headers=FAMILY_HEADERS,
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_failed"

    resp = client.post("/api/payments/auto-attribute", headers=FAMILY_HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"paymentsAttributed": 0}


def test_family_header_is_required() -> None:
    client, _ = make_client()
    resp = client.get("/api/budget-categories")
    assert resp.status_code == 422


def test_attribution_and_payment_status_endpoints() -> None:
    client, SessionLocal = make_client()
    with SessionLocal() as session:
        event = IncomeEvent(
            family_id=1,
            name="Salary",
            scheduled_date=date(2025, 1, 1),
            amount_cents=5_000,
            received_amount_cents=5_000,
            status=IncomeStatus.received,
        )
        payment = Payment(
            family_id=1, payee="Power", amount_cents=20_000, due_date=date(2025, 1, 5)
        )
        session.add_all([event, payment])
        session.commit()
        event_id, payment_id = event.id, payment.id

    resp = client.post(
        f"/api/payments/{payment_id}/attributions",
        json={"incomeEventId": event_id, "amount": "60.00"},
        headers=FAMILY_HEADERS,
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Attribution amount exceeds available income"

    resp = client.post("/api/payments/auto-attribute", headers=FAMILY_HEADERS)
    assert resp.json() == {"paymentsAttributed": 1}

    resp = client.get(f"/api/payments/{payment_id}/attributions", headers=FAMILY_HEADERS)
    summary = resp.json()["summary"]
    assert summary["totalAttributed"] == "50.00"
    assert summary["remainingAmount"] == "150.00"

    resp = client.delete(f"/api/payments/{payment_id}/paid", headers=FAMILY_HEADERS)
    assert resp.status_code == 400

    resp = client.post(
        f"/api/payments/{payment_id}/paid",
        json={"paidDate": "2025-01-06"},
        headers=FAMILY_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "paid"

    other = {"X-Family-Id": "2"}
    resp = client.get(f"/api/payments/{payment_id}/attributions", headers=other)
    assert resp.status_code == 404


def test_conflict_maps_to_409_after_retries(monkeypatch, caplog) -> None:
    client, _ = make_client()
    calls = []

    def conflicting(self, data):
        calls.append(data.name)
        raise ConflictError("Concurrent modification detected; retry")

    monkeypatch.setattr(BudgetCategoryService, "create", conflicting)

    with caplog.at_level(logging.WARNING, logger="main"):
        resp = client.post(
            "/api/budget-categories",
            json={"name": "Needs", "targetPercentage": "50"},
            headers=FAMILY_HEADERS,
        )
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "conflict",
        "message": "Concurrent modification detected; retry",
    }
    assert len(calls) > 1
    assert any(
        r.name == "main" and "kind=conflict" in r.getMessage() for r in caplog.records
    )


def test_batch_categorize_reports_updated_count() -> None:
    client, SessionLocal = make_client()
    with SessionLocal() as session:
        account = BankAccount(
            family_id=1,
            institution_name="Bank",
            account_name="Checking",
            account_type=AccountType.checking,
        )
        category = SpendingCategory(family_id=1, name="Groceries")
        session.add_all([account, category])
        session.flush()
        txns = [
            Transaction(
                family_id=1,
                bank_account_id=account.id,
                amount_cents=-1_000,
                date=date(2025, 1, day),
                merchant_name="Shop",
            )
            for day in (1, 2, 3)
        ]
        session.add_all(txns)
        session.commit()
        txn_ids, category_id = [t.id for t in txns], category.id

    resp = client.post(
        "/api/transactions/categorize",
        json={"transactionIds": txn_ids + [999], "spendingCategoryId": category_id},
        headers=FAMILY_HEADERS,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["updatedCount"] == 3
    assert body["errors"] == [{"transactionId": 999, "error": "Transaction not found"}]
