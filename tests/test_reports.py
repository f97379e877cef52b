from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationFailedError
from models import (
    AccountType,
    BankAccount,
    BudgetAllocation,
    BudgetCategory,
    IncomeEvent,
    IncomeStatus,
    Payment,
    PaymentAttribution,
    PaymentStatus,
    SpendingCategory,
    Transaction,
)
from periods import Period, resolve_period
from services import ReportService

FAMILY = 1
JANUARY = Period("custom", date(2025, 1, 1), date(2025, 1, 31))


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def account(session, kind: AccountType, balance: int, **fields) -> BankAccount:
    acct = BankAccount(
        family_id=fields.pop("family_id", FAMILY),
        institution_name="Bank",
        account_name=kind.value.title(),
        account_type=kind,
        current_balance_cents=balance,
        **fields,
    )
    session.add(acct)
    session.commit()
    return acct


def txn(session, acct: BankAccount, amount: int, day: int, category=None, **fields):
    row = Transaction(
        family_id=acct.family_id,
        bank_account_id=acct.id,
        amount_cents=amount,
        date=date(2025, 1, day),
        merchant_name="Merchant",
        spending_category_id=category.id if category else None,
        **fields,
    )
    session.add(row)
    session.commit()
    return row


def test_net_worth_splits_assets_and_liabilities() -> None:
    session = make_session()
    account(session, AccountType.checking, 100_000)
    account(session, AccountType.savings, 50_000)
    account(session, AccountType.credit, -20_000)
    account(session, AccountType.loan, 30_000, deleted_at=datetime(2025, 1, 1))
    account(session, AccountType.checking, 999_999, family_id=2)

    report = ReportService(session, FAMILY).net_worth()

    assert report.assets == "1500.00"
    assert report.liabilities == "200.00"
    assert report.net_worth == "1300.00"
    assert len(report.accounts) == 3


def test_spending_analysis_groups_debits_by_category() -> None:
    session = make_session()
    checking = account(session, AccountType.checking, 0)
    food = SpendingCategory(family_id=FAMILY, name="Food", monthly_target_cents=30_000)
    fuel = SpendingCategory(family_id=FAMILY, name="Fuel")
    session.add_all([food, fuel])
    session.commit()
    txn(session, checking, -4_000, 3, food)
    txn(session, checking, -6_000, 9, food)
    txn(session, checking, -2_500, 10, fuel)
    txn(session, checking, -1_000, 11)
    txn(session, checking, 200_000, 1)
    txn(session, checking, -9_999, 2, food).date = date(2025, 2, 2)
    session.commit()

    report = ReportService(session, FAMILY).spending_analysis(JANUARY)

    assert report.total_spent == "135.00"
    assert [(c.name, c.amount) for c in report.categories] == [
        ("Food", "100.00"),
        ("Fuel", "25.00"),
        ("Uncategorized", "10.00"),
    ]
    assert report.categories[0].transaction_count == 2
    assert report.categories[0].monthly_target == "300.00"


def test_cash_flow_combines_transactions_income_and_payments() -> None:
    session = make_session()
    checking = account(session, AccountType.checking, 0)
    txn(session, checking, 300_000, 1)
    txn(session, checking, -120_000, 5)
    event = IncomeEvent(
        family_id=FAMILY,
        name="Salary",
        scheduled_date=date(2025, 1, 1),
        amount_cents=300_000,
        received_amount_cents=300_000,
        status=IncomeStatus.received,
    )
    budget = BudgetCategory(family_id=FAMILY, name="Needs", target_percentage_bp=5_000)
    payment = Payment(
        family_id=FAMILY, payee="Landlord", amount_cents=120_000, due_date=date(2025, 1, 5)
    )
    session.add_all([event, budget, payment])
    session.commit()
    session.add_all(
        [
            BudgetAllocation(
                family_id=FAMILY,
                income_event_id=event.id,
                budget_category_id=budget.id,
                amount_cents=150_000,
                percentage_bp=5_000,
            ),
            PaymentAttribution(
                family_id=FAMILY,
                payment_id=payment.id,
                income_event_id=event.id,
                amount_cents=100_000,
            ),
        ]
    )
    session.commit()

    report = ReportService(session, FAMILY).cash_flow(JANUARY)

    assert report.inflow == "3000.00"
    assert report.outflow == "1200.00"
    assert report.net == "1800.00"
    assert report.planned_income == "3000.00"
    assert report.received_income == "3000.00"
    assert report.allocated == "1500.00"
    assert report.payments_due == "1200.00"
    assert report.attributed == "1000.00"
    assert report.unattributed == "200.00"


def test_budget_performance_compares_allocation_to_spend() -> None:
    session = make_session()
    checking = account(session, AccountType.checking, 0)
    needs = BudgetCategory(family_id=FAMILY, name="Needs", target_percentage_bp=5_000)
    wants = BudgetCategory(
        family_id=FAMILY, name="Wants", target_percentage_bp=3_000, sort_order=1
    )
    event = IncomeEvent(
        family_id=FAMILY, name="Salary", scheduled_date=date(2025, 1, 1), amount_cents=100_000
    )
    session.add_all([needs, wants, event])
    session.commit()
    food = SpendingCategory(family_id=FAMILY, name="Food", budget_category_id=needs.id)
    fun = SpendingCategory(family_id=FAMILY, name="Fun", budget_category_id=wants.id)
    session.add_all([food, fun])
    session.add_all(
        [
            BudgetAllocation(
                family_id=FAMILY,
                income_event_id=event.id,
                budget_category_id=needs.id,
                amount_cents=50_000,
                percentage_bp=5_000,
            ),
            BudgetAllocation(
                family_id=FAMILY,
                income_event_id=event.id,
                budget_category_id=wants.id,
                amount_cents=30_000,
                percentage_bp=3_000,
            ),
        ]
    )
    session.commit()
    txn(session, checking, -20_000, 4, food)
    paid = Payment(
        family_id=FAMILY,
        payee="Concert",
        amount_cents=45_000,
        due_date=date(2025, 1, 10),
        paid_date=date(2025, 1, 10),
        status=PaymentStatus.paid,
        spending_category_id=fun.id,
    )
    session.add(paid)
    session.commit()

    report = ReportService(session, FAMILY).budget_performance(JANUARY)
    rows = {r.name: r for r in report.categories}

    assert rows["Needs"].target_amount == "500.00"
    assert rows["Needs"].actual_amount == "200.00"
    assert rows["Needs"].variance == "300.00"
    assert rows["Needs"].percent_used == "40.00"
    assert rows["Wants"].actual_amount == "450.00"
    assert rows["Wants"].variance == "-150.00"
    assert rows["Wants"].percent_used == "150.00"


def test_resolve_period() -> None:
    today = date(2025, 3, 14)
    assert resolve_period(None, today=today) == Period(
        "this_month", date(2025, 3, 1), date(2025, 3, 31)
    )
    assert resolve_period("last_month", today=today).end == date(2025, 2, 28)
    custom = resolve_period("custom", "2025-01-01", "2025-01-31", today=today)
    assert (custom.start, custom.end) == (date(2025, 1, 1), date(2025, 1, 31))
    with pytest.raises(ValidationFailedError):
        resolve_period("custom", "2025-02-01", "2025-01-01", today=today)
    with pytest.raises(ValidationFailedError):
        resolve_period("fortnight", today=today)
