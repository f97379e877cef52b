from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import CategoryDeletionBlockedError, NotFoundError, ValidationFailedError
from models import BudgetCategory, Payment, SpendingCategory
from schemas import BudgetCategoryIn, SpendingCategoryIn, SpendingCategoryUpdate
from services import BudgetCategoryService, SpendingCategoryService

FAMILY = 1
OTHER_FAMILY = 2


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_create_links_budget_and_parent() -> None:
    session = make_session()
    needs = BudgetCategoryService(session, FAMILY).create(
        BudgetCategoryIn(name="Needs", target_percentage=Decimal("50"))
    )
    service = SpendingCategoryService(session, FAMILY)
    food = service.create(SpendingCategoryIn(name="Food", budget_category_id=needs.id))
    groceries = service.create(
        SpendingCategoryIn(
            name="Groceries",
            budget_category_id=needs.id,
            parent_category_id=food.id,
            monthly_target=Decimal("400.00"),
        )
    )

    assert groceries.parent_category_id == food.id
    assert groceries.monthly_target_cents == 40_000
    assert [c.name for c in service.list_all()] == ["Food", "Groceries"]

    with pytest.raises(ValidationFailedError):
        service.create(SpendingCategoryIn(name="food"))


def test_foreign_links_are_not_found() -> None:
    session = make_session()
    foreign_budget = BudgetCategory(
        family_id=OTHER_FAMILY, name="Theirs", target_percentage_bp=1_000
    )
    foreign_parent = SpendingCategory(family_id=OTHER_FAMILY, name="Theirs")
    session.add_all([foreign_budget, foreign_parent])
    session.commit()
    service = SpendingCategoryService(session, FAMILY)

    with pytest.raises(NotFoundError):
        service.create(
            SpendingCategoryIn(name="Mine", budget_category_id=foreign_budget.id)
        )
    with pytest.raises(NotFoundError):
        service.create(
            SpendingCategoryIn(name="Mine", parent_category_id=foreign_parent.id)
        )


def test_parent_cycles_are_rejected() -> None:
    session = make_session()
    service = SpendingCategoryService(session, FAMILY)
    top = service.create(SpendingCategoryIn(name="Top"))
    middle = service.create(SpendingCategoryIn(name="Middle", parent_category_id=top.id))
    leaf = service.create(SpendingCategoryIn(name="Leaf", parent_category_id=middle.id))

    with pytest.raises(ValidationFailedError):
        service.update(top.id, SpendingCategoryUpdate(parent_category_id=leaf.id))
    with pytest.raises(ValidationFailedError):
        service.update(top.id, SpendingCategoryUpdate(parent_category_id=top.id))

    moved = service.update(leaf.id, SpendingCategoryUpdate(parent_category_id=None))
    assert moved.parent_category_id is None


def test_delete_blocked_by_children() -> None:
    session = make_session()
    service = SpendingCategoryService(session, FAMILY)
    parent = service.create(SpendingCategoryIn(name="Household"))
    first = service.create(SpendingCategoryIn(name="Cleaning", parent_category_id=parent.id))
    second = service.create(SpendingCategoryIn(name="Repairs", parent_category_id=parent.id))

    with pytest.raises(CategoryDeletionBlockedError):
        service.delete(parent.id)
    assert session.get(SpendingCategory, parent.id) is not None

    service.delete(first.id)
    service.delete(second.id)
    service.delete(parent.id)
    assert session.get(SpendingCategory, parent.id) is None


def test_delete_blocked_by_payments() -> None:
    session = make_session()
    service = SpendingCategoryService(session, FAMILY)
    rent = service.create(SpendingCategoryIn(name="Rent"))
    session.add(
        Payment(
            family_id=FAMILY,
            payee="Landlord",
            amount_cents=150_000,
            due_date=date(2025, 1, 1),
            spending_category_id=rent.id,
        )
    )
    session.commit()

    with pytest.raises(CategoryDeletionBlockedError):
        service.delete(rent.id)


def test_budget_category_delete_blocked_by_active_spending() -> None:
    session = make_session()
    budgets = BudgetCategoryService(session, FAMILY)
    needs = budgets.create(BudgetCategoryIn(name="Needs", target_percentage=Decimal("50")))
    spending = SpendingCategoryService(session, FAMILY)
    food = spending.create(SpendingCategoryIn(name="Food", budget_category_id=needs.id))

    with pytest.raises(CategoryDeletionBlockedError):
        budgets.delete(needs.id)

    spending.update(food.id, SpendingCategoryUpdate(is_active=False))
    budgets.delete(needs.id)
    assert session.get(SpendingCategory, food.id).budget_category_id is None
