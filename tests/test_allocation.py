from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    NoActiveCategoriesError,
    NotFoundError,
    OverallocationError,
    ValidationFailedError,
)
from models import BudgetAllocation, BudgetCategory, IncomeEvent
from schemas import (
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    BudgetTemplateIn,
    TemplateCategoryIn,
)
from services import AllocationService, BudgetCategoryService

FAMILY = 1
OTHER_FAMILY = 2


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_event(session, amount_cents: int, family_id: int = FAMILY) -> IncomeEvent:
    event = IncomeEvent(
        family_id=family_id,
        name="Paycheck",
        scheduled_date=date(2025, 1, 15),
        amount_cents=amount_cents,
    )
    session.add(event)
    session.commit()
    return event


def add_categories(session, *percentages: str) -> list[BudgetCategory]:
    service = BudgetCategoryService(session, FAMILY)
    names = ["Needs", "Wants", "Savings", "Giving"]
    return [
        service.create(BudgetCategoryIn(name=names[i], target_percentage=Decimal(p)))
        for i, p in enumerate(percentages)
    ]


def allocation_count(session, event_id: int) -> int:
    return session.scalar(
        select(func.count(BudgetAllocation.id)).where(
            BudgetAllocation.income_event_id == event_id
        )
    )


def test_fifty_thirty_twenty_split_is_complete() -> None:
    session = make_session()
    add_categories(session, "50", "30", "20")
    event = add_event(session, 100_000)

    summary = AllocationService(session, FAMILY).allocate(event.id)

    assert [c.amount for c in summary.categories] == ["500.00", "300.00", "200.00"]
    assert [c.name for c in summary.categories] == ["Needs", "Wants", "Savings"]
    assert summary.allocated_amount == "1000.00"
    assert summary.remaining_amount == "0.00"
    assert summary.allocated_percentage == "100.00"
    assert summary.is_complete is True
    assert summary.is_overallocated is False


def test_remainder_goes_to_last_category() -> None:
    session = make_session()
    add_categories(session, "33.33", "33.33", "33.34")
    event = add_event(session, 10_001)

    summary = AllocationService(session, FAMILY).allocate(event.id)

    assert [c.amount for c in summary.categories] == ["33.33", "33.33", "33.35"]
    assert summary.is_complete is True


def test_partial_percentages_leave_remainder_unallocated() -> None:
    session = make_session()
    add_categories(session, "50", "30")
    event = add_event(session, 100_000)

    summary = AllocationService(session, FAMILY).allocate(event.id)

    assert summary.allocated_amount == "800.00"
    assert summary.remaining_amount == "200.00"
    assert summary.remaining_percentage == "20.00"
    assert summary.is_complete is False


def test_reallocation_replaces_previous_rows() -> None:
    session = make_session()
    needs, wants, savings = add_categories(session, "50", "30", "20")
    event = add_event(session, 100_000)
    service = AllocationService(session, FAMILY)
    service.allocate(event.id)

    summary = service.allocate(
        event.id,
        {needs.id: Decimal("60"), wants.id: Decimal("20"), savings.id: Decimal("20")},
    )

    assert allocation_count(session, event.id) == 3
    assert [c.amount for c in summary.categories] == ["600.00", "200.00", "200.00"]


def test_override_above_hundred_percent_writes_nothing() -> None:
    session = make_session()
    needs, wants, _ = add_categories(session, "50", "30", "20")
    event = add_event(session, 100_000)
    service = AllocationService(session, FAMILY)
    service.allocate(event.id)

    with pytest.raises(OverallocationError):
        service.allocate(event.id, {needs.id: Decimal("60"), wants.id: Decimal("50")})

    summary = service.summary(event.id)
    assert [c.amount for c in summary.categories] == ["500.00", "300.00", "200.00"]


def test_zero_percent_categories_are_skipped() -> None:
    session = make_session()
    needs, wants = add_categories(session, "100", "0")
    event = add_event(session, 5_000)

    summary = AllocationService(session, FAMILY).allocate(event.id)

    assert [c.id for c in summary.categories] == [needs.id]
    assert summary.categories[0].amount == "50.00"


def test_allocate_requires_active_categories() -> None:
    session = make_session()
    event = add_event(session, 100_000)
    with pytest.raises(NoActiveCategoriesError):
        AllocationService(session, FAMILY).allocate(event.id)


def test_foreign_income_event_is_not_found() -> None:
    session = make_session()
    add_categories(session, "100")
    event = add_event(session, 100_000, family_id=OTHER_FAMILY)
    with pytest.raises(NotFoundError) as exc:
        AllocationService(session, FAMILY).allocate(event.id)
    assert str(exc.value) == "Income event not found"


def test_category_percentages_cannot_exceed_hundred() -> None:
    session = make_session()
    needs, _ = add_categories(session, "70", "30")
    service = BudgetCategoryService(session, FAMILY)

    with pytest.raises(OverallocationError):
        service.create(BudgetCategoryIn(name="Fun", target_percentage=Decimal("1")))
    with pytest.raises(OverallocationError):
        service.update(needs.id, BudgetCategoryUpdate(target_percentage=Decimal("71")))

    service.update(needs.id, BudgetCategoryUpdate(is_active=False))
    created = service.create(
        BudgetCategoryIn(name="Fun", target_percentage=Decimal("70"))
    )
    assert service.active_percentage_total() == 10_000
    assert created.sort_order == 3


def test_update_allocation_enforces_event_total() -> None:
    session = make_session()
    add_categories(session, "50", "50")
    event = add_event(session, 10_000)
    service = AllocationService(session, FAMILY)
    service.allocate(event.id)
    first = session.scalars(
        select(BudgetAllocation)
        .where(BudgetAllocation.income_event_id == event.id)
        .order_by(BudgetAllocation.id)
    ).first()

    with pytest.raises(OverallocationError):
        service.update_allocation(first.id, Decimal("50.01"))

    summary = service.update_allocation(first.id, Decimal("40.00"))
    assert summary.allocated_amount == "90.00"
    assert summary.categories[0].percentage == "40.00"
    assert summary.is_complete is False


def test_apply_template_updates_creates_and_deactivates() -> None:
    session = make_session()
    service = BudgetCategoryService(session, FAMILY)
    needs = service.create(BudgetCategoryIn(name="Needs", target_percentage=Decimal("50")))
    old = service.create(BudgetCategoryIn(name="Old", target_percentage=Decimal("40")))

    applied = AllocationService(session, FAMILY).apply_template(
        BudgetTemplateIn(
            name="50/30/20",
            categories=[
                TemplateCategoryIn(name="needs", percentage=Decimal("60")),
                TemplateCategoryIn(name="Wants", percentage=Decimal("30")),
                TemplateCategoryIn(name="Savings", percentage=Decimal("10")),
            ],
        )
    )

    assert [c.sort_order for c in applied] == [1, 2, 3]
    assert applied[0].id == needs.id
    assert applied[0].target_percentage_bp == 6_000
    assert session.get(BudgetCategory, old.id).is_active is False
    assert service.active_percentage_total() == 10_000
    assert applied[1].color == "#10B981"


def test_apply_template_is_all_or_nothing() -> None:
    session = make_session()
    add_categories(session, "50", "50")
    service = AllocationService(session, FAMILY)

    with pytest.raises(OverallocationError):
        service.apply_template(
            BudgetTemplateIn(
                categories=[
                    TemplateCategoryIn(name="Needs", percentage=Decimal("70")),
                    TemplateCategoryIn(name="Other", percentage=Decimal("40")),
                ]
            )
        )
    with pytest.raises(ValidationFailedError):
        service.apply_template(
            BudgetTemplateIn(
                categories=[TemplateCategoryIn(name="Needs", percentage=Decimal("150"))]
            )
        )

    names = [c.name for c in BudgetCategoryService(session, FAMILY).list_all()]
    assert names == ["Needs", "Wants"]


def test_export_template_round_trips_active_categories() -> None:
    session = make_session()
    add_categories(session, "50", "30", "20")

    template = AllocationService(session, FAMILY).export_template("Mine")

    assert template.name == "Mine"
    assert [(c.name, c.percentage) for c in template.categories] == [
        ("Needs", Decimal("50.00")),
        ("Wants", Decimal("30.00")),
        ("Savings", Decimal("20.00")),
    ]
