from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional, Type, TypeVar

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.orm import Session

from rapidfuzz import fuzz, process

from config import get_settings
from database import Base, atomic
from errors import (
    AttributionExceedsPaymentError,
    BusinessRuleViolation,
    CategoryDeletionBlockedError,
    InactiveCategoryError,
    InsufficientIncomeError,
    NoActiveCategoriesError,
    NoAvailableIncomeEventsError,
    NotFoundError,
    OverallocationError,
    PaymentAlreadyPaidError,
    PaymentFullyAttributedError,
    PaymentNotPaidError,
    ValidationFailedError,
)
from matching import (
    PaymentCandidate,
    ScoreWeights,
    TransactionCandidate,
    normalize_merchant,
    propose_matches,
)
from models import (
    AccountType,
    AttributionType,
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
from money import (
    FULL_PERCENT_BP,
    bp_to_decimal,
    format_bp,
    format_cents,
    percent_to_bp,
    percentage_of,
    split_by_percentages,
    to_cents,
)
from periods import Period
from schemas import (
    AllocationCategoryOut,
    AllocationSummaryOut,
    AttributionListOut,
    AttributionOut,
    AttributionSummary,
    BatchCategorizeError,
    BatchCategorizeIn,
    BatchCategorizeOut,
    BatchCategorizeSummary,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    BudgetPerformanceOut,
    BudgetPerformanceRowOut,
    BudgetTemplateIn,
    CashFlowOut,
    CategorySuggestionOut,
    IncomeEventRef,
    MatchOptions,
    MatchOut,
    NetWorthAccountOut,
    NetWorthOut,
    SpendingAnalysisOut,
    SpendingCategoryIn,
    SpendingCategoryTotalOut,
    SpendingCategoryUpdate,
    TemplateCategoryIn,
    TemplateOut,
    UncategorizedOut,
    UncategorizedTransactionOut,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

DEFAULT_COLORS = (
    "#3B82F6",
    "#10B981",
    "#F59E0B",
    "#EF4444",
    "#8B5CF6",
    "#F97316",
    "#06B6D4",
    "#84CC16",
)

FUZZY_MERCHANT_CUTOFF = 85
FUZZY_SUGGESTION_DISCOUNT = 0.8
MAX_PAGE_SIZE = 500


def default_color(index: int) -> str:
    return DEFAULT_COLORS[index % len(DEFAULT_COLORS)]


def get_owned(
    session: Session,
    model: Type[ModelT],
    entity_id: int,
    family_id: int,
    label: str,
    *,
    for_update: bool = False,
) -> ModelT:
    """Load a family-scoped row; missing and foreign rows are the same error."""
    obj = session.get(model, entity_id, with_for_update=for_update or None)
    if obj is None or obj.family_id != family_id:
        raise NotFoundError(label)
    return obj


class BudgetCategoryService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def list_all(self, include_inactive: bool = False) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .where(BudgetCategory.family_id == self.family_id)
            .order_by(BudgetCategory.sort_order, BudgetCategory.id)
        )
        if not include_inactive:
            stmt = stmt.where(BudgetCategory.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def active_percentage_total(self, exclude_id: Optional[int] = None) -> int:
        stmt = select(
            func.coalesce(func.sum(BudgetCategory.target_percentage_bp), 0)
        ).where(
            BudgetCategory.family_id == self.family_id,
            BudgetCategory.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _ensure_within_budget(
        self, new_bp: int, exclude_id: Optional[int] = None
    ) -> None:
        total = self.active_percentage_total(exclude_id) + new_bp
        if total > FULL_PERCENT_BP:
            raise OverallocationError(
                "Total budget percentages cannot exceed 100%. "
                f"Current total: {format_bp(total)}%"
            )

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(BudgetCategory.id).where(
            BudgetCategory.family_id == self.family_id,
            func.lower(BudgetCategory.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationFailedError("Budget category with this name already exists")

    def create(self, data: BudgetCategoryIn) -> BudgetCategory:
        bp = percent_to_bp(data.target_percentage)
        name = data.name.strip()
        with atomic(self.session, serializable=True):
            self._ensure_unique_name(name)
            self._ensure_within_budget(bp)
            sort_order = data.sort_order
            if sort_order is None:
                current_max = self.session.scalar(
                    select(func.max(BudgetCategory.sort_order)).where(
                        BudgetCategory.family_id == self.family_id,
                        BudgetCategory.is_active.is_(True),
                    )
                )
                sort_order = (current_max or 0) + 1
            category = BudgetCategory(
                family_id=self.family_id,
                name=name,
                target_percentage_bp=bp,
                color=data.color or default_color(sort_order - 1),
                sort_order=sort_order,
                is_active=True,
            )
            self.session.add(category)
            self.session.flush()
        logger.info(
            f"budget_category_create: family={self.family_id} id={category.id} "
            f"percentage_bp={bp}"
        )
        return category

    def update(self, category_id: int, data: BudgetCategoryUpdate) -> BudgetCategory:
        with atomic(self.session, serializable=True):
            category = get_owned(
                self.session,
                BudgetCategory,
                category_id,
                self.family_id,
                "Budget category",
                for_update=True,
            )
            if data.name is not None:
                name = data.name.strip()
                self._ensure_unique_name(name, exclude_id=category.id)
                category.name = name
            new_bp = category.target_percentage_bp
            if data.target_percentage is not None:
                new_bp = percent_to_bp(data.target_percentage)
            will_be_active = (
                data.is_active if data.is_active is not None else category.is_active
            )
            if will_be_active:
                self._ensure_within_budget(new_bp, exclude_id=category.id)
            category.target_percentage_bp = new_bp
            category.is_active = will_be_active
            if data.color is not None:
                category.color = data.color
            if data.sort_order is not None:
                category.sort_order = data.sort_order
            self.session.flush()
        logger.info(f"budget_category_update: family={self.family_id} id={category_id}")
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session, serializable=True):
            category = get_owned(
                self.session,
                BudgetCategory,
                category_id,
                self.family_id,
                "Budget category",
                for_update=True,
            )
            active_children = self.session.scalar(
                select(func.count(SpendingCategory.id)).where(
                    SpendingCategory.budget_category_id == category.id,
                    SpendingCategory.is_active.is_(True),
                )
            )
            if active_children:
                raise CategoryDeletionBlockedError(
                    "Cannot delete budget category with active spending categories"
                )
            for spending in self.session.scalars(
                select(SpendingCategory).where(
                    SpendingCategory.budget_category_id == category.id
                )
            ):
                spending.budget_category_id = None
            self.session.delete(category)
        logger.info(f"budget_category_delete: family={self.family_id} id={category_id}")


class AllocationService:
    """Splits income events across budget categories."""

    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _active_categories(self) -> list[BudgetCategory]:
        return BudgetCategoryService(self.session, self.family_id).list_all()

    def allocate(
        self,
        income_event_id: int,
        override_percentages: Optional[dict[int, Decimal]] = None,
    ) -> AllocationSummaryOut:
        """
        Replace the allocations of one income event.

        Each category gets a truncated share of the event amount; when the
        percentages cover exactly 100% the last category by sort order takes
        the remainder. Percentages above 100% are rejected before anything is
        written.
        """
        overrides = {
            int(category_id): percent_to_bp(value)
            for category_id, value in (override_percentages or {}).items()
        }
        with atomic(self.session, serializable=True):
            event = get_owned(
                self.session,
                IncomeEvent,
                income_event_id,
                self.family_id,
                "Income event",
                for_update=True,
            )
            categories = self._active_categories()
            known_ids = {c.id for c in categories}
            if any(category_id not in known_ids for category_id in overrides):
                raise NotFoundError("Budget category")

            plan = [
                (category, overrides.get(category.id, category.target_percentage_bp))
                for category in categories
            ]
            plan = [(category, bp) for category, bp in plan if bp > 0]
            if not plan:
                raise NoActiveCategoriesError("No active budget categories found")

            total_bp = sum(bp for _, bp in plan)
            if total_bp > FULL_PERCENT_BP:
                raise OverallocationError(
                    "Total budget percentages cannot exceed 100%. "
                    f"Current total: {format_bp(total_bp)}%"
                )

            amounts = split_by_percentages(
                event.amount_cents, [bp for _, bp in plan]
            )
            self.session.execute(
                delete(BudgetAllocation).where(
                    BudgetAllocation.income_event_id == event.id
                )
            )
            for (category, bp), amount in zip(plan, amounts):
                self.session.add(
                    BudgetAllocation(
                        family_id=self.family_id,
                        income_event_id=event.id,
                        budget_category_id=category.id,
                        amount_cents=amount,
                        percentage_bp=bp,
                    )
                )
            self.session.flush()
            summary = self._summary(event)
        logger.info(
            f"allocate: family={self.family_id} income_event={income_event_id} "
            f"categories={len(plan)} allocated_cents={sum(amounts)} "
            f"total_cents={event.amount_cents}"
        )
        return summary

    def summary(self, income_event_id: int) -> AllocationSummaryOut:
        event = get_owned(
            self.session, IncomeEvent, income_event_id, self.family_id, "Income event"
        )
        return self._summary(event)

    def update_allocation(self, allocation_id: int, amount: Decimal) -> AllocationSummaryOut:
        cents = to_cents(amount)
        if cents < 0:
            raise ValidationFailedError("Allocation amount cannot be negative")
        with atomic(self.session, serializable=True):
            allocation = get_owned(
                self.session,
                BudgetAllocation,
                allocation_id,
                self.family_id,
                "Budget allocation",
                for_update=True,
            )
            event = allocation.income_event
            other = int(
                self.session.execute(
                    select(
                        func.coalesce(func.sum(BudgetAllocation.amount_cents), 0)
                    ).where(
                        BudgetAllocation.income_event_id == event.id,
                        BudgetAllocation.id != allocation.id,
                    )
                ).scalar_one()
                or 0
            )
            if other + cents > event.amount_cents:
                raise OverallocationError("Allocation exceeds income event amount")
            allocation.amount_cents = cents
            allocation.percentage_bp = percentage_of(cents, event.amount_cents)
            self.session.flush()
            summary = self._summary(event)
        logger.info(
            f"allocation_update: family={self.family_id} allocation={allocation_id} "
            f"amount_cents={cents}"
        )
        return summary

    def _summary(self, event: IncomeEvent) -> AllocationSummaryOut:
        rows = self.session.execute(
            select(BudgetAllocation, BudgetCategory)
            .join(
                BudgetCategory,
                BudgetAllocation.budget_category_id == BudgetCategory.id,
            )
            .where(BudgetAllocation.income_event_id == event.id)
            .order_by(BudgetCategory.sort_order, BudgetCategory.id)
        ).all()
        allocated = sum(allocation.amount_cents for allocation, _ in rows)
        allocated_bp = sum(allocation.percentage_bp for allocation, _ in rows)
        return AllocationSummaryOut(
            income_event_id=event.id,
            total_amount=format_cents(event.amount_cents),
            total_percentage=format_bp(FULL_PERCENT_BP),
            allocated_amount=format_cents(allocated),
            allocated_percentage=format_bp(allocated_bp),
            remaining_amount=format_cents(event.amount_cents - allocated),
            remaining_percentage=format_bp(FULL_PERCENT_BP - allocated_bp),
            allocation_count=len(rows),
            categories=[
                AllocationCategoryOut(
                    id=category.id,
                    name=category.name,
                    color=category.color,
                    amount=format_cents(allocation.amount_cents),
                    percentage=format_bp(allocation.percentage_bp),
                    priority=category.sort_order,
                )
                for allocation, category in rows
            ],
            is_complete=allocated == event.amount_cents,
            is_overallocated=allocated > event.amount_cents,
        )

    def apply_template(self, template: BudgetTemplateIn) -> list[BudgetCategory]:
        """
        Create or update budget categories from a template, all or nothing.

        Categories are matched by name, case-insensitively; sort order follows
        the template. Active categories the template does not name are
        deactivated so the active percentages never exceed 100%.
        """
        entries: list[tuple[str, int]] = []
        seen: set[str] = set()
        for index, entry in enumerate(template.categories, start=1):
            name = entry.name.strip()
            if not name:
                raise ValidationFailedError(f"Template entry {index} has an empty name")
            if name.lower() in seen:
                raise ValidationFailedError(f"Duplicate template category: {name}")
            seen.add(name.lower())
            entries.append((name, percent_to_bp(entry.percentage)))
        if not entries:
            raise ValidationFailedError("Template has no categories")
        total_bp = sum(bp for _, bp in entries)
        if total_bp > FULL_PERCENT_BP:
            raise OverallocationError(
                "Total budget percentages cannot exceed 100%. "
                f"Current total: {format_bp(total_bp)}%"
            )

        with atomic(self.session, serializable=True):
            existing = self.session.scalars(
                select(BudgetCategory)
                .where(BudgetCategory.family_id == self.family_id)
                .order_by(BudgetCategory.id)
                .with_for_update()
            ).all()
            by_name: dict[str, BudgetCategory] = {}
            for category in existing:
                by_name.setdefault(category.name.lower(), category)

            applied: list[BudgetCategory] = []
            for order, (name, bp) in enumerate(entries, start=1):
                category = by_name.get(name.lower())
                if category is None:
                    category = BudgetCategory(
                        family_id=self.family_id,
                        name=name,
                        color=default_color(order - 1),
                    )
                    self.session.add(category)
                category.target_percentage_bp = bp
                category.sort_order = order
                category.is_active = True
                applied.append(category)

            for category in existing:
                if category.name.lower() not in seen and category.is_active:
                    category.is_active = False
            self.session.flush()
        logger.info(
            f"apply_template: family={self.family_id} template={template.name!r} "
            f"categories={len(applied)} total_bp={total_bp}"
        )
        return applied

    def export_template(self, name: str) -> TemplateOut:
        return TemplateOut(
            name=name,
            categories=[
                TemplateCategoryIn(
                    name=category.name,
                    percentage=bp_to_decimal(category.target_percentage_bp),
                )
                for category in self._active_categories()
            ],
        )


class AttributionService:
    """
    Funds payments from received income.

    Attribution is greedy: payments in (due_date, id) order take from income
    events in (scheduled_date, id) order. No income event ever funds more
    than it received, no payment is funded beyond its amount.
    """

    def __init__(
        self, session: Session, family_id: int, actor_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.family_id = family_id
        self.actor_id = actor_id

    def attributed_to_payment(self, payment_id: int) -> int:
        return int(
            self.session.execute(
                select(
                    func.coalesce(func.sum(PaymentAttribution.amount_cents), 0)
                ).where(PaymentAttribution.payment_id == payment_id)
            ).scalar_one()
            or 0
        )

    def attributed_from_event(self, income_event_id: int) -> int:
        return int(
            self.session.execute(
                select(
                    func.coalesce(func.sum(PaymentAttribution.amount_cents), 0)
                ).where(PaymentAttribution.income_event_id == income_event_id)
            ).scalar_one()
            or 0
        )

    def _attribution_totals(self, column):
        return (
            select(
                column.label("owner_id"),
                func.sum(PaymentAttribution.amount_cents).label("total"),
            )
            .where(PaymentAttribution.family_id == self.family_id)
            .group_by(column)
            .subquery()
        )

    def _funding_events(self) -> list[list]:
        totals = self._attribution_totals(PaymentAttribution.income_event_id)
        stmt = (
            select(IncomeEvent, func.coalesce(totals.c.total, 0))
            .outerjoin(totals, totals.c.owner_id == IncomeEvent.id)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status != IncomeStatus.cancelled,
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
            .with_for_update(of=IncomeEvent)
        )
        slots: list[list] = []
        for event, attributed in self.session.execute(stmt):
            remaining = event.received_amount_cents - int(attributed or 0)
            if remaining > 0:
                slots.append([event, remaining])
        return slots

    def _unattributed_payments(self) -> list[tuple[Payment, int]]:
        totals = self._attribution_totals(PaymentAttribution.payment_id)
        stmt = (
            select(Payment, func.coalesce(totals.c.total, 0))
            .outerjoin(totals, totals.c.owner_id == Payment.id)
            .where(
                Payment.family_id == self.family_id,
                Payment.status == PaymentStatus.scheduled,
            )
            .order_by(Payment.due_date, Payment.id)
            .with_for_update(of=Payment)
        )
        targets: list[tuple[Payment, int]] = []
        for payment, attributed in self.session.execute(stmt):
            remaining = payment.amount_cents - int(attributed or 0)
            if remaining > 0:
                targets.append((payment, remaining))
        return targets

    def auto_attribute(self, payment_id: Optional[int] = None) -> int:
        """Attribute unfunded payments; returns how many payments got new funding."""
        created = 0
        with atomic(self.session, serializable=True):
            if payment_id is not None:
                payment = get_owned(
                    self.session,
                    Payment,
                    payment_id,
                    self.family_id,
                    "Payment",
                    for_update=True,
                )
                remaining = payment.amount_cents - self.attributed_to_payment(payment.id)
                if remaining <= 0:
                    raise PaymentFullyAttributedError(
                        "Payment is already fully attributed"
                    )
                targets = [(payment, remaining)]
            else:
                targets = self._unattributed_payments()
            if not targets:
                return 0

            slots = self._funding_events()
            if not slots:
                raise NoAvailableIncomeEventsError(
                    "No income events with remaining balance"
                )

            funded_payments = 0
            for payment, remaining in targets:
                funded = False
                for slot in slots:
                    if remaining == 0:
                        break
                    event, available = slot
                    if available == 0:
                        continue
                    amount = min(remaining, available)
                    self.session.add(
                        PaymentAttribution(
                            family_id=self.family_id,
                            payment_id=payment.id,
                            income_event_id=event.id,
                            amount_cents=amount,
                            attribution_type=AttributionType.automatic,
                            created_by=self.actor_id,
                        )
                    )
                    slot[1] = available - amount
                    remaining -= amount
                    created += 1
                    funded = True
                if funded:
                    funded_payments += 1
                if all(slot[1] == 0 for slot in slots):
                    break
            self.session.flush()
        logger.info(
            f"auto_attribute: family={self.family_id} payment={payment_id} "
            f"payments_funded={funded_payments} attributions_created={created}"
        )
        return funded_payments

    def attribute(
        self,
        payment_id: int,
        income_event_id: int,
        amount: Decimal,
        attribution_type: AttributionType = AttributionType.manual,
    ) -> AttributionOut:
        cents = to_cents(amount)
        if cents <= 0:
            raise ValidationFailedError("Attribution amount must be positive")
        with atomic(self.session, serializable=True):
            payment = get_owned(
                self.session, Payment, payment_id, self.family_id, "Payment", for_update=True
            )
            event = get_owned(
                self.session,
                IncomeEvent,
                income_event_id,
                self.family_id,
                "Income event",
                for_update=True,
            )
            payment_remaining = payment.amount_cents - self.attributed_to_payment(
                payment.id
            )
            if cents > payment_remaining:
                raise AttributionExceedsPaymentError(
                    "Attribution amount exceeds payment amount"
                )
            event_remaining = 0
            if event.status != IncomeStatus.cancelled:
                event_remaining = event.received_amount_cents - self.attributed_from_event(
                    event.id
                )
            if cents > event_remaining:
                raise InsufficientIncomeError(
                    "Attribution amount exceeds available income"
                )
            attribution = PaymentAttribution(
                family_id=self.family_id,
                payment_id=payment.id,
                income_event_id=event.id,
                amount_cents=cents,
                attribution_type=attribution_type,
                created_by=self.actor_id,
            )
            self.session.add(attribution)
            self.session.flush()
            result = self._attribution_out(attribution, event)
        logger.info(
            f"attribute: family={self.family_id} payment={payment_id} "
            f"income_event={income_event_id} amount_cents={cents} "
            f"type={attribution_type.value}"
        )
        return result

    def delete_attribution(self, attribution_id: int) -> None:
        with atomic(self.session, serializable=True):
            attribution = get_owned(
                self.session,
                PaymentAttribution,
                attribution_id,
                self.family_id,
                "Attribution",
                for_update=True,
            )
            self.session.delete(attribution)
        logger.info(
            f"attribution_delete: family={self.family_id} attribution={attribution_id}"
        )

    def get_attributions(self, payment_id: int) -> AttributionListOut:
        payment = get_owned(self.session, Payment, payment_id, self.family_id, "Payment")
        rows = self.session.execute(
            select(PaymentAttribution, IncomeEvent)
            .join(IncomeEvent, PaymentAttribution.income_event_id == IncomeEvent.id)
            .where(PaymentAttribution.payment_id == payment.id)
            .order_by(PaymentAttribution.created_at, PaymentAttribution.id)
        ).all()
        total = sum(attribution.amount_cents for attribution, _ in rows)
        return AttributionListOut(
            attributions=[
                self._attribution_out(attribution, event) for attribution, event in rows
            ],
            summary=AttributionSummary(
                total_attributed=format_cents(total),
                remaining_amount=format_cents(payment.amount_cents - total),
                payment_amount=format_cents(payment.amount_cents),
                attribution_count=len(rows),
            ),
        )

    @staticmethod
    def _attribution_out(
        attribution: PaymentAttribution, event: IncomeEvent
    ) -> AttributionOut:
        return AttributionOut(
            id=attribution.id,
            amount=format_cents(attribution.amount_cents),
            attribution_type=attribution.attribution_type,
            created_at=attribution.created_at,
            income_event=IncomeEventRef(
                id=event.id,
                name=event.name,
                scheduled_date=event.scheduled_date,
                amount=format_cents(event.amount_cents),
            ),
        )

    def mark_paid(self, payment_id: int, paid_date: Optional[date] = None) -> Payment:
        with atomic(self.session, serializable=True):
            payment = get_owned(
                self.session, Payment, payment_id, self.family_id, "Payment", for_update=True
            )
            if payment.status == PaymentStatus.paid:
                raise PaymentAlreadyPaidError("Payment is already marked as paid")
            payment.status = PaymentStatus.paid
            payment.paid_date = paid_date or date.today()
        logger.info(f"mark_paid: family={self.family_id} payment={payment_id}")
        return payment

    def revert_paid(self, payment_id: int) -> Payment:
        """Flip a paid payment back to scheduled; its attributions stay."""
        with atomic(self.session, serializable=True):
            payment = get_owned(
                self.session, Payment, payment_id, self.family_id, "Payment", for_update=True
            )
            if payment.status != PaymentStatus.paid:
                raise PaymentNotPaidError("Payment is not marked as paid")
            payment.status = PaymentStatus.scheduled
            payment.paid_date = None
        logger.info(f"revert_paid: family={self.family_id} payment={payment_id}")
        return payment

    def mark_overdue(self, as_of: Optional[date] = None) -> int:
        as_of = as_of or date.today()
        with atomic(self.session, serializable=True):
            payments = self.session.scalars(
                select(Payment)
                .where(
                    Payment.family_id == self.family_id,
                    Payment.status == PaymentStatus.scheduled,
                    Payment.due_date < as_of,
                )
                .order_by(Payment.due_date, Payment.id)
                .with_for_update()
            ).all()
            for payment in payments:
                payment.status = PaymentStatus.overdue
        logger.info(
            f"mark_overdue: family={self.family_id} as_of={as_of.isoformat()} "
            f"count={len(payments)}"
        )
        return len(payments)


class IncomeEventService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def mark_received(
        self,
        income_event_id: int,
        received_amount: Decimal,
        actual_date: Optional[date] = None,
    ) -> IncomeEvent:
        cents = to_cents(received_amount)
        if cents < 0:
            raise ValidationFailedError("Received amount cannot be negative")
        with atomic(self.session, serializable=True):
            event = get_owned(
                self.session,
                IncomeEvent,
                income_event_id,
                self.family_id,
                "Income event",
                for_update=True,
            )
            if event.status == IncomeStatus.cancelled:
                raise BusinessRuleViolation("Cancelled income events cannot be received")
            attributed = AttributionService(
                self.session, self.family_id
            ).attributed_from_event(event.id)
            if cents < attributed:
                raise BusinessRuleViolation(
                    "Received amount is below the amount already attributed"
                )
            event.received_amount_cents = cents
            event.actual_date = actual_date or date.today()
            event.status = IncomeStatus.received if cents > 0 else IncomeStatus.scheduled
        logger.info(
            f"mark_received: family={self.family_id} income_event={income_event_id} "
            f"received_cents={cents}"
        )
        return event


class MatchingService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def match_transactions_to_payments(
        self, options: Optional[MatchOptions] = None
    ) -> list[MatchOut]:
        """Propose one-to-one transaction/payment matches. Nothing is written."""
        options = options or MatchOptions()
        settings = get_settings()

        txn_stmt = (
            select(Transaction)
            .join(BankAccount, Transaction.bank_account_id == BankAccount.id)
            .where(
                Transaction.family_id == self.family_id,
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
                Transaction.matched_payment_id.is_(None),
                Transaction.amount_cents < 0,
            )
        )
        if options.start:
            txn_stmt = txn_stmt.where(Transaction.date >= options.start)
        if options.end:
            txn_stmt = txn_stmt.where(Transaction.date <= options.end)
        if options.bank_account_ids:
            txn_stmt = txn_stmt.where(
                Transaction.bank_account_id.in_(options.bank_account_ids)
            )

        linked = select(Transaction.matched_payment_id).where(
            Transaction.matched_payment_id.is_not(None)
        )
        payment_stmt = select(Payment).where(
            Payment.family_id == self.family_id,
            Payment.status.in_([PaymentStatus.scheduled, PaymentStatus.overdue]),
            Payment.id.not_in(linked),
        )

        transactions = [
            TransactionCandidate(
                id=txn.id,
                amount_cents=txn.amount_cents,
                date=txn.date,
                merchant_name=txn.merchant_name,
                description=txn.description or "",
            )
            for txn in self.session.scalars(txn_stmt)
        ]
        payments = [
            PaymentCandidate(
                id=payment.id,
                payee=payment.payee,
                amount_cents=payment.amount_cents,
                due_date=payment.due_date,
            )
            for payment in self.session.scalars(payment_stmt)
        ]

        amount_weight, merchant_weight, date_weight = settings.match_weights
        proposals = propose_matches(
            transactions,
            payments,
            weights=ScoreWeights(
                amount=amount_weight, merchant=merchant_weight, date=date_weight
            ),
            amount_cutoff=settings.match_amount_cutoff,
            date_window_days=settings.match_date_window_days,
            min_confidence=options.min_confidence,
        )
        logger.info(
            f"match: family={self.family_id} transactions={len(transactions)} "
            f"payments={len(payments)} matches={len(proposals)}"
        )
        return [
            MatchOut(
                transaction_id=proposal.transaction_id,
                payment_id=proposal.payment_id,
                confidence=proposal.confidence,
                match_type=proposal.match_type,
            )
            for proposal in proposals
        ]


class CategorizationService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _visible_transactions(self):
        return (
            select(Transaction)
            .join(BankAccount, Transaction.bank_account_id == BankAccount.id)
            .where(
                Transaction.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
            )
        )

    def batch_categorize(self, data: BatchCategorizeIn) -> BatchCategorizeOut:
        """
        Assign one spending category to many transactions.

        Unknown or foreign transaction ids are reported per item and do not
        stop the rest of the batch.
        """
        limit = get_settings().batch_limit
        if not data.transaction_ids:
            raise ValidationFailedError("At least one transaction id is required")
        if len(data.transaction_ids) > limit:
            raise ValidationFailedError(
                f"Cannot categorize more than {limit} transactions at once"
            )
        ids = list(dict.fromkeys(data.transaction_ids))

        updated: list[int] = []
        errors: list[BatchCategorizeError] = []
        with atomic(self.session):
            category = get_owned(
                self.session,
                SpendingCategory,
                data.spending_category_id,
                self.family_id,
                "Spending category",
            )
            if not category.is_active:
                raise InactiveCategoryError("Spending category is inactive")

            rows = {
                txn.id: txn
                for txn in self.session.scalars(
                    self._visible_transactions().where(Transaction.id.in_(ids))
                )
            }
            for transaction_id in ids:
                txn = rows.get(transaction_id)
                if txn is None:
                    errors.append(
                        BatchCategorizeError(
                            transaction_id=transaction_id,
                            error="Transaction not found",
                        )
                    )
                    continue
                txn.spending_category_id = category.id
                txn.user_categorized = data.user_categorized
                if data.user_categorized:
                    txn.category_confidence = 1.0
                elif data.confidence is not None:
                    txn.category_confidence = data.confidence
                updated.append(transaction_id)
            self.session.flush()
        logger.info(
            f"batch_categorize: family={self.family_id} category={category.id} "
            f"requested={len(ids)} updated={len(updated)} errors={len(errors)}"
        )
        return BatchCategorizeOut(
            updated_count=len(updated),
            updated=updated,
            errors=errors,
            summary=BatchCategorizeSummary(
                total_requested=len(ids),
                total_updated=len(updated),
                total_errors=len(errors),
            ),
        )

    def _merchant_history(self, threshold: float) -> dict[str, Counter]:
        rows = self.session.execute(
            select(
                Transaction.merchant_name,
                Transaction.description,
                Transaction.spending_category_id,
            )
            .join(
                SpendingCategory,
                Transaction.spending_category_id == SpendingCategory.id,
            )
            .where(
                Transaction.family_id == self.family_id,
                SpendingCategory.is_active.is_(True),
                or_(
                    Transaction.user_categorized.is_(True),
                    Transaction.category_confidence >= threshold,
                ),
            )
        ).all()
        history: dict[str, Counter] = defaultdict(Counter)
        for merchant_name, description, category_id in rows:
            key = normalize_merchant(merchant_name or description)
            if key:
                history[key][category_id] += 1
        return history

    @staticmethod
    def _top_category(counts: Counter) -> tuple[int, int, int]:
        category_id, count = max(counts.items(), key=lambda item: (item[1], -item[0]))
        return category_id, count, sum(counts.values())

    def _suggest(
        self,
        txn: Transaction,
        history: dict[str, Counter],
        names: dict[int, str],
    ) -> Optional[CategorySuggestionOut]:
        key = normalize_merchant(txn.merchant_name or txn.description)
        if not key or not history:
            return None
        counts = history.get(key)
        if counts:
            category_id, count, total = self._top_category(counts)
            return CategorySuggestionOut(
                category_id=category_id,
                category_name=names[category_id],
                confidence=round(count / total, 4),
                reason=f"{count} of {total} earlier transactions from this merchant",
            )
        best = process.extractOne(
            key,
            list(history.keys()),
            scorer=fuzz.token_set_ratio,
            score_cutoff=FUZZY_MERCHANT_CUTOFF,
        )
        if best is None:
            return None
        similar, score, _ = best
        category_id, count, total = self._top_category(history[similar])
        return CategorySuggestionOut(
            category_id=category_id,
            category_name=names[category_id],
            confidence=round(
                (count / total) * (score / 100.0) * FUZZY_SUGGESTION_DISCOUNT, 4
            ),
            reason=f"Similar merchant '{similar}'",
        )

    def get_uncategorized(
        self,
        confidence_threshold: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> UncategorizedOut:
        threshold = (
            get_settings().uncategorized_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        if not 0.0 <= threshold <= 1.0:
            raise ValidationFailedError("Confidence threshold must be between 0 and 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationFailedError("Limit out of range")
        if offset < 0:
            raise ValidationFailedError("Offset cannot be negative")

        base = self._visible_transactions().where(
            or_(
                Transaction.spending_category_id.is_(None),
                Transaction.category_confidence < threshold,
            )
        )
        total = int(
            self.session.scalar(select(func.count()).select_from(base.subquery())) or 0
        )
        transactions = self.session.scalars(
            base.order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()

        history = self._merchant_history(threshold)
        names = dict(
            self.session.execute(
                select(SpendingCategory.id, SpendingCategory.name).where(
                    SpendingCategory.family_id == self.family_id
                )
            ).all()
        )
        return UncategorizedOut(
            transactions=[
                UncategorizedTransactionOut(
                    id=txn.id,
                    bank_account_id=txn.bank_account_id,
                    amount=format_cents(txn.amount_cents),
                    date=txn.date,
                    merchant_name=txn.merchant_name,
                    description=txn.description or "",
                    spending_category_id=txn.spending_category_id,
                    category_confidence=float(txn.category_confidence or 0.0),
                    pending=txn.pending,
                    suggestion=self._suggest(txn, history, names),
                )
                for txn in transactions
            ],
            total=total,
            limit=limit,
            offset=offset,
        )


class SpendingCategoryService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def list_all(self, include_inactive: bool = False) -> list[SpendingCategory]:
        stmt = (
            select(SpendingCategory)
            .where(SpendingCategory.family_id == self.family_id)
            .order_by(SpendingCategory.name)
        )
        if not include_inactive:
            stmt = stmt.where(SpendingCategory.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(SpendingCategory.id).where(
            SpendingCategory.family_id == self.family_id,
            func.lower(SpendingCategory.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(SpendingCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValidationFailedError("Category name already exists")

    def _check_budget_category(self, budget_category_id: Optional[int]) -> None:
        if budget_category_id is not None:
            get_owned(
                self.session,
                BudgetCategory,
                budget_category_id,
                self.family_id,
                "Budget category",
            )

    def _check_parent(
        self, parent_id: Optional[int], category_id: Optional[int] = None
    ) -> None:
        if parent_id is None:
            return
        parent = get_owned(
            self.session, SpendingCategory, parent_id, self.family_id, "Parent category"
        )
        node: Optional[SpendingCategory] = parent
        while node is not None:
            if category_id is not None and node.id == category_id:
                raise ValidationFailedError("Category cannot be its own ancestor")
            node = node.parent

    def create(self, data: SpendingCategoryIn) -> SpendingCategory:
        name = data.name.strip()
        monthly_target = (
            to_cents(data.monthly_target) if data.monthly_target is not None else None
        )
        with atomic(self.session):
            self._ensure_unique_name(name)
            self._check_budget_category(data.budget_category_id)
            self._check_parent(data.parent_category_id)
            category = SpendingCategory(
                family_id=self.family_id,
                name=name,
                budget_category_id=data.budget_category_id,
                parent_category_id=data.parent_category_id,
                color=data.color,
                icon=data.icon,
                monthly_target_cents=monthly_target,
                is_active=True,
            )
            self.session.add(category)
            self.session.flush()
        logger.info(f"spending_category_create: family={self.family_id} id={category.id}")
        return category

    def update(
        self, category_id: int, data: SpendingCategoryUpdate
    ) -> SpendingCategory:
        provided = data.model_fields_set
        with atomic(self.session):
            category = get_owned(
                self.session,
                SpendingCategory,
                category_id,
                self.family_id,
                "Spending category",
                for_update=True,
            )
            if data.name is not None:
                name = data.name.strip()
                self._ensure_unique_name(name, exclude_id=category.id)
                category.name = name
            if "budget_category_id" in provided:
                self._check_budget_category(data.budget_category_id)
                category.budget_category_id = data.budget_category_id
            if "parent_category_id" in provided:
                self._check_parent(data.parent_category_id, category.id)
                category.parent_category_id = data.parent_category_id
            if "monthly_target" in provided:
                category.monthly_target_cents = (
                    to_cents(data.monthly_target)
                    if data.monthly_target is not None
                    else None
                )
            if data.color is not None:
                category.color = data.color
            if data.icon is not None:
                category.icon = data.icon
            if data.is_active is not None:
                category.is_active = data.is_active
            self.session.flush()
        logger.info(f"spending_category_update: family={self.family_id} id={category_id}")
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = get_owned(
                self.session,
                SpendingCategory,
                category_id,
                self.family_id,
                "Spending category",
                for_update=True,
            )
            children = self.session.scalar(
                select(func.count(SpendingCategory.id)).where(
                    SpendingCategory.parent_category_id == category.id
                )
            )
            if children:
                raise CategoryDeletionBlockedError(
                    f"Cannot delete category with {children} child categories"
                )
            payments = self.session.scalar(
                select(func.count(Payment.id)).where(
                    Payment.spending_category_id == category.id
                )
            )
            if payments:
                raise CategoryDeletionBlockedError(
                    "Cannot delete category referenced by payments"
                )
            transactions = self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.spending_category_id == category.id
                )
            )
            if transactions:
                raise CategoryDeletionBlockedError(
                    "Cannot delete category referenced by transactions"
                )
            self.session.delete(category)
        logger.info(f"spending_category_delete: family={self.family_id} id={category_id}")


class ReportService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _period_transactions(self, period: Period):
        return (
            select(Transaction)
            .join(BankAccount, Transaction.bank_account_id == BankAccount.id)
            .where(
                Transaction.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
                Transaction.date.between(period.start, period.end),
            )
        )

    def net_worth(self) -> NetWorthOut:
        accounts = self.session.scalars(
            select(BankAccount)
            .where(
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
            )
            .order_by(BankAccount.id)
        ).all()
        assets = sum(
            a.current_balance_cents
            for a in accounts
            if a.account_type in (AccountType.checking, AccountType.savings)
        )
        liabilities = sum(
            abs(a.current_balance_cents)
            for a in accounts
            if a.account_type in (AccountType.credit, AccountType.loan)
        )
        return NetWorthOut(
            assets=format_cents(assets),
            liabilities=format_cents(liabilities),
            net_worth=format_cents(assets - liabilities),
            accounts=[
                NetWorthAccountOut(
                    id=a.id,
                    institution_name=a.institution_name,
                    account_name=a.account_name,
                    account_type=a.account_type,
                    balance=format_cents(a.current_balance_cents),
                )
                for a in accounts
            ],
        )

    def spending_analysis(self, period: Period) -> SpendingAnalysisOut:
        debits = (
            self._period_transactions(period)
            .where(Transaction.amount_cents < 0)
            .subquery()
        )
        rows = self.session.execute(
            select(
                debits.c.spending_category_id,
                func.coalesce(func.sum(-debits.c.amount_cents), 0).label("spent"),
                func.count(debits.c.id).label("count"),
            ).group_by(debits.c.spending_category_id)
        ).all()
        categories = {
            c.id: c
            for c in self.session.scalars(
                select(SpendingCategory).where(
                    SpendingCategory.family_id == self.family_id
                )
            )
        }
        totals: list[SpendingCategoryTotalOut] = []
        for category_id, spent, count in rows:
            category = categories.get(category_id) if category_id else None
            totals.append(
                SpendingCategoryTotalOut(
                    spending_category_id=category.id if category else None,
                    name=category.name if category else "Uncategorized",
                    budget_category_name=(
                        category.budget_category.name
                        if category and category.budget_category
                        else None
                    ),
                    amount=format_cents(int(spent or 0)),
                    transaction_count=int(count or 0),
                    monthly_target=(
                        format_cents(category.monthly_target_cents)
                        if category and category.monthly_target_cents is not None
                        else None
                    ),
                )
            )
        totals.sort(key=lambda row: (-Decimal(row.amount), row.name))
        return SpendingAnalysisOut(
            start=period.start,
            end=period.end,
            total_spent=format_cents(sum(int(spent or 0) for _, spent, _ in rows)),
            categories=totals,
        )

    def cash_flow(self, period: Period) -> CashFlowOut:
        flows = self._period_transactions(period).subquery()
        inflow, outflow = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case((flows.c.amount_cents > 0, flows.c.amount_cents), else_=0)
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(
                        case((flows.c.amount_cents < 0, -flows.c.amount_cents), else_=0)
                    ),
                    0,
                ),
            )
        ).one()
        inflow = int(inflow or 0)
        outflow = int(outflow or 0)

        events_filter = (
            IncomeEvent.family_id == self.family_id,
            IncomeEvent.status != IncomeStatus.cancelled,
            IncomeEvent.scheduled_date.between(period.start, period.end),
        )
        planned, received = self.session.execute(
            select(
                func.coalesce(func.sum(IncomeEvent.amount_cents), 0),
                func.coalesce(func.sum(IncomeEvent.received_amount_cents), 0),
            ).where(*events_filter)
        ).one()
        allocated = self.session.execute(
            select(func.coalesce(func.sum(BudgetAllocation.amount_cents), 0))
            .join(IncomeEvent, BudgetAllocation.income_event_id == IncomeEvent.id)
            .where(*events_filter)
        ).scalar_one()

        payments_filter = (
            Payment.family_id == self.family_id,
            Payment.due_date.between(period.start, period.end),
        )
        due = int(
            self.session.execute(
                select(func.coalesce(func.sum(Payment.amount_cents), 0)).where(
                    *payments_filter
                )
            ).scalar_one()
            or 0
        )
        attributed = int(
            self.session.execute(
                select(func.coalesce(func.sum(PaymentAttribution.amount_cents), 0))
                .join(Payment, PaymentAttribution.payment_id == Payment.id)
                .where(*payments_filter)
            ).scalar_one()
            or 0
        )
        return CashFlowOut(
            start=period.start,
            end=period.end,
            inflow=format_cents(inflow),
            outflow=format_cents(outflow),
            net=format_cents(inflow - outflow),
            planned_income=format_cents(int(planned or 0)),
            received_income=format_cents(int(received or 0)),
            allocated=format_cents(int(allocated or 0)),
            payments_due=format_cents(due),
            attributed=format_cents(attributed),
            unattributed=format_cents(due - attributed),
        )

    def budget_performance(self, period: Period) -> BudgetPerformanceOut:
        categories = BudgetCategoryService(self.session, self.family_id).list_all()

        targets = dict(
            self.session.execute(
                select(
                    BudgetAllocation.budget_category_id,
                    func.coalesce(func.sum(BudgetAllocation.amount_cents), 0),
                )
                .join(IncomeEvent, BudgetAllocation.income_event_id == IncomeEvent.id)
                .where(
                    BudgetAllocation.family_id == self.family_id,
                    IncomeEvent.scheduled_date.between(period.start, period.end),
                )
                .group_by(BudgetAllocation.budget_category_id)
            ).all()
        )

        debits = (
            self._period_transactions(period)
            .where(Transaction.amount_cents < 0)
            .subquery()
        )
        spent = dict(
            self.session.execute(
                select(
                    SpendingCategory.budget_category_id,
                    func.coalesce(func.sum(-debits.c.amount_cents), 0),
                )
                .select_from(debits)
                .join(
                    SpendingCategory,
                    debits.c.spending_category_id == SpendingCategory.id,
                )
                .where(SpendingCategory.budget_category_id.is_not(None))
                .group_by(SpendingCategory.budget_category_id)
            ).all()
        )

        linked = select(Transaction.matched_payment_id).where(
            Transaction.matched_payment_id.is_not(None)
        )
        paid = dict(
            self.session.execute(
                select(
                    SpendingCategory.budget_category_id,
                    func.coalesce(func.sum(Payment.amount_cents), 0),
                )
                .select_from(Payment)
                .join(
                    SpendingCategory,
                    Payment.spending_category_id == SpendingCategory.id,
                )
                .where(
                    Payment.family_id == self.family_id,
                    Payment.status == PaymentStatus.paid,
                    Payment.paid_date.between(period.start, period.end),
                    Payment.id.not_in(linked),
                    SpendingCategory.budget_category_id.is_not(None),
                )
                .group_by(SpendingCategory.budget_category_id)
            ).all()
        )

        rows: list[BudgetPerformanceRowOut] = []
        for category in categories:
            target = int(targets.get(category.id, 0) or 0)
            actual = int(spent.get(category.id, 0) or 0) + int(
                paid.get(category.id, 0) or 0
            )
            rows.append(
                BudgetPerformanceRowOut(
                    budget_category_id=category.id,
                    name=category.name,
                    target_amount=format_cents(target),
                    actual_amount=format_cents(actual),
                    variance=format_cents(target - actual),
                    percent_used=format_bp(percentage_of(actual, target)),
                )
            )
        return BudgetPerformanceOut(start=period.start, end=period.end, categories=rows)
