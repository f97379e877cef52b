from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    loan = "loan"


class IncomeStatus(str, Enum):
    scheduled = "scheduled"
    received = "received"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    scheduled = "scheduled"
    paid = "paid"
    overdue = "overdue"


class AttributionType(str, Enum):
    manual = "manual"
    automatic = "automatic"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    institution_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False
    )
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bank_account", cascade="all, delete-orphan"
    )


class IncomeEvent(Base, TimestampMixin):
    __tablename__ = "income_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    received_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    actual_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[IncomeStatus] = mapped_column(
        SAEnum(IncomeStatus), nullable=False, default=IncomeStatus.scheduled
    )

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation",
        back_populates="income_event",
        cascade="all, delete-orphan",
    )
    attributions: Mapped[list["PaymentAttribution"]] = relationship(
        "PaymentAttribution",
        back_populates="income_event",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_income_events_family_date", "family_id", "scheduled_date"),
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        CheckConstraint(
            "received_amount_cents >= 0", name="ck_income_received_positive"
        ),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_percentage_bp: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation",
        back_populates="budget_category",
        cascade="all, delete-orphan",
    )
    spending_categories: Mapped[list["SpendingCategory"]] = relationship(
        "SpendingCategory", back_populates="budget_category"
    )

    __table_args__ = (
        Index("ix_budget_categories_family_active", "family_id", "is_active"),
        CheckConstraint(
            "target_percentage_bp >= 0 AND target_percentage_bp <= 10000",
            name="ck_budget_category_percentage_range",
        ),
    )


class BudgetAllocation(Base, TimestampMixin):
    __tablename__ = "budget_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    income_event_id: Mapped[int] = mapped_column(
        ForeignKey("income_events.id", ondelete="CASCADE"), nullable=False
    )
    budget_category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage_bp: Mapped[int] = mapped_column(Integer, nullable=False)

    income_event: Mapped["IncomeEvent"] = relationship(
        "IncomeEvent", back_populates="allocations"
    )
    budget_category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="allocations"
    )

    __table_args__ = (
        UniqueConstraint(
            "income_event_id",
            "budget_category_id",
            name="uq_allocation_event_category",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_allocation_amount_positive"),
    )


class SpendingCategory(Base, TimestampMixin):
    __tablename__ = "spending_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id")
    )
    parent_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    monthly_target_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    budget_category: Mapped[Optional["BudgetCategory"]] = relationship(
        "BudgetCategory", back_populates="spending_categories"
    )
    parent: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["SpendingCategory"]] = relationship(
        "SpendingCategory", back_populates="parent"
    )

    __table_args__ = (
        UniqueConstraint("family_id", "name", name="uq_spending_category_family_name"),
    )


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payee: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.scheduled
    )
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory"
    )
    attributions: Mapped[list["PaymentAttribution"]] = relationship(
        "PaymentAttribution",
        back_populates="payment",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_payments_family_status_due", "family_id", "status", "due_date"),
        CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
    )


class PaymentAttribution(Base):
    __tablename__ = "payment_attributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    income_event_id: Mapped[int] = mapped_column(
        ForeignKey("income_events.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    attribution_type: Mapped[AttributionType] = mapped_column(
        SAEnum(AttributionType), nullable=False, default=AttributionType.manual
    )
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    payment: Mapped["Payment"] = relationship("Payment", back_populates="attributions")
    income_event: Mapped["IncomeEvent"] = relationship(
        "IncomeEvent", back_populates="attributions"
    )

    __table_args__ = (
        Index("ix_attributions_payment", "payment_id"),
        Index("ix_attributions_income_event", "income_event_id"),
        CheckConstraint("amount_cents > 0", name="ck_attribution_amount_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id")
    )
    user_categorized: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    category_confidence: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False
    )
    pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    matched_payment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payments.id", ondelete="SET NULL")
    )

    bank_account: Mapped["BankAccount"] = relationship(
        "BankAccount", back_populates="transactions"
    )
    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory"
    )

    __table_args__ = (
        Index("ix_transactions_family_date", "family_id", "date"),
        Index(
            "ix_transactions_family_category_date",
            "family_id",
            "spending_category_id",
            "date",
        ),
        CheckConstraint(
            "category_confidence >= 0 AND category_confidence <= 1",
            name="ck_transactions_confidence_range",
        ),
    )
