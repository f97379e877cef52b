from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from matching import MatchType
from models import AccountType, AttributionType, IncomeStatus, PaymentStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests


class AllocateIn(CamelModel):
    override_percentages: dict[int, Decimal] = Field(default_factory=dict)


class AllocationUpdateIn(CamelModel):
    amount: Decimal = Field(..., ge=0)


class TemplateCategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    percentage: Decimal


class BudgetTemplateIn(CamelModel):
    name: str = Field(default="Custom", max_length=100)
    categories: list[TemplateCategoryIn] = Field(default_factory=list)


class BudgetCategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    target_percentage: Decimal
    color: Optional[str] = Field(default=None, max_length=7)
    sort_order: Optional[int] = None


class BudgetCategoryUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    target_percentage: Optional[Decimal] = None
    color: Optional[str] = Field(default=None, max_length=7)
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class SpendingCategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    budget_category_id: Optional[int] = None
    parent_category_id: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)
    monthly_target: Optional[Decimal] = Field(default=None, ge=0)


class SpendingCategoryUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    budget_category_id: Optional[int] = None
    parent_category_id: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=50)
    monthly_target: Optional[Decimal] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class AttributionIn(CamelModel):
    income_event_id: int
    amount: Decimal
    attribution_type: AttributionType = AttributionType.manual


class MarkPaidIn(CamelModel):
    paid_date: Optional[date] = None


class MarkReceivedIn(CamelModel):
    received_amount: Decimal = Field(..., ge=0)
    actual_date: Optional[date] = None


class MatchOptions(CamelModel):
    start: Optional[date] = None
    end: Optional[date] = None
    bank_account_ids: Optional[list[int]] = None
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class BatchCategorizeIn(CamelModel):
    transaction_ids: list[int]
    spending_category_id: int
    user_categorized: bool = True
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


# Responses


class AllocationCategoryOut(CamelModel):
    id: int
    name: str
    color: Optional[str]
    amount: str
    percentage: str
    priority: int


class AllocationSummaryOut(CamelModel):
    income_event_id: int
    total_amount: str
    total_percentage: str
    allocated_amount: str
    allocated_percentage: str
    remaining_amount: str
    remaining_percentage: str
    allocation_count: int
    categories: list[AllocationCategoryOut]
    is_complete: bool
    is_overallocated: bool


class BudgetCategoryOut(CamelModel):
    id: int
    name: str
    target_percentage: str
    color: Optional[str]
    sort_order: int
    is_active: bool


class TemplateOut(CamelModel):
    name: str
    categories: list[TemplateCategoryIn]


class IncomeEventRef(CamelModel):
    id: int
    name: str
    scheduled_date: date
    amount: str


class AttributionOut(CamelModel):
    id: int
    amount: str
    attribution_type: AttributionType
    created_at: datetime
    income_event: IncomeEventRef


class AttributionSummary(CamelModel):
    total_attributed: str
    remaining_amount: str
    payment_amount: str
    attribution_count: int


class AttributionListOut(CamelModel):
    attributions: list[AttributionOut]
    summary: AttributionSummary


class AutoAttributeOut(CamelModel):
    payments_attributed: int


class MatchOut(CamelModel):
    transaction_id: int
    payment_id: int
    confidence: float
    match_type: MatchType


class BatchCategorizeError(CamelModel):
    transaction_id: int
    error: str


class BatchCategorizeSummary(CamelModel):
    total_requested: int
    total_updated: int
    total_errors: int


class BatchCategorizeOut(CamelModel):
    updated_count: int
    updated: list[int]
    errors: list[BatchCategorizeError]
    summary: BatchCategorizeSummary


class CategorySuggestionOut(CamelModel):
    category_id: int
    category_name: str
    confidence: float
    reason: str


class UncategorizedTransactionOut(CamelModel):
    id: int
    bank_account_id: int
    amount: str
    date: date
    merchant_name: Optional[str]
    description: str
    spending_category_id: Optional[int]
    category_confidence: float
    pending: bool
    suggestion: Optional[CategorySuggestionOut] = None


class UncategorizedOut(CamelModel):
    transactions: list[UncategorizedTransactionOut]
    total: int
    limit: int
    offset: int


class NetWorthAccountOut(CamelModel):
    id: int
    institution_name: str
    account_name: str
    account_type: AccountType
    balance: str


class NetWorthOut(CamelModel):
    assets: str
    liabilities: str
    net_worth: str
    accounts: list[NetWorthAccountOut]


class SpendingCategoryTotalOut(CamelModel):
    spending_category_id: Optional[int]
    name: str
    budget_category_name: Optional[str]
    amount: str
    transaction_count: int
    monthly_target: Optional[str]


class SpendingAnalysisOut(CamelModel):
    start: date
    end: date
    total_spent: str
    categories: list[SpendingCategoryTotalOut]


class CashFlowOut(CamelModel):
    start: date
    end: date
    inflow: str
    outflow: str
    net: str
    planned_income: str
    received_income: str
    allocated: str
    payments_due: str
    attributed: str
    unattributed: str


class BudgetPerformanceRowOut(CamelModel):
    budget_category_id: int
    name: str
    target_amount: str
    actual_amount: str
    variance: str
    percent_used: str


class BudgetPerformanceOut(CamelModel):
    start: date
    end: date
    categories: list[BudgetPerformanceRowOut]


class SpendingCategoryOut(CamelModel):
    id: int
    name: str
    budget_category_id: Optional[int]
    parent_category_id: Optional[int]
    color: Optional[str]
    icon: Optional[str]
    monthly_target: Optional[str]
    is_active: bool


class PaymentOut(CamelModel):
    id: int
    payee: str
    amount: str
    due_date: date
    paid_date: Optional[date]
    status: PaymentStatus


class IncomeEventOut(CamelModel):
    id: int
    name: str
    scheduled_date: date
    amount: str
    received_amount: str
    actual_date: Optional[date]
    status: IncomeStatus


class MarkOverdueOut(CamelModel):
    payments_marked: int
