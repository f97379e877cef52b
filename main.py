import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, retry_on_conflict
from errors import EngineError
from models import BudgetCategory, IncomeEvent, Payment, SpendingCategory
from money import format_bp, format_cents
from periods import Period, resolve_period
from schemas import (
    AllocateIn,
    AllocationSummaryOut,
    AllocationUpdateIn,
    AttributionIn,
    AttributionListOut,
    AttributionOut,
    AutoAttributeOut,
    BatchCategorizeIn,
    BatchCategorizeOut,
    BudgetCategoryIn,
    BudgetCategoryOut,
    BudgetCategoryUpdate,
    BudgetPerformanceOut,
    BudgetTemplateIn,
    CashFlowOut,
    IncomeEventOut,
    MarkOverdueOut,
    MarkPaidIn,
    MarkReceivedIn,
    MatchOptions,
    MatchOut,
    NetWorthOut,
    PaymentOut,
    SpendingAnalysisOut,
    SpendingCategoryIn,
    SpendingCategoryOut,
    SpendingCategoryUpdate,
    TemplateOut,
    UncategorizedOut,
)
from services import (
    AllocationService,
    AttributionService,
    BudgetCategoryService,
    CategorizationService,
    IncomeEventService,
    MatchingService,
    ReportService,
    SpendingCategoryService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Family Budget Engine")

STATUS_BY_KIND = {
    "not_found": 404,
    "validation_failed": 422,
    "business_rule_violation": 400,
    "conflict": 409,
}


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def family_from_header(x_family_id: int = Header(...)) -> int:
    return x_family_id


def actor_from_header(x_actor_id: Optional[int] = Header(default=None)) -> Optional[int]:
    return x_actor_id


@app.exception_handler(EngineError)
def engine_error_handler(request: Request, exc: EngineError):
    status = STATUS_BY_KIND.get(exc.kind, 400)
    if status >= 409:
        logger.warning(f"engine_error: path={request.url.path} kind={exc.kind}")
    return JSONResponse(
        status_code=status, content={"error": exc.kind, "message": exc.message}
    )


def period_from_request(request: Request) -> Period:
    return resolve_period(
        request.query_params.get("period"),
        request.query_params.get("start"),
        request.query_params.get("end"),
    )


def budget_category_out(category: BudgetCategory) -> BudgetCategoryOut:
    return BudgetCategoryOut(
        id=category.id,
        name=category.name,
        target_percentage=format_bp(category.target_percentage_bp),
        color=category.color,
        sort_order=category.sort_order,
        is_active=category.is_active,
    )


def spending_category_out(category: SpendingCategory) -> SpendingCategoryOut:
    return SpendingCategoryOut(
        id=category.id,
        name=category.name,
        budget_category_id=category.budget_category_id,
        parent_category_id=category.parent_category_id,
        color=category.color,
        icon=category.icon,
        monthly_target=(
            format_cents(category.monthly_target_cents)
            if category.monthly_target_cents is not None
            else None
        ),
        is_active=category.is_active,
    )


def payment_out(payment: Payment) -> PaymentOut:
    return PaymentOut(
        id=payment.id,
        payee=payment.payee,
        amount=format_cents(payment.amount_cents),
        due_date=payment.due_date,
        paid_date=payment.paid_date,
        status=payment.status,
    )


def income_event_out(event: IncomeEvent) -> IncomeEventOut:
    return IncomeEventOut(
        id=event.id,
        name=event.name,
        scheduled_date=event.scheduled_date,
        amount=format_cents(event.amount_cents),
        received_amount=format_cents(event.received_amount_cents),
        actual_date=event.actual_date,
        status=event.status,
    )


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


# Budget categories and allocation


@app.get("/api/budget-categories", response_model=list[BudgetCategoryOut])
def list_budget_categories(
    include_inactive: bool = False,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = BudgetCategoryService(db, family_id)
    return [budget_category_out(c) for c in service.list_all(include_inactive)]


@app.post("/api/budget-categories", response_model=BudgetCategoryOut, status_code=201)
def create_budget_category(
    payload: BudgetCategoryIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = BudgetCategoryService(db, family_id)
    return budget_category_out(retry_on_conflict(lambda: service.create(payload)))


@app.patch("/api/budget-categories/{category_id}", response_model=BudgetCategoryOut)
def update_budget_category(
    category_id: int,
    payload: BudgetCategoryUpdate,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = BudgetCategoryService(db, family_id)
    return budget_category_out(
        retry_on_conflict(lambda: service.update(category_id, payload))
    )


@app.delete("/api/budget-categories/{category_id}", status_code=204)
def delete_budget_category(
    category_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = BudgetCategoryService(db, family_id)
    retry_on_conflict(lambda: service.delete(category_id))
    return Response(status_code=204)


@app.post("/api/budget-templates/apply", response_model=list[BudgetCategoryOut])
def apply_budget_template(
    payload: BudgetTemplateIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = AllocationService(db, family_id)
    applied = retry_on_conflict(lambda: service.apply_template(payload))
    return [budget_category_out(c) for c in applied]


@app.get("/api/budget-templates/export", response_model=TemplateOut)
def export_budget_template(
    name: str = "Custom",
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return AllocationService(db, family_id).export_template(name)


@app.post(
    "/api/income-events/{income_event_id}/allocate",
    response_model=AllocationSummaryOut,
)
def allocate_income_event(
    income_event_id: int,
    payload: Optional[AllocateIn] = None,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    overrides = payload.override_percentages if payload else None
    service = AllocationService(db, family_id)
    return retry_on_conflict(lambda: service.allocate(income_event_id, overrides))


@app.get(
    "/api/income-events/{income_event_id}/allocation",
    response_model=AllocationSummaryOut,
)
def allocation_summary(
    income_event_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return AllocationService(db, family_id).summary(income_event_id)


@app.patch("/api/allocations/{allocation_id}", response_model=AllocationSummaryOut)
def update_allocation(
    allocation_id: int,
    payload: AllocationUpdateIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = AllocationService(db, family_id)
    return retry_on_conflict(
        lambda: service.update_allocation(allocation_id, payload.amount)
    )


@app.post("/api/income-events/{income_event_id}/receive", response_model=IncomeEventOut)
def mark_income_received(
    income_event_id: int,
    payload: MarkReceivedIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = IncomeEventService(db, family_id)
    event = retry_on_conflict(
        lambda: service.mark_received(
            income_event_id, payload.received_amount, payload.actual_date
        )
    )
    return income_event_out(event)


# Attribution


@app.post("/api/payments/auto-attribute", response_model=AutoAttributeOut)
def auto_attribute(
    payment_id: Optional[int] = None,
    family_id: int = Depends(family_from_header),
    actor_id: Optional[int] = Depends(actor_from_header),
    db: Session = Depends(get_db),
):
    service = AttributionService(db, family_id, actor_id)
    count = retry_on_conflict(lambda: service.auto_attribute(payment_id))
    return AutoAttributeOut(payments_attributed=count)


@app.get("/api/payments/{payment_id}/attributions", response_model=AttributionListOut)
def list_attributions(
    payment_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return AttributionService(db, family_id).get_attributions(payment_id)


@app.post(
    "/api/payments/{payment_id}/attributions",
    response_model=AttributionOut,
    status_code=201,
)
def create_attribution(
    payment_id: int,
    payload: AttributionIn,
    family_id: int = Depends(family_from_header),
    actor_id: Optional[int] = Depends(actor_from_header),
    db: Session = Depends(get_db),
):
    service = AttributionService(db, family_id, actor_id)
    return retry_on_conflict(
        lambda: service.attribute(
            payment_id,
            payload.income_event_id,
            payload.amount,
            payload.attribution_type,
        )
    )


@app.delete("/api/attributions/{attribution_id}", status_code=204)
def delete_attribution(
    attribution_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = AttributionService(db, family_id)
    retry_on_conflict(lambda: service.delete_attribution(attribution_id))
    return Response(status_code=204)


@app.post("/api/payments/{payment_id}/paid", response_model=PaymentOut)
def mark_payment_paid(
    payment_id: int,
    payload: Optional[MarkPaidIn] = None,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    paid_date = payload.paid_date if payload else None
    service = AttributionService(db, family_id)
    return payment_out(retry_on_conflict(lambda: service.mark_paid(payment_id, paid_date)))


@app.delete("/api/payments/{payment_id}/paid", response_model=PaymentOut)
def revert_payment_paid(
    payment_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = AttributionService(db, family_id)
    return payment_out(retry_on_conflict(lambda: service.revert_paid(payment_id)))


@app.post("/api/payments/mark-overdue", response_model=MarkOverdueOut)
def mark_payments_overdue(
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = AttributionService(db, family_id)
    return MarkOverdueOut(payments_marked=retry_on_conflict(service.mark_overdue))


# Matching and categorization


@app.post("/api/transactions/match", response_model=list[MatchOut])
def match_transactions(
    options: Optional[MatchOptions] = None,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return MatchingService(db, family_id).match_transactions_to_payments(options)


@app.post("/api/transactions/categorize", response_model=BatchCategorizeOut)
def batch_categorize(
    payload: BatchCategorizeIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = CategorizationService(db, family_id)
    return retry_on_conflict(lambda: service.batch_categorize(payload))


@app.get("/api/transactions/uncategorized", response_model=UncategorizedOut)
def uncategorized_transactions(
    confidence_threshold: Optional[float] = None,
    limit: int = 100,
    offset: int = 0,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return CategorizationService(db, family_id).get_uncategorized(
        confidence_threshold, limit=limit, offset=offset
    )


@app.get("/api/spending-categories", response_model=list[SpendingCategoryOut])
def list_spending_categories(
    include_inactive: bool = False,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = SpendingCategoryService(db, family_id)
    return [spending_category_out(c) for c in service.list_all(include_inactive)]


@app.post(
    "/api/spending-categories", response_model=SpendingCategoryOut, status_code=201
)
def create_spending_category(
    payload: SpendingCategoryIn,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = SpendingCategoryService(db, family_id)
    return spending_category_out(retry_on_conflict(lambda: service.create(payload)))


@app.patch(
    "/api/spending-categories/{category_id}", response_model=SpendingCategoryOut
)
def update_spending_category(
    category_id: int,
    payload: SpendingCategoryUpdate,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = SpendingCategoryService(db, family_id)
    return spending_category_out(
        retry_on_conflict(lambda: service.update(category_id, payload))
    )


@app.delete("/api/spending-categories/{category_id}", status_code=204)
def delete_spending_category(
    category_id: int,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    service = SpendingCategoryService(db, family_id)
    retry_on_conflict(lambda: service.delete(category_id))
    return Response(status_code=204)


# Reports


@app.get("/api/reports/net-worth", response_model=NetWorthOut)
def report_net_worth(
    family_id: int = Depends(family_from_header), db: Session = Depends(get_db)
):
    return ReportService(db, family_id).net_worth()


@app.get("/api/reports/spending", response_model=SpendingAnalysisOut)
def report_spending(
    request: Request,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return ReportService(db, family_id).spending_analysis(period_from_request(request))


@app.get("/api/reports/cash-flow", response_model=CashFlowOut)
def report_cash_flow(
    request: Request,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return ReportService(db, family_id).cash_flow(period_from_request(request))


@app.get("/api/reports/budget-performance", response_model=BudgetPerformanceOut)
def report_budget_performance(
    request: Request,
    family_id: int = Depends(family_from_header),
    db: Session = Depends(get_db),
):
    return ReportService(db, family_id).budget_performance(
        period_from_request(request)
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
