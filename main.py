import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool

from config import Settings, get_settings
from fx_rates import FxRateService
from initializer import AppContext, initialize
from models import TransactionType
from periods import parse_day, parse_month
from reports import (
    MonthlyTotal,
    category_month_breakdown,
    category_totals,
    filter_by_day,
    filter_by_month,
    month_summary,
    monthly_totals,
    recent_transactions,
)
from schemas import (
    CategoryDeleteIn,
    CategoryIn,
    CategoryMoveIn,
    CurrencyIn,
    TransactionIn,
    TransactionOut,
)
from services import apply_transaction_edit, build_transaction, local_data_counts

router = APIRouter(prefix="/api")


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def get_fx(request: Request) -> FxRateService:
    return request.app.state.fx


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _month_out(total: MonthlyTotal) -> dict[str, object]:
    return {
        "month": total.label,
        "income": total.income,
        "expense": total.expense,
        "net": total.net,
    }


def _categories_out(ctx: AppContext) -> dict[str, list[str]]:
    return {
        TransactionType.expense.value: list(ctx.categories.expense_categories),
        TransactionType.income.value: list(ctx.categories.income_categories),
    }


async def _converted_amount(
    ctx: AppContext, fx: FxRateService, data: TransactionIn
) -> float:
    # the lookup runs off the loop; the store is only touched once it resolves
    display = ctx.app_settings.selected_currency
    currency = data.currency or display
    return await run_in_threadpool(
        fx.convert, data.original_amount, currency, display, data.date
    )


@router.get("/transactions", response_model=list[TransactionOut])
async def list_transactions(
    day: Optional[str] = None,
    month: Optional[str] = None,
    ctx: AppContext = Depends(get_ctx),
):
    rows = ctx.transactions.transactions
    try:
        if day:
            rows = filter_by_day(rows, parse_day(day))
        elif month:
            rows = filter_by_month(rows, parse_month(month))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return rows


@router.get("/transactions/recent", response_model=list[TransactionOut])
async def list_recent_transactions(ctx: AppContext = Depends(get_ctx)):
    return recent_transactions(ctx.transactions.transactions)


@router.post("/transactions", response_model=TransactionOut, status_code=201)
async def create_transaction(
    data: TransactionIn,
    ctx: AppContext = Depends(get_ctx),
    fx: FxRateService = Depends(get_fx),
):
    amount = await _converted_amount(ctx, fx, data)
    txn = build_transaction(
        data, amount, display_currency=ctx.app_settings.selected_currency
    )
    ctx.transactions.add(txn)
    return txn


@router.put("/transactions/{transaction_id}", response_model=TransactionOut)
async def edit_transaction(
    transaction_id: str,
    data: TransactionIn,
    ctx: AppContext = Depends(get_ctx),
    fx: FxRateService = Depends(get_fx),
):
    if ctx.transactions.get(transaction_id) is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    amount = await _converted_amount(ctx, fx, data)
    # it may have been deleted while the rate lookup ran
    txn = ctx.transactions.get(transaction_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    apply_transaction_edit(
        txn, data, amount, display_currency=ctx.app_settings.selected_currency
    )
    ctx.transactions.update(txn)
    return txn


@router.delete("/transactions/{transaction_id}")
async def remove_transaction(transaction_id: str, ctx: AppContext = Depends(get_ctx)):
    txn = ctx.transactions.get(transaction_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"deleted": ctx.transactions.delete(txn)}


@router.get("/categories")
async def list_categories(ctx: AppContext = Depends(get_ctx)):
    return _categories_out(ctx)


@router.post("/categories")
async def add_category(data: CategoryIn, ctx: AppContext = Depends(get_ctx)):
    added = ctx.categories.add(data.name, data.type)
    return {"added": added, "categories": _categories_out(ctx)}


@router.post("/categories/{txn_type}/delete")
async def delete_categories(
    txn_type: TransactionType, data: CategoryDeleteIn, ctx: AppContext = Depends(get_ctx)
):
    removed = ctx.categories.delete(txn_type, data.indices)
    return {"removed": removed, "categories": _categories_out(ctx)}


@router.post("/categories/{txn_type}/move")
async def move_categories(
    txn_type: TransactionType, data: CategoryMoveIn, ctx: AppContext = Depends(get_ctx)
):
    ctx.categories.move(txn_type, data.from_indices, data.to_index)
    return _categories_out(ctx)


@router.get("/reports/monthly")
async def monthly_report(
    months_back: int = Query(12, ge=1, le=120),
    ctx: AppContext = Depends(get_ctx),
):
    totals = monthly_totals(ctx.transactions.transactions, months_back)
    return [_month_out(total) for total in totals]


@router.get("/reports/categories")
async def category_report(ctx: AppContext = Depends(get_ctx)):
    totals = category_totals(ctx.transactions.transactions).values()
    ordered = sorted(totals, key=lambda t: (-(t.expense + t.income), t.category))
    return [
        {
            "category": t.category,
            "expense": t.expense,
            "income": t.income,
            "saved": t.saved,
        }
        for t in ordered
    ]


@router.get("/reports/breakdown")
async def breakdown_report(
    months_back: int = Query(6, ge=1, le=120),
    ctx: AppContext = Depends(get_ctx),
):
    breakdown = category_month_breakdown(ctx.transactions.transactions, months_back)
    return {
        name: [_month_out(total) for total in series]
        for name, series in sorted(breakdown.items())
    }


@router.get("/summary")
async def summary(month: Optional[str] = None, ctx: AppContext = Depends(get_ctx)):
    try:
        target = parse_month(month, today=date.today())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    out = _month_out(month_summary(ctx.transactions.transactions, target))
    out["currency"] = ctx.app_settings.selected_currency
    return out


@router.get("/settings")
async def read_settings(ctx: AppContext = Depends(get_ctx)):
    return {"selected_currency": ctx.app_settings.selected_currency}


@router.put("/settings/currency")
async def select_currency(data: CurrencyIn, ctx: AppContext = Depends(get_ctx)):
    ctx.app_settings.selected_currency = data.currency
    return {"selected_currency": ctx.app_settings.selected_currency}


@router.get("/status")
async def storage_status(ctx: AppContext = Depends(get_ctx)):
    transactions, categories = local_data_counts(ctx.session)
    return {
        "last_error": ctx.status.last_error,
        "last_saved_at": ctx.status.last_saved_at,
        "transactions": transactions,
        "categories": categories,
        "migration": ctx.migration.state.value,
    }


def create_app(
    settings: Optional[Settings] = None, fx_service: Optional[FxRateService] = None
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)
    fx = fx_service or FxRateService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = initialize(settings)
        app.state.ctx = ctx
        app.state.fx = fx
        try:
            yield
        finally:
            ctx.close()

    app = FastAPI(title="PennyKeep", lifespan=lifespan)
    app.include_router(router)
    return app
