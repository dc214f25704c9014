import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from database import get_session_factory
from errors import (
    LedgerError,
    NotFound,
    RateUnavailable,
    TransactionFailure,
)
from fx_rates import ConversionBatchService, ExchangeRateResolver, RateSyncService
from ledger import LedgerTransactionCoordinator
from models import BudgetStatus
from recurrence import RecurringExpenseProcessor
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountTypeIn,
    BudgetIn,
    BudgetOut,
    ContributionIn,
    ContributionOut,
    ConversionIn,
    ConversionOut,
    ConvertedRowOut,
    CurrencyIn,
    CategoryIn,
    ExchangeRateIn,
    ExpenseIn,
    ExpenseOut,
    IncomeIn,
    IncomeOut,
    JobIn,
    RateQueryIn,
    RateResultOut,
    TransferIn,
    TransferOut,
    WithdrawalIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    CurrencyService,
    ExchangeRateService,
    JobService,
)

logger = logging.getLogger(__name__)

scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler_manager.start()
    yield
    scheduler_manager.stop()


app = FastAPI(title="Multi-currency Ledger", lifespan=lifespan)


def get_db():
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RateUnavailable):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, TransactionFailure):
        logger.warning(f"request_failed: error={exc}")
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# Reference data


@app.get("/api/currencies")
def list_currencies(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "code": c.code, "symbol": c.symbol, "name": c.name, "is_base": c.is_base}
        for c in CurrencyService(db).list_all()
    ]


@app.post("/api/currencies", status_code=201)
def create_currency(data: CurrencyIn, db: Session = Depends(get_db)):
    try:
        currency = CurrencyService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": currency.id, "code": currency.code, "is_base": currency.is_base}


@app.get("/api/currencies/base")
def base_currency(db: Session = Depends(get_db)):
    try:
        currency = CurrencyService(db).base_currency()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": currency.id, "code": currency.code}


@app.post("/api/account-types", status_code=201)
def create_account_type(data: AccountTypeIn, db: Session = Depends(get_db)):
    try:
        account_type = AccountService(db).create_type(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": account_type.id, "name": account_type.name}


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(include_inactive: bool = False, db: Session = Depends(get_db)):
    return AccountService(db).list_all(include_inactive)


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "color": c.color}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": category.id, "name": category.name, "color": category.color}


@app.get("/api/jobs")
def list_jobs(db: Session = Depends(get_db)):
    return [
        {
            "id": job.id,
            "name": job.name,
            "salary": job.salary,
            "account_id": job.account_id,
            "currency_id": job.currency_id,
            "status": job.status.value,
        }
        for job in JobService(db).list_all()
    ]


@app.post("/api/jobs", status_code=201)
def create_job(data: JobIn, db: Session = Depends(get_db)):
    try:
        job = JobService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": job.id, "name": job.name, "status": job.status.value}


@app.post("/api/jobs/{job_id}/income", response_model=IncomeOut, status_code=201)
def post_job_income(job_id: int, db: Session = Depends(get_db)):
    try:
        income = LedgerTransactionCoordinator(db).post_income_from_job(job_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    # Built here so the job relationship loads while the session is open.
    return IncomeOut.model_validate(income)


# Exchange rates


def _rate_row(rate) -> dict:
    return {
        "id": rate.id,
        "from_currency_id": rate.from_currency_id,
        "to_currency_id": rate.to_currency_id,
        "rate": rate.rate,
        "source": rate.source.value,
        "fetched_at": rate.fetched_at.isoformat(),
    }


@app.get("/api/rates")
def latest_rates(db: Session = Depends(get_db)):
    return [_rate_row(rate) for rate in ExchangeRateService(db).latest_all()]


@app.get("/api/rates/history")
def rate_history(
    from_currency_id: int,
    to_currency_id: int,
    limit: int = 30,
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 365)
    rows = ExchangeRateService(db).history(from_currency_id, to_currency_id, limit)
    return [_rate_row(rate) for rate in rows]


@app.post("/api/rates", status_code=201)
def create_rate(data: ExchangeRateIn, db: Session = Depends(get_db)):
    try:
        rate = ExchangeRateService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _rate_row(rate)


@app.delete("/api/rates/{rate_id}", status_code=204)
def delete_rate(rate_id: int, db: Session = Depends(get_db)):
    try:
        ExchangeRateService(db).delete(rate_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/rates/resolve", response_model=Optional[RateResultOut])
def resolve_rate(
    source_currency_id: int,
    target_currency_id: int,
    intermediate_currency_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return ExchangeRateResolver(db).resolve(
        source_currency_id, target_currency_id, intermediate_currency_id
    )


@app.post("/api/rates/resolve", response_model=dict[int, Optional[RateResultOut]])
def resolve_rates(data: RateQueryIn, db: Session = Depends(get_db)):
    return ExchangeRateResolver(db).resolve_many(
        data.source_currency_id,
        data.target_currency_ids,
        data.intermediate_currency_id,
    )


@app.post("/api/rates/sync")
def sync_rates(db: Session = Depends(get_db)):
    try:
        result = RateSyncService(db).sync_official()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"synced": result.synced, "errors": result.errors, "source": result.source.value}


@app.post("/api/conversions", response_model=ConversionOut)
def convert_batch(data: ConversionIn, db: Session = Depends(get_db)):
    try:
        base_id = data.base_currency_id or CurrencyService(db).base_currency().id
    except LedgerError as exc:
        raise _http_error(exc) from exc
    service = ConversionBatchService(ExchangeRateResolver(db))
    if data.use_custom_rates:
        converted = service.convert_many_with_custom_rates(data.rows, base_id)
    else:
        converted = service.convert_many_to_base_currency(data.rows, base_id)
    totals = service.total(converted)
    return ConversionOut(
        base_currency_id=base_id,
        rows=[
            ConvertedRowOut(
                amount=row.amount,
                currency_id=row.currency_id,
                custom_rate=row.item.custom_rate,
                converted_amount=row.converted_amount,
                rate=row.rate,
                rate_missing=row.rate_missing,
            )
            for row in converted
        ],
        total=totals.total,
        excluded=totals.excluded,
    )


# Ledger mutations


@app.post("/api/incomes", response_model=IncomeOut, status_code=201)
def post_income(data: IncomeIn, db: Session = Depends(get_db)):
    try:
        income = LedgerTransactionCoordinator(db).post_income(data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    return IncomeOut.model_validate(income)


@app.put("/api/incomes/{income_id}", response_model=IncomeOut)
def update_income(income_id: int, data: IncomeIn, db: Session = Depends(get_db)):
    try:
        income = LedgerTransactionCoordinator(db).update_income(income_id, data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    return IncomeOut.model_validate(income)


@app.delete("/api/incomes/{income_id}", status_code=204)
def delete_income(income_id: int, db: Session = Depends(get_db)):
    try:
        LedgerTransactionCoordinator(db).delete_income(income_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def post_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        return LedgerTransactionCoordinator(db).post_expense(data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.put("/api/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(expense_id: int, data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        return LedgerTransactionCoordinator(db).update_expense(expense_id, data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.delete("/api/expenses/{expense_id}", status_code=204)
def delete_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        LedgerTransactionCoordinator(db).delete_expense(expense_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/expenses/recurring/due", response_model=list[ExpenseOut])
def due_recurring_expenses(today: Optional[date] = None, db: Session = Depends(get_db)):
    return RecurringExpenseProcessor(db).due_expenses(today)


@app.post(
    "/api/expenses/{expense_id}/process", response_model=ExpenseOut, status_code=201
)
def process_recurring_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        return RecurringExpenseProcessor(db).process(expense_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.post("/api/transfers", response_model=TransferOut, status_code=201)
def post_transfer(data: TransferIn, db: Session = Depends(get_db)):
    try:
        return LedgerTransactionCoordinator(db).post_transfer(data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.put("/api/transfers/{transfer_id}", response_model=TransferOut)
def update_transfer(transfer_id: int, data: TransferIn, db: Session = Depends(get_db)):
    try:
        return LedgerTransactionCoordinator(db).update_transfer(transfer_id, data)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transfers/{transfer_id}", status_code=204)
def delete_transfer(transfer_id: int, db: Session = Depends(get_db)):
    try:
        LedgerTransactionCoordinator(db).delete_transfer(transfer_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(status: Optional[BudgetStatus] = None, db: Session = Depends(get_db)):
    return BudgetService(db).list_all(status)


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).get(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(budget_id: int, data: BudgetIn, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).update(budget_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/budgets/{budget_id}/cancel", response_model=BudgetOut)
def cancel_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).cancel(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/reactivate", response_model=BudgetOut)
def reactivate_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).reactivate(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets/{budget_id}/contributions", response_model=list[ContributionOut])
def list_contributions(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetService(db).contributions(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/contributions", response_model=BudgetOut)
def contribute_to_budget(
    budget_id: int, data: ContributionIn, db: Session = Depends(get_db)
):
    try:
        return LedgerTransactionCoordinator(db).contribute_to_budget(
            budget_id, data.amount, data.from_account_id, data.description
        )
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/withdrawals", response_model=BudgetOut)
def withdraw_from_budget(
    budget_id: int, data: WithdrawalIn, db: Session = Depends(get_db)
):
    try:
        return LedgerTransactionCoordinator(db).withdraw_from_budget(
            budget_id, data.amount, data.to_account_id, data.description
        )
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc


@app.delete("/api/contributions/{contribution_id}", response_model=BudgetOut)
def reverse_contribution(contribution_id: int, db: Session = Depends(get_db)):
    try:
        return LedgerTransactionCoordinator(db).reverse_contribution(contribution_id)
    except (LedgerError, TransactionFailure) as exc:
        raise _http_error(exc) from exc
