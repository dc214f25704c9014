import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional, TypeVar, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from budget_status import (
    ensure_accepts_contribution,
    ensure_accepts_withdrawal,
    status_after_contribution,
    status_after_withdrawal,
)
from config import get_settings
from errors import InvalidOperation, NotFound, TransactionFailure
from fx_rates import ONE, ExchangeRateResolver, quantize_money, quantize_rate, to_decimal
from models import (
    Account,
    Budget,
    BudgetContribution,
    BudgetStatus,
    Category,
    Currency,
    Expense,
    Income,
    Job,
    JobStatus,
    Transfer,
    utcnow,
)
from schemas import ExpenseIn, IncomeIn, TransferIn

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (account_id, signed delta in the account's currency)
Effect = tuple[int, Decimal]

OPEN_STATUSES = (BudgetStatus.active, BudgetStatus.completed)


def _optional_rate(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return quantize_rate(to_decimal(value))


class LedgerTransactionCoordinator:
    """Every balance-moving write goes through here.

    Each public mutation runs in one database transaction. Updates reverse the
    stored effect of a record before applying the effect of its new values, so
    editing a record always equals deleting it and posting the new payload.
    Debits are re-checked by the UPDATE statement that performs them.
    """

    def __init__(
        self,
        session: Session,
        resolver: Optional[ExchangeRateResolver] = None,
        allow_overdraft: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.resolver = resolver or ExchangeRateResolver(session)
        if allow_overdraft is None:
            allow_overdraft = get_settings().allow_overdraft
        self.allow_overdraft = allow_overdraft
        self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        """Commit on the outermost exit; roll everything back on any error."""
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self.session
            if outermost:
                self.session.commit()
        except SQLAlchemyError as exc:
            if not outermost:
                raise
            self.session.rollback()
            logger.warning(f"ledger_rollback: storage_error={exc.__class__.__name__}")
            raise TransactionFailure("Ledger transaction could not be committed") from exc
        except Exception:
            if outermost:
                self.session.rollback()
            raise
        finally:
            self._depth -= 1

    # Incomes

    def post_income(self, data: IncomeIn) -> Income:
        with self.atomic():
            self._check_income_refs(data)
            income = Income(date=data.date or utcnow())
            self._assign_income(income, data)
            self._post(income, self._income_effects)
        logger.info(
            f"income_posted: id={income.id} account={income.account_id} "
            f"amount={income.amount} currency={income.currency_id}"
        )
        return income

    def update_income(self, income_id: int, data: IncomeIn) -> Income:
        with self.atomic():
            income = self._get(Income, income_id, "Income")
            self._check_income_refs(data)
            self._replace(
                income,
                self._income_effects,
                lambda row: self._assign_income(row, data),
            )
        logger.info(f"income_updated: id={income.id} account={income.account_id}")
        return income

    def delete_income(self, income_id: int) -> None:
        with self.atomic():
            income = self._get(Income, income_id, "Income")
            self._remove(income, self._income_effects)
        logger.info(f"income_deleted: id={income_id}")

    def post_income_from_job(self, job_id: int, description: Optional[str] = None) -> Income:
        job = self._get(Job, job_id, "Job")
        if job.status != JobStatus.active:
            raise InvalidOperation("Job is not active")
        if not job.salary or job.account_id is None or job.currency_id is None:
            raise InvalidOperation("Job needs a salary, an account and a currency")
        return self.post_income(
            IncomeIn(
                job_id=job.id,
                account_id=job.account_id,
                amount=job.salary,
                currency_id=job.currency_id,
                description=description or f"Salary: {job.name}",
            )
        )

    # Expenses

    def post_expense(self, data: ExpenseIn) -> Expense:
        with self.atomic():
            self._check_expense_refs(data)
            expense = Expense(date=data.date or utcnow())
            self._assign_expense(expense, data)
            self._post(expense, self._expense_effects)
        logger.info(
            f"expense_posted: id={expense.id} account={expense.account_id} "
            f"amount={expense.amount} currency={expense.currency_id}"
        )
        return expense

    def update_expense(self, expense_id: int, data: ExpenseIn) -> Expense:
        with self.atomic():
            expense = self._get(Expense, expense_id, "Expense")
            self._check_expense_refs(data)
            self._replace(
                expense,
                self._expense_effects,
                lambda row: self._assign_expense(row, data),
            )
        logger.info(f"expense_updated: id={expense.id} account={expense.account_id}")
        return expense

    def delete_expense(self, expense_id: int) -> None:
        with self.atomic():
            expense = self._get(Expense, expense_id, "Expense")
            # Copies posted from this template keep their own balance effect.
            self.session.execute(
                update(Expense)
                .where(Expense.origin_expense_id == expense_id)
                .values(origin_expense_id=None)
                .execution_options(synchronize_session=False)
            )
            self._remove(expense, self._expense_effects)
        logger.info(f"expense_deleted: id={expense_id}")

    # Transfers

    def post_transfer(self, data: TransferIn) -> Transfer:
        with self.atomic():
            self._check_transfer_refs(data)
            transfer = Transfer(date=data.date or utcnow())
            self._assign_transfer(transfer, data)
            self._post(transfer, self._transfer_effects)
        logger.info(
            f"transfer_posted: id={transfer.id} from={transfer.from_account_id} "
            f"to={transfer.to_account_id} amount={transfer.amount}"
        )
        return transfer

    def update_transfer(self, transfer_id: int, data: TransferIn) -> Transfer:
        with self.atomic():
            transfer = self._get(Transfer, transfer_id, "Transfer")
            self._check_transfer_refs(data)
            self._replace(
                transfer,
                self._transfer_effects,
                lambda row: self._assign_transfer(row, data),
            )
        logger.info(f"transfer_updated: id={transfer.id}")
        return transfer

    def delete_transfer(self, transfer_id: int) -> None:
        with self.atomic():
            transfer = self._get(Transfer, transfer_id, "Transfer")
            self._remove(transfer, self._transfer_effects)
        logger.info(f"transfer_deleted: id={transfer_id}")

    # Budgets

    def contribute_to_budget(
        self,
        budget_id: int,
        amount: Union[Decimal, int, str],
        from_account_id: int,
        description: Optional[str] = None,
    ) -> Budget:
        amount = self._positive_amount(amount)
        with self.atomic():
            budget = self._locked(Budget, budget_id, "Budget")
            ensure_accepts_contribution(budget.status)
            account = self._locked(Account, from_account_id, "Account")
            self._check_budget_currency(budget, account)
            if account.balance < amount:
                raise InvalidOperation("Insufficient funds in account")

            self._adjust_balance(account.id, -amount, guard=True)
            self._adjust_budget(budget.id, amount, (BudgetStatus.active,))
            self.session.refresh(budget)
            budget.status = status_after_contribution(
                budget.status, budget.current_amount, budget.target_amount
            )
            self.session.add(
                BudgetContribution(
                    budget_id=budget.id,
                    amount=amount,
                    from_account_id=account.id,
                    description=description,
                    date=utcnow(),
                )
            )
            self.session.flush()
        logger.info(
            f"budget_contribution: budget={budget.id} account={from_account_id} "
            f"amount={amount} current={budget.current_amount} status={budget.status.value}"
        )
        return budget

    def withdraw_from_budget(
        self,
        budget_id: int,
        amount: Union[Decimal, int, str],
        to_account_id: int,
        description: Optional[str] = None,
    ) -> Budget:
        amount = self._positive_amount(amount)
        with self.atomic():
            budget = self._locked(Budget, budget_id, "Budget")
            ensure_accepts_withdrawal(budget.status)
            account = self._locked(Account, to_account_id, "Account")
            self._check_budget_currency(budget, account)
            if budget.current_amount < amount:
                raise InvalidOperation("Insufficient funds in budget")

            self._adjust_budget(budget.id, -amount, OPEN_STATUSES)
            self._adjust_balance(account.id, amount)
            self.session.refresh(budget)
            budget.status = status_after_withdrawal(budget.status)
            self.session.add(
                BudgetContribution(
                    budget_id=budget.id,
                    amount=-amount,
                    to_account_id=account.id,
                    description=description,
                    date=utcnow(),
                )
            )
            self.session.flush()
        logger.info(
            f"budget_withdrawal: budget={budget.id} account={to_account_id} "
            f"amount={amount} current={budget.current_amount} status={budget.status.value}"
        )
        return budget

    def reverse_contribution(self, contribution_id: int) -> Budget:
        with self.atomic():
            contribution = self._locked(
                BudgetContribution, contribution_id, "Contribution"
            )
            budget = self._locked(Budget, contribution.budget_id, "Budget")
            if budget.status == BudgetStatus.cancelled:
                raise InvalidOperation("Cannot change a cancelled budget")

            amount = abs(contribution.amount)
            if contribution.is_withdrawal:
                account = self._locked(Account, contribution.to_account_id, "Account")
                if account.balance < amount:
                    raise InvalidOperation("Insufficient funds in account")
                self._adjust_balance(account.id, -amount, guard=True)
                self._adjust_budget(budget.id, amount, OPEN_STATUSES)
                self.session.refresh(budget)
                budget.status = status_after_contribution(
                    budget.status, budget.current_amount, budget.target_amount
                )
            else:
                self._adjust_budget(budget.id, -amount, OPEN_STATUSES)
                self._adjust_balance(contribution.from_account_id, amount)
                self.session.refresh(budget)
                budget.status = status_after_withdrawal(budget.status)
            self.session.delete(contribution)
            self.session.flush()
        logger.info(
            f"budget_contribution_reversed: id={contribution_id} budget={budget.id} "
            f"current={budget.current_amount} status={budget.status.value}"
        )
        return budget

    # Shared reverse-then-reapply machinery

    def _post(self, record: T, effects_of: Callable[[T], list[Effect]]) -> None:
        self.session.add(record)
        self.session.flush()
        self.session.refresh(record)
        self._apply(effects_of(record))

    def _replace(
        self,
        record: T,
        effects_of: Callable[[T], list[Effect]],
        assign: Callable[[T], None],
    ) -> None:
        self._reverse(effects_of(record))
        assign(record)
        self.session.flush()
        self.session.refresh(record)
        self._apply(effects_of(record))

    def _remove(self, record: T, effects_of: Callable[[T], list[Effect]]) -> None:
        self._reverse(effects_of(record))
        self.session.delete(record)
        self.session.flush()

    def _apply(self, effects: Iterable[Effect]) -> None:
        guard = not self.allow_overdraft
        for account_id, delta in effects:
            self._adjust_balance(account_id, delta, guard=guard)

    def _reverse(self, effects: Iterable[Effect]) -> None:
        for account_id, delta in effects:
            self._adjust_balance(account_id, -delta)

    def _adjust_balance(self, account_id: int, delta: Decimal, guard: bool = False) -> None:
        delta = quantize_money(delta)
        if delta == 0:
            self._get(Account, account_id, "Account")
            return
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + delta)
            .execution_options(synchronize_session=False)
        )
        if guard and delta < 0:
            stmt = stmt.where(Account.balance >= -delta)
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            if self.session.get(Account, account_id) is None:
                raise NotFound("Account not found")
            raise InvalidOperation("Insufficient funds in account")
        self._expire(Account, account_id, "balance")

    def _adjust_budget(
        self, budget_id: int, delta: Decimal, statuses: Iterable[BudgetStatus]
    ) -> None:
        stmt = (
            update(Budget)
            .where(Budget.id == budget_id, Budget.status.in_(list(statuses)))
            .values(current_amount=Budget.current_amount + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Budget.current_amount >= -delta)
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            if delta < 0:
                raise InvalidOperation("Insufficient funds in budget")
            raise InvalidOperation("Budget no longer accepts contributions")
        self._expire(Budget, budget_id, "current_amount")

    def _expire(self, model: type, ident: int, attribute: str) -> None:
        key = self.session.identity_key(model, ident)
        cached = self.session.identity_map.get(key)
        if cached is not None:
            self.session.expire(cached, [attribute])

    # Effects

    def _income_effects(self, income: Income) -> list[Effect]:
        return [(income.account_id, self._settled_amount(income))]

    def _expense_effects(self, expense: Expense) -> list[Effect]:
        return [(expense.account_id, -self._settled_amount(expense))]

    def _transfer_effects(self, transfer: Transfer) -> list[Effect]:
        credited = transfer.amount * (transfer.exchange_rate or ONE)
        return [
            (transfer.from_account_id, -transfer.amount),
            (transfer.to_account_id, credited),
        ]

    def _settled_amount(self, record: Union[Income, Expense]) -> Decimal:
        """Amount in the account's currency."""
        account = self._get(Account, record.account_id, "Account")
        if account.currency_id == record.currency_id:
            return record.amount
        # Rows posted before rates were captured settle one to one.
        rate = record.custom_rate or record.official_rate or ONE
        return quantize_money(record.amount * rate)

    def _capture_official_rate(self, record: Union[Income, Expense]) -> None:
        account = self._get(Account, record.account_id, "Account")
        if account.currency_id == record.currency_id:
            return
        if record.custom_rate or record.official_rate:
            return
        result = self.resolver.require(record.currency_id, account.currency_id)
        record.official_rate = quantize_rate(result.rate)

    # Field assignment

    def _assign_income(self, income: Income, data: IncomeIn) -> None:
        income.job_id = data.job_id
        income.account_id = data.account_id
        income.amount = self._positive_amount(data.amount)
        income.currency_id = data.currency_id
        income.official_rate = _optional_rate(data.official_rate)
        income.custom_rate = _optional_rate(data.custom_rate)
        if data.date is not None:
            income.date = data.date
        income.description = data.description
        self._capture_official_rate(income)

    def _assign_expense(self, expense: Expense, data: ExpenseIn) -> None:
        expense.category_id = data.category_id
        expense.account_id = data.account_id
        expense.amount = self._positive_amount(data.amount)
        expense.currency_id = data.currency_id
        expense.official_rate = _optional_rate(data.official_rate)
        expense.custom_rate = _optional_rate(data.custom_rate)
        expense.is_recurring = data.is_recurring
        expense.periodicity = data.periodicity if data.is_recurring else None
        expense.next_due_date = data.next_due_date if data.is_recurring else None
        if data.date is not None:
            expense.date = data.date
        expense.description = data.description
        self._capture_official_rate(expense)

    def _assign_transfer(self, transfer: Transfer, data: TransferIn) -> None:
        transfer.from_account_id = data.from_account_id
        transfer.to_account_id = data.to_account_id
        transfer.amount = self._positive_amount(data.amount)
        transfer.currency_id = data.currency_id
        transfer.exchange_rate = _optional_rate(data.exchange_rate)
        if data.date is not None:
            transfer.date = data.date
        transfer.description = data.description

    # Lookups and checks

    def _check_income_refs(self, data: IncomeIn) -> None:
        self._get(Account, data.account_id, "Account")
        self._get(Currency, data.currency_id, "Currency")
        if data.job_id is not None:
            self._get(Job, data.job_id, "Job")

    def _check_expense_refs(self, data: ExpenseIn) -> None:
        self._get(Account, data.account_id, "Account")
        self._get(Currency, data.currency_id, "Currency")
        self._get(Category, data.category_id, "Category")
        if data.is_recurring and data.periodicity is None:
            raise InvalidOperation("Recurring expenses need a periodicity")

    def _check_transfer_refs(self, data: TransferIn) -> None:
        if data.from_account_id == data.to_account_id:
            raise InvalidOperation("Source and destination accounts must differ")
        self._get(Account, data.from_account_id, "Source account")
        self._get(Account, data.to_account_id, "Destination account")
        self._get(Currency, data.currency_id, "Currency")

    @staticmethod
    def _check_budget_currency(budget: Budget, account: Account) -> None:
        if budget.currency_id != account.currency_id:
            raise InvalidOperation("Account currency does not match the budget currency")

    @staticmethod
    def _positive_amount(amount: Union[Decimal, int, str]) -> Decimal:
        value = quantize_money(to_decimal(amount))
        if value <= 0:
            raise InvalidOperation("Amount must be positive")
        return value

    def _get(self, model: type[T], ident: int, label: str) -> T:
        obj = self.session.get(model, ident)
        if obj is None:
            raise NotFound(f"{label} not found")
        return obj

    def _locked(self, model: type[T], ident: int, label: str) -> T:
        stmt = (
            select(model)
            .where(model.id == ident)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        obj = self.session.scalar(stmt)
        if obj is None:
            raise NotFound(f"{label} not found")
        return obj
