import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from budget_status import status_after_contribution, transition
from errors import InvalidOperation, NotFound
from fx_rates import RateStore, quantize_money
from models import (
    Account,
    AccountType,
    Budget,
    BudgetContribution,
    BudgetStatus,
    Category,
    Currency,
    ExchangeRate,
    Job,
    JobStatus,
)
from schemas import (
    AccountIn,
    AccountTypeIn,
    BudgetIn,
    CategoryIn,
    CurrencyIn,
    ExchangeRateIn,
    JobIn,
)

logger = logging.getLogger(__name__)


class CurrencyService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Currency]:
        return list(self.session.scalars(select(Currency).order_by(Currency.id)).all())

    def get(self, currency_id: int) -> Currency:
        currency = self.session.get(Currency, currency_id)
        if not currency:
            raise NotFound("Currency not found")
        return currency

    def create(self, data: CurrencyIn) -> Currency:
        code = data.code.strip().upper()
        existing = self.session.scalar(select(Currency).where(Currency.code == code))
        if existing:
            raise InvalidOperation("Currency with this code already exists")
        if data.is_base:
            self._clear_base()
        currency = Currency(
            code=code,
            symbol=data.symbol.strip(),
            name=data.name.strip(),
            is_base=data.is_base,
        )
        self.session.add(currency)
        self.session.commit()
        self.session.refresh(currency)
        return currency

    def set_base(self, currency_id: int) -> Currency:
        currency = self.get(currency_id)
        self._clear_base()
        currency.is_base = True
        self.session.commit()
        return currency

    def base_currency(self) -> Currency:
        currency = self.session.scalar(
            select(Currency).where(Currency.is_base.is_(True)).order_by(Currency.id)
        )
        if currency is None:
            currency = self.session.scalar(select(Currency).where(Currency.code == "USD"))
        if currency is None:
            raise NotFound("No base currency configured")
        return currency

    def _clear_base(self) -> None:
        self.session.execute(
            update(Currency)
            .where(Currency.is_base.is_(True))
            .values(is_base=False)
            .execution_options(synchronize_session="evaluate")
        )


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_inactive: bool = False) -> list[Account]:
        stmt = select(Account).order_by(Account.name, Account.id)
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        if not self.session.get(Currency, data.currency_id):
            raise NotFound("Currency not found")
        if data.account_type_id is not None and not self.session.get(
            AccountType, data.account_type_id
        ):
            raise NotFound("Account type not found")
        account = Account(
            name=data.name.strip(),
            balance=quantize_money(data.opening_balance),
            currency_id=data.currency_id,
            account_type_id=data.account_type_id,
            is_active=data.is_active,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} currency={account.currency_id} "
            f"opening_balance={account.balance}"
        )
        return account

    def create_type(self, data: AccountTypeIn) -> AccountType:
        name = data.name.strip()
        existing = self.session.scalar(
            select(AccountType).where(func.lower(AccountType.name) == name.lower())
        )
        if existing:
            raise InvalidOperation("Account type already exists")
        account_type = AccountType(name=name)
        self.session.add(account_type)
        self.session.commit()
        self.session.refresh(account_type)
        return account_type

    def deactivate(self, account_id: int) -> Account:
        account = self.get(account_id)
        account.is_active = False
        self.session.commit()
        return account


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return list(self.session.scalars(select(Category).order_by(Category.name)).all())

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(func.lower(Category.name) == data.name.lower())
        )
        if existing:
            raise InvalidOperation("Category with this name already exists")
        category = Category(name=data.name.strip(), color=data.color)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class JobService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Job]:
        return list(self.session.scalars(select(Job).order_by(Job.name)).all())

    def get(self, job_id: int) -> Job:
        job = self.session.get(Job, job_id)
        if not job:
            raise NotFound("Job not found")
        return job

    def create(self, data: JobIn) -> Job:
        if data.account_id is not None and not self.session.get(Account, data.account_id):
            raise NotFound("Account not found")
        if data.currency_id is not None and not self.session.get(
            Currency, data.currency_id
        ):
            raise NotFound("Currency not found")
        job = Job(
            name=data.name.strip(),
            salary=quantize_money(data.salary) if data.salary is not None else None,
            account_id=data.account_id,
            currency_id=data.currency_id,
            status=data.status,
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def set_status(self, job_id: int, status: JobStatus) -> Job:
        job = self.get(job_id)
        job.status = status
        self.session.commit()
        return job


class ExchangeRateService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = RateStore(session)

    def create(self, data: ExchangeRateIn) -> ExchangeRate:
        for currency_id in (data.from_currency_id, data.to_currency_id):
            if not self.session.get(Currency, currency_id):
                raise NotFound("Currency not found")
        rate = self.store.add(
            data.from_currency_id, data.to_currency_id, data.rate, data.source
        )
        self.session.commit()
        logger.info(
            f"rate_added: from={rate.from_currency_id} to={rate.to_currency_id} "
            f"rate={rate.rate} source={rate.source.value}"
        )
        return rate

    def delete(self, rate_id: int) -> None:
        self.store.delete(rate_id)
        self.session.commit()

    def history(
        self, from_currency_id: int, to_currency_id: int, limit: int = 30
    ) -> list[ExchangeRate]:
        return self.store.history(from_currency_id, to_currency_id, limit)

    def latest_all(self) -> list[ExchangeRate]:
        return self.store.latest_all()


class BudgetService:
    """Budget administration. Money moves through the ledger coordinator."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, status: Optional[BudgetStatus] = None) -> list[Budget]:
        stmt = select(Budget).order_by(Budget.deadline.is_(None), Budget.deadline, Budget.id)
        if status is not None:
            stmt = stmt.where(Budget.status == status)
        return list(self.session.scalars(stmt).all())

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        self._check_currency_and_account(data)
        budget = Budget(
            name=data.name.strip(),
            type=data.type,
            target_amount=self._target(data),
            current_amount=0,
            currency_id=data.currency_id,
            account_id=data.account_id,
            deadline=data.deadline,
            status=BudgetStatus.active,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_created: id={budget.id} type={budget.type.value}")
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        self._check_currency_and_account(data)
        if budget.current_amount > 0 and data.currency_id != budget.currency_id:
            raise InvalidOperation("Cannot change the currency of a funded budget")
        budget.name = data.name.strip()
        budget.type = data.type
        budget.target_amount = self._target(data)
        budget.currency_id = data.currency_id
        budget.account_id = data.account_id
        budget.deadline = data.deadline
        budget.status = status_after_contribution(
            budget.status, budget.current_amount, budget.target_amount
        )
        self.session.commit()
        return budget

    def cancel(self, budget_id: int) -> Budget:
        return self._move(budget_id, BudgetStatus.cancelled)

    def reactivate(self, budget_id: int) -> Budget:
        return self._move(budget_id, BudgetStatus.active)

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        if budget.current_amount > 0:
            raise InvalidOperation("Withdraw the remaining funds before deleting a budget")
        for contribution in list(budget.contributions):
            self.session.delete(contribution)
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: id={budget_id}")

    def contributions(self, budget_id: int) -> list[BudgetContribution]:
        self.get(budget_id)
        stmt = (
            select(BudgetContribution)
            .where(BudgetContribution.budget_id == budget_id)
            .order_by(BudgetContribution.date.desc(), BudgetContribution.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def _move(self, budget_id: int, target: BudgetStatus) -> Budget:
        budget = self.get(budget_id)
        previous = budget.status
        budget.status = transition(previous, target)
        self.session.commit()
        logger.info(
            f"budget_status: id={budget.id} from={previous.value} to={budget.status.value}"
        )
        return budget

    def _check_currency_and_account(self, data: BudgetIn) -> None:
        if not self.session.get(Currency, data.currency_id):
            raise NotFound("Currency not found")
        if data.account_id is None:
            raise InvalidOperation(f"A {data.type.value} budget needs an account")
        account = self.session.get(Account, data.account_id)
        if not account:
            raise NotFound("Account not found")
        if account.currency_id != data.currency_id:
            raise InvalidOperation("Account currency does not match the budget currency")

    @staticmethod
    def _target(data: BudgetIn):
        if data.target_amount is None:
            return None
        return quantize_money(data.target_amount)
