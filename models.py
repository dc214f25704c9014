from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from database import Base

MAX_UNITS = 2**63 - 1


class ScaledDecimal(TypeDecorator):
    """Stores a Decimal as an integer count of 10**-places units.

    SQLite has no decimal type, so arithmetic done inside UPDATE statements
    stays exact only on integers. Values read back are Decimals again.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, places: int) -> None:
        super().__init__()
        self.places = places
        self.quantum = Decimal(1).scaleb(-places)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        units = int(value.quantize(self.quantum, rounding=ROUND_HALF_UP).scaleb(self.places))
        if not -MAX_UNITS <= units <= MAX_UNITS:
            raise ValueError(f"Value {value} does not fit a {self.places}-place column")
        return units

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.places)


# Money keeps 8 decimals so crypto balances survive; rates keep 10.
MONEY = ScaledDecimal(8)
RATE = ScaledDecimal(10)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RateSource(str, Enum):
    official = "official"
    binance = "binance"
    manual = "manual"


class Periodicity(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetType(str, Enum):
    goal = "goal"
    envelope = "envelope"


class BudgetStatus(str, Enum):
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class JobStatus(str, Enum):
    active = "active"
    inactive = "inactive"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Currency(Base, TimestampMixin):
    __tablename__ = "currencies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)
    symbol: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_base: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Currency(id={self.id}, code={self.code})>"


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    to_currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    source: Mapped[RateSource] = mapped_column(
        SAEnum(RateSource), nullable=False, default=RateSource.manual
    )
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    from_currency: Mapped["Currency"] = relationship(
        "Currency", foreign_keys=[from_currency_id]
    )
    to_currency: Mapped["Currency"] = relationship(
        "Currency", foreign_keys=[to_currency_id]
    )

    __table_args__ = (
        Index(
            "ix_exchange_rates_pair_fetched",
            "from_currency_id",
            "to_currency_id",
            "fetched_at",
        ),
        CheckConstraint("rate > 0", name="ck_exchange_rate_positive"),
        CheckConstraint(
            "from_currency_id <> to_currency_id", name="ck_exchange_rate_distinct"
        ),
    )


class AccountType(Base, TimestampMixin):
    __tablename__ = "account_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Running total. Only the ledger coordinator writes it after creation.
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    account_type_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("account_types.id")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    currency: Mapped["Currency"] = relationship("Currency")
    account_type: Mapped[Optional["AccountType"]] = relationship("AccountType")

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id}, name={self.name}, "
            f"balance={self.balance}, currency_id={self.currency_id})>"
        )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )


class Job(Base, TimestampMixin):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    salary: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    currency_id: Mapped[Optional[int]] = mapped_column(ForeignKey("currencies.id"))
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus), nullable=False, default=JobStatus.active
    )

    incomes: Mapped[list["Income"]] = relationship("Income", back_populates="job")


@dataclass(frozen=True)
class JobIncomeSource:
    job_id: int
    name: str
    kind: str = "job"


@dataclass(frozen=True)
class ExtraIncomeSource:
    kind: str = "extra"


IncomeSource = Union[JobIncomeSource, ExtraIncomeSource]


class Income(Base, TimestampMixin):
    __tablename__ = "incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[Optional[int]] = mapped_column(ForeignKey("jobs.id"))
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    official_rate: Mapped[Optional[Decimal]] = mapped_column(RATE)
    custom_rate: Mapped[Optional[Decimal]] = mapped_column(RATE)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    description: Mapped[Optional[str]] = mapped_column(Text)

    job: Mapped[Optional["Job"]] = relationship("Job", back_populates="incomes")
    account: Mapped["Account"] = relationship("Account")
    currency: Mapped["Currency"] = relationship("Currency")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_income_amount_positive"),
        Index("ix_incomes_account_date", "account_id", "date"),
    )

    @property
    def source(self) -> IncomeSource:
        if self.job is None:
            return ExtraIncomeSource()
        return JobIncomeSource(job_id=self.job.id, name=self.job.name)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    official_rate: Mapped[Optional[Decimal]] = mapped_column(RATE)
    custom_rate: Mapped[Optional[Decimal]] = mapped_column(RATE)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    periodicity: Mapped[Optional[Periodicity]] = mapped_column(SAEnum(Periodicity))
    next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    origin_expense_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id")
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    description: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship("Category", back_populates="expenses")
    account: Mapped["Account"] = relationship("Account")
    currency: Mapped["Currency"] = relationship("Currency")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_account_date", "account_id", "date"),
        Index("ix_expenses_recurring_due", "is_recurring", "next_due_date"),
    )


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    to_account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    exchange_rate: Mapped[Optional[Decimal]] = mapped_column(RATE)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    description: Mapped[Optional[str]] = mapped_column(Text)

    from_account: Mapped["Account"] = relationship(
        "Account", foreign_keys=[from_account_id]
    )
    to_account: Mapped["Account"] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    currency: Mapped["Currency"] = relationship("Currency")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfer_amount_positive"),
        CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfer_distinct_accounts"
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[BudgetType] = mapped_column(SAEnum(BudgetType), nullable=False)
    target_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    current_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=0)
    currency_id: Mapped[int] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), nullable=False, default=BudgetStatus.active
    )

    currency: Mapped["Currency"] = relationship("Currency")
    account: Mapped["Account"] = relationship("Account")
    contributions: Mapped[list["BudgetContribution"]] = relationship(
        "BudgetContribution",
        back_populates="budget",
        order_by="BudgetContribution.date.desc()",
    )

    __table_args__ = (
        CheckConstraint("current_amount >= 0", name="ck_budget_current_non_negative"),
    )


class BudgetContribution(Base, TimestampMixin):
    __tablename__ = "budget_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    # Positive for a contribution, negative for a withdrawal.
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="contributions")

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_contribution_amount_nonzero"),
        Index("ix_budget_contributions_budget_date", "budget_id", "date"),
    )

    @property
    def is_withdrawal(self) -> bool:
        return self.amount < 0
