import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fx_rates import RateKind
from models import BudgetStatus, BudgetType, JobStatus, Periodicity, RateSource


class CurrencyIn(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)
    symbol: str = Field(default="", max_length=10)
    name: str = Field(..., min_length=1, max_length=100)
    is_base: bool = False


class AccountTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency_id: int
    account_type_id: Optional[int] = None
    opening_balance: Decimal = Decimal("0")
    is_active: bool = True


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)


class JobIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    salary: Optional[Decimal] = Field(default=None, gt=0)
    account_id: Optional[int] = None
    currency_id: Optional[int] = None
    status: JobStatus = JobStatus.active


class ExchangeRateIn(BaseModel):
    from_currency_id: int
    to_currency_id: int
    rate: Decimal = Field(..., gt=0)
    source: RateSource = RateSource.manual


class IncomeIn(BaseModel):
    job_id: Optional[int] = None
    account_id: int
    amount: Decimal = Field(..., gt=0)
    currency_id: int
    official_rate: Optional[Decimal] = Field(default=None, gt=0)
    custom_rate: Optional[Decimal] = Field(default=None, gt=0)
    date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=500)


class ExpenseIn(BaseModel):
    category_id: int
    account_id: int
    amount: Decimal = Field(..., gt=0)
    currency_id: int
    official_rate: Optional[Decimal] = Field(default=None, gt=0)
    custom_rate: Optional[Decimal] = Field(default=None, gt=0)
    is_recurring: bool = False
    periodicity: Optional[Periodicity] = None
    next_due_date: Optional[dt.date] = None
    date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _recurring_needs_periodicity(self) -> "ExpenseIn":
        if self.is_recurring and self.periodicity is None:
            raise ValueError("Periodicity is required for recurring expenses")
        return self


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal = Field(..., gt=0)
    currency_id: int
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)
    date: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=500)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: BudgetType
    target_amount: Optional[Decimal] = Field(default=None, gt=0)
    currency_id: int
    account_id: Optional[int] = None
    deadline: Optional[dt.date] = None


class ContributionIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    from_account_id: int
    description: Optional[str] = Field(default=None, max_length=500)


class WithdrawalIn(BaseModel):
    amount: Decimal = Field(..., gt=0)
    to_account_id: int
    description: Optional[str] = Field(default=None, max_length=500)


class RateQueryIn(BaseModel):
    source_currency_id: int
    target_currency_ids: list[int] = Field(..., min_length=1)
    intermediate_currency_id: Optional[int] = None


class ConversionRowIn(BaseModel):
    amount: Decimal
    currency_id: int
    custom_rate: Optional[Decimal] = None


class ConversionIn(BaseModel):
    rows: list[ConversionRowIn]
    base_currency_id: Optional[int] = None
    use_custom_rates: bool = True


class IntermediateRouteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    currency_id: int
    currency_code: str
    rate1: Decimal
    rate2: Decimal


class RateResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rate: Decimal
    kind: RateKind
    source: RateSource
    is_inverse: bool
    intermediate_route: Optional[IntermediateRouteOut] = None


class ConvertedRowOut(BaseModel):
    amount: Decimal
    currency_id: int
    custom_rate: Optional[Decimal] = None
    converted_amount: Decimal
    rate: Optional[Decimal]
    rate_missing: bool


class ConversionOut(BaseModel):
    base_currency_id: int
    rows: list[ConvertedRowOut]
    total: Decimal
    excluded: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    balance: Decimal
    currency_id: int
    account_type_id: Optional[int]
    is_active: bool


class JobSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: Literal["job"] = "job"
    job_id: int
    name: str


class ExtraSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: Literal["extra"] = "extra"


class IncomeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source: Union[JobSourceOut, ExtraSourceOut]
    account_id: int
    amount: Decimal
    currency_id: int
    official_rate: Optional[Decimal]
    custom_rate: Optional[Decimal]
    date: datetime
    description: Optional[str]


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    account_id: int
    amount: Decimal
    currency_id: int
    official_rate: Optional[Decimal]
    custom_rate: Optional[Decimal]
    is_recurring: bool
    periodicity: Optional[Periodicity]
    next_due_date: Optional[dt.date]
    origin_expense_id: Optional[int]
    date: datetime
    description: Optional[str]


class TransferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_account_id: int
    to_account_id: int
    amount: Decimal
    currency_id: int
    exchange_rate: Optional[Decimal]
    date: datetime
    description: Optional[str]


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: BudgetType
    target_amount: Optional[Decimal]
    current_amount: Decimal
    currency_id: int
    account_id: int
    deadline: Optional[dt.date]
    status: BudgetStatus


class ContributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    amount: Decimal
    from_account_id: Optional[int]
    to_account_id: Optional[int]
    description: Optional[str]
    date: datetime
    is_withdrawal: bool
