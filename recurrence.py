import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import InvalidOperation, NotFound
from ledger import LedgerTransactionCoordinator
from models import Expense, Periodicity, utcnow
from schemas import ExpenseIn

logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Same day-of-month, clamped to the last day of a shorter month."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_due_date(periodicity: Periodicity, from_date: date) -> date:
    if periodicity == Periodicity.weekly:
        return from_date + timedelta(days=7)
    if periodicity == Periodicity.monthly:
        return add_months(from_date, 1)
    if periodicity == Periodicity.yearly:
        return add_months(from_date, 12)
    raise InvalidOperation(f"Unsupported periodicity: {periodicity}")


class RecurringExpenseProcessor:
    """Posts occurrences of recurring expenses on demand."""

    def __init__(
        self,
        session: Session,
        coordinator: Optional[LedgerTransactionCoordinator] = None,
    ) -> None:
        self.session = session
        self.coordinator = coordinator or LedgerTransactionCoordinator(session)

    def due_expenses(self, today: Optional[date] = None) -> list[Expense]:
        today = today or local_today()
        stmt = (
            select(Expense)
            .where(
                Expense.is_recurring.is_(True),
                Expense.next_due_date.is_not(None),
                Expense.next_due_date <= today,
            )
            .order_by(Expense.next_due_date, Expense.id)
        )
        return list(self.session.scalars(stmt).all())

    def process(self, expense_id: int, now: Optional[datetime] = None) -> Expense:
        now = now or utcnow()
        with self.coordinator.atomic():
            template = self.session.get(Expense, expense_id)
            if template is None:
                raise NotFound("Expense not found")
            if not template.is_recurring:
                raise InvalidOperation("Expense is not recurring")
            if template.periodicity is None:
                raise InvalidOperation("Recurring expense has no periodicity")

            occurrence = self.coordinator.post_expense(
                ExpenseIn(
                    category_id=template.category_id,
                    account_id=template.account_id,
                    amount=template.amount,
                    currency_id=template.currency_id,
                    official_rate=template.official_rate,
                    custom_rate=template.custom_rate,
                    date=now,
                    description=template.description,
                )
            )
            occurrence.origin_expense_id = template.id

            # Base the schedule on the previous due date, not on when it ran.
            base = template.next_due_date or local_today()
            template.next_due_date = calculate_next_due_date(template.periodicity, base)
            self.session.flush()
        logger.info(
            f"recurring_expense_processed: template={template.id} "
            f"occurrence={occurrence.id} next_due={template.next_due_date}"
        )
        return occurrence
