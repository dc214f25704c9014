from datetime import date, datetime
from decimal import Decimal

import pytest

from errors import InvalidOperation, NotFound
from fx_rates import ExchangeRateResolver
from ledger import LedgerTransactionCoordinator
from models import Periodicity
from recurrence import (
    RecurringExpenseProcessor,
    add_months,
    calculate_next_due_date,
    days_in_month,
)
from schemas import ExpenseIn


def test_days_in_month_handles_leap_years():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2025, 2) == 28
    assert days_in_month(2025, 12) == 31


def test_month_arithmetic_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2025, 12, 15), 1) == date(2026, 1, 15)
    assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)


def test_next_due_date_by_periodicity():
    start = date(2025, 3, 31)
    assert calculate_next_due_date(Periodicity.weekly, start) == date(2025, 4, 7)
    assert calculate_next_due_date(Periodicity.monthly, start) == date(2025, 4, 30)
    assert calculate_next_due_date(Periodicity.yearly, start) == date(2026, 3, 31)


def test_clamped_day_carries_forward():
    first = calculate_next_due_date(Periodicity.monthly, date(2024, 1, 31))
    second = calculate_next_due_date(Periodicity.monthly, first)
    assert (first, second) == (date(2024, 2, 29), date(2024, 3, 29))


def _processor(session):
    ledger = LedgerTransactionCoordinator(
        session, resolver=ExchangeRateResolver(session, intermediate_codes=())
    )
    return RecurringExpenseProcessor(session, coordinator=ledger), ledger


def _recurring(account, category, **extra) -> ExpenseIn:
    values = dict(
        category_id=category.id,
        account_id=account.id,
        amount=Decimal("15.99"),
        currency_id=account.currency_id,
        is_recurring=True,
        periodicity=Periodicity.monthly,
        next_due_date=date(2025, 1, 31),
        description="Streaming",
    )
    values.update(extra)
    return ExpenseIn(**values)


def test_process_posts_copy_and_advances_schedule(session, currencies, make_account, category):
    account = make_account(currencies["USD"], "100")
    processor, ledger = _processor(session)
    template = ledger.post_expense(_recurring(account, category))
    assert account.balance == Decimal("84.01")

    now = datetime(2025, 1, 31, 8, 30)
    occurrence = processor.process(template.id, now=now)

    assert occurrence.id != template.id
    assert not occurrence.is_recurring
    assert occurrence.periodicity is None
    assert occurrence.origin_expense_id == template.id
    assert occurrence.date == now
    assert occurrence.amount == Decimal("15.99")
    assert occurrence.description == "Streaming"
    assert template.next_due_date == date(2025, 2, 28)
    assert account.balance == Decimal("68.02")


def test_due_expenses(session, currencies, make_account, category):
    account = make_account(currencies["USD"], "100")
    processor, ledger = _processor(session)
    due = ledger.post_expense(_recurring(account, category))
    ledger.post_expense(_recurring(account, category, next_due_date=date(2025, 3, 1)))
    ledger.post_expense(
        ExpenseIn(
            category_id=category.id,
            account_id=account.id,
            amount=Decimal("1"),
            currency_id=account.currency_id,
        )
    )

    assert [e.id for e in processor.due_expenses(date(2025, 2, 1))] == [due.id]


def test_process_rejects_one_off_expenses(session, currencies, make_account, category):
    account = make_account(currencies["USD"], "100")
    processor, ledger = _processor(session)
    one_off = ledger.post_expense(
        ExpenseIn(
            category_id=category.id,
            account_id=account.id,
            amount=Decimal("10"),
            currency_id=account.currency_id,
        )
    )

    with pytest.raises(InvalidOperation):
        processor.process(one_off.id)
    with pytest.raises(NotFound):
        processor.process(12345)
    assert account.balance == Decimal("90")


def test_recurring_payload_needs_periodicity():
    with pytest.raises(ValueError):
        ExpenseIn(
            category_id=1,
            account_id=1,
            amount=Decimal("10"),
            currency_id=1,
            is_recurring=True,
        )
