from decimal import Decimal

import pytest

from errors import InvalidOperation, NotFound
from fx_rates import ExchangeRateResolver
from ledger import LedgerTransactionCoordinator
from models import Budget, BudgetStatus, BudgetType
from schemas import BudgetIn
from services import BudgetService


def _ledger(session):
    return LedgerTransactionCoordinator(
        session, resolver=ExchangeRateResolver(session, intermediate_codes=())
    )


def _budget(session, account, target="1000", type_=BudgetType.goal) -> Budget:
    return BudgetService(session).create(
        BudgetIn(
            name="Emergency fund",
            type=type_,
            target_amount=Decimal(target) if target else None,
            currency_id=account.currency_id,
            account_id=account.id,
        )
    )


def test_goal_completes_and_withdrawal_reopens(session, currencies, make_account):
    account = make_account(currencies["USD"], "2000")
    budget = _budget(session, account)
    ledger = _ledger(session)

    ledger.contribute_to_budget(budget.id, Decimal("900"), account.id)
    assert budget.status == BudgetStatus.active

    ledger.contribute_to_budget(budget.id, Decimal("150"), account.id)
    assert budget.current_amount == Decimal("1050")
    assert budget.status == BudgetStatus.completed
    assert account.balance == Decimal("950")

    ledger.withdraw_from_budget(budget.id, Decimal("200"), account.id)
    assert budget.current_amount == Decimal("850")
    assert budget.status == BudgetStatus.active
    assert account.balance == Decimal("1150")


def test_small_withdrawal_still_reopens_a_completed_goal(session, currencies, make_account):
    account = make_account(currencies["USD"], "2000")
    budget = _budget(session, account, target="100")
    ledger = _ledger(session)

    ledger.contribute_to_budget(budget.id, Decimal("500"), account.id)
    assert budget.status == BudgetStatus.completed

    ledger.withdraw_from_budget(budget.id, Decimal("1"), account.id)
    assert budget.current_amount == Decimal("499")
    assert budget.status == BudgetStatus.active


def test_current_amount_tracks_contribution_history(session, currencies, make_account):
    account = make_account(currencies["USD"], "1000")
    budget = _budget(session, account, target=None, type_=BudgetType.envelope)
    ledger = _ledger(session)

    ledger.contribute_to_budget(budget.id, Decimal("300"), account.id)
    ledger.contribute_to_budget(budget.id, Decimal("120.5"), account.id)
    ledger.withdraw_from_budget(budget.id, Decimal("70.25"), account.id)

    history = BudgetService(session).contributions(budget.id)
    assert sum(c.amount for c in history) == budget.current_amount == Decimal("350.25")
    assert sum(1 for c in history if c.is_withdrawal) == 1
    assert budget.status == BudgetStatus.active


def test_contribution_requires_account_funds(session, currencies, make_account):
    account = make_account(currencies["USD"], "50")
    budget = _budget(session, account)

    with pytest.raises(InvalidOperation):
        _ledger(session).contribute_to_budget(budget.id, Decimal("50.01"), account.id)
    assert account.balance == Decimal("50")
    assert budget.current_amount == Decimal("0")
    assert BudgetService(session).contributions(budget.id) == []


def test_withdrawal_requires_budget_funds(session, currencies, make_account):
    account = make_account(currencies["USD"], "500")
    budget = _budget(session, account)
    ledger = _ledger(session)
    ledger.contribute_to_budget(budget.id, Decimal("100"), account.id)

    with pytest.raises(InvalidOperation):
        ledger.withdraw_from_budget(budget.id, Decimal("100.01"), account.id)
    assert budget.current_amount == Decimal("100")
    assert account.balance == Decimal("400")


def test_status_gates(session, currencies, make_account):
    account = make_account(currencies["USD"], "5000")
    budget = _budget(session, account, target="100")
    ledger = _ledger(session)
    service = BudgetService(session)

    ledger.contribute_to_budget(budget.id, Decimal("100"), account.id)
    with pytest.raises(InvalidOperation):
        ledger.contribute_to_budget(budget.id, Decimal("1"), account.id)

    service.cancel(budget.id)
    with pytest.raises(InvalidOperation):
        ledger.withdraw_from_budget(budget.id, Decimal("1"), account.id)
    with pytest.raises(InvalidOperation):
        ledger.contribute_to_budget(budget.id, Decimal("1"), account.id)

    service.reactivate(budget.id)
    ledger.withdraw_from_budget(budget.id, Decimal("100"), account.id)
    assert account.balance == Decimal("5000")


def test_account_currency_must_match(session, currencies, make_account):
    dollars = make_account(currencies["USD"], "500")
    bolivars = make_account(currencies["VES"], "500")
    budget = _budget(session, dollars)

    with pytest.raises(InvalidOperation):
        _ledger(session).contribute_to_budget(budget.id, Decimal("10"), bolivars.id)
    with pytest.raises(InvalidOperation):
        BudgetService(session).create(
            BudgetIn(
                name="Mismatch",
                type=BudgetType.envelope,
                currency_id=currencies["USD"].id,
                account_id=bolivars.id,
            )
        )


def test_budget_without_account_is_rejected(session, currencies):
    with pytest.raises(InvalidOperation):
        BudgetService(session).create(
            BudgetIn(name="Groceries", type=BudgetType.envelope, currency_id=currencies["USD"].id)
        )


def test_reverse_contribution_and_withdrawal(session, currencies, make_account):
    account = make_account(currencies["USD"], "1000")
    budget = _budget(session, account, target="500")
    ledger = _ledger(session)
    service = BudgetService(session)

    ledger.contribute_to_budget(budget.id, Decimal("500"), account.id)
    ledger.withdraw_from_budget(budget.id, Decimal("200"), account.id)
    withdrawal, contribution = service.contributions(budget.id)
    assert withdrawal.is_withdrawal

    ledger.reverse_contribution(withdrawal.id)
    assert budget.current_amount == Decimal("500")
    assert budget.status == BudgetStatus.completed
    assert account.balance == Decimal("500")

    ledger.reverse_contribution(contribution.id)
    assert budget.current_amount == Decimal("0")
    assert budget.status == BudgetStatus.active
    assert account.balance == Decimal("1000")
    assert service.contributions(budget.id) == []


def test_reversing_a_withdrawal_needs_funds(session, currencies, make_account):
    account = make_account(currencies["USD"], "100")
    budget = _budget(session, account, target="500")
    ledger = _ledger(session)
    service = BudgetService(session)

    ledger.contribute_to_budget(budget.id, Decimal("100"), account.id)
    ledger.withdraw_from_budget(budget.id, Decimal("100"), account.id)
    withdrawal, _ = service.contributions(budget.id)
    account.balance = Decimal("0")
    session.commit()

    with pytest.raises(InvalidOperation):
        ledger.reverse_contribution(withdrawal.id)
    assert account.balance == Decimal("0")
    assert budget.current_amount == Decimal("0")
    assert len(service.contributions(budget.id)) == 2


def test_delete_refused_while_funded(session, currencies, make_account):
    account = make_account(currencies["USD"], "100")
    budget = _budget(session, account)
    ledger = _ledger(session)
    service = BudgetService(session)

    ledger.contribute_to_budget(budget.id, Decimal("40"), account.id)
    with pytest.raises(InvalidOperation):
        service.delete(budget.id)

    ledger.withdraw_from_budget(budget.id, Decimal("40"), account.id)
    service.delete(budget.id)
    with pytest.raises(NotFound):
        service.get(budget.id)


def test_update_lowering_target_completes_goal(session, currencies, make_account):
    account = make_account(currencies["USD"], "100")
    budget = _budget(session, account)
    _ledger(session).contribute_to_budget(budget.id, Decimal("60"), account.id)

    updated = BudgetService(session).update(
        budget.id,
        BudgetIn(
            name="Smaller goal",
            type=BudgetType.goal,
            target_amount=Decimal("50"),
            currency_id=account.currency_id,
            account_id=account.id,
        ),
    )
    assert updated.name == "Smaller goal"
    assert updated.status == BudgetStatus.completed
