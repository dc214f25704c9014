import threading
from decimal import Decimal

from sqlalchemy.orm import Session

from database import Base, make_engine
from errors import InvalidOperation, TransactionFailure
from fx_rates import ExchangeRateResolver
from ledger import LedgerTransactionCoordinator
from models import Account, Budget, BudgetType, Currency


def _ledger(session):
    return LedgerTransactionCoordinator(
        session,
        resolver=ExchangeRateResolver(session, intermediate_codes=()),
        allow_overdraft=False,
    )


def _run_concurrently(engine, action, workers=2):
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def worker():
        with Session(engine) as session:
            barrier.wait()
            try:
                action(_ledger(session))
                outcome = "ok"
            except InvalidOperation:
                outcome = "rejected"
            except TransactionFailure:
                outcome = "storage_error"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return sorted(outcomes)


def _seed(engine):
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        usd = Currency(code="USD", symbol="$", name="US Dollar", is_base=True)
        session.add(usd)
        session.flush()
        account = Account(name="Checking", balance=Decimal("200"), currency_id=usd.id)
        session.add(account)
        session.flush()
        budget = Budget(
            name="Trip",
            type=BudgetType.goal,
            target_amount=Decimal("1000"),
            currency_id=usd.id,
            account_id=account.id,
        )
        session.add(budget)
        session.commit()
        return account.id, budget.id


def test_concurrent_budget_withdrawals_never_overdraw(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    account_id, budget_id = _seed(engine)
    with Session(engine) as session:
        _ledger(session).contribute_to_budget(budget_id, Decimal("100"), account_id)

    outcomes = _run_concurrently(
        engine,
        lambda ledger: ledger.withdraw_from_budget(budget_id, Decimal("60"), account_id),
    )

    assert outcomes == ["ok", "rejected"]
    with Session(engine) as session:
        assert session.get(Budget, budget_id).current_amount == Decimal("40")
        assert session.get(Account, account_id).balance == Decimal("160")
    engine.dispose()


def test_concurrent_contributions_never_overdraw_account(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    account_id, budget_id = _seed(engine)

    outcomes = _run_concurrently(
        engine,
        lambda ledger: ledger.contribute_to_budget(budget_id, Decimal("150"), account_id),
    )

    assert outcomes == ["ok", "rejected"]
    with Session(engine) as session:
        assert session.get(Account, account_id).balance == Decimal("50")
        assert session.get(Budget, budget_id).current_amount == Decimal("150")
    engine.dispose()
