from decimal import Decimal

import pytest

from errors import InvalidOperation
from fx_rates import ExchangeRateResolver
from ledger import LedgerTransactionCoordinator
from models import Transfer
from schemas import TransferIn


def _ledger(session, allow_overdraft=True):
    return LedgerTransactionCoordinator(
        session,
        resolver=ExchangeRateResolver(session, intermediate_codes=()),
        allow_overdraft=allow_overdraft,
    )


def test_transfer_between_currencies(session, currencies, make_account):
    usd, ves = currencies["USD"], currencies["VES"]
    dollars = make_account(usd, "100")
    bolivars = make_account(ves, "0")
    ledger = _ledger(session)

    transfer = ledger.post_transfer(
        TransferIn(
            from_account_id=dollars.id,
            to_account_id=bolivars.id,
            amount=Decimal("10"),
            currency_id=usd.id,
            exchange_rate=Decimal("40.5"),
        )
    )
    assert dollars.balance == Decimal("90")
    assert bolivars.balance == Decimal("405")

    ledger.delete_transfer(transfer.id)
    assert dollars.balance == Decimal("100")
    assert bolivars.balance == Decimal("0")
    assert session.get(Transfer, transfer.id) is None


def test_transfer_without_rate_moves_the_same_amount(session, currencies, make_account):
    usd = currencies["USD"]
    checking = make_account(usd, "100", name="Checking")
    savings = make_account(usd, "0", name="Savings")

    _ledger(session).post_transfer(
        TransferIn(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount=Decimal("25"),
            currency_id=usd.id,
        )
    )
    assert checking.balance == Decimal("75")
    assert savings.balance == Decimal("25")


def test_update_transfer_reverses_both_legs(session, currencies, make_account):
    usd = currencies["USD"]
    a = make_account(usd, "100", name="A")
    b = make_account(usd, "100", name="B")
    c = make_account(usd, "100", name="C")
    ledger = _ledger(session)

    transfer = ledger.post_transfer(
        TransferIn(from_account_id=a.id, to_account_id=b.id, amount=Decimal("30"), currency_id=usd.id)
    )
    ledger.update_transfer(
        transfer.id,
        TransferIn(from_account_id=c.id, to_account_id=a.id, amount=Decimal("10"), currency_id=usd.id),
    )

    assert a.balance == Decimal("110")
    assert b.balance == Decimal("100")
    assert c.balance == Decimal("90")


def test_same_account_transfer_is_rejected(session, currencies, make_account):
    usd = currencies["USD"]
    account = make_account(usd, "100")

    with pytest.raises(InvalidOperation):
        _ledger(session).post_transfer(
            TransferIn(
                from_account_id=account.id,
                to_account_id=account.id,
                amount=Decimal("5"),
                currency_id=usd.id,
            )
        )
    assert account.balance == Decimal("100")


def test_transfer_source_respects_overdraft_guard(session, currencies, make_account):
    usd = currencies["USD"]
    source = make_account(usd, "10", name="Source")
    target = make_account(usd, "0", name="Target")

    with pytest.raises(InvalidOperation):
        _ledger(session, allow_overdraft=False).post_transfer(
            TransferIn(
                from_account_id=source.id,
                to_account_id=target.id,
                amount=Decimal("11"),
                currency_id=usd.id,
            )
        )
    assert source.balance == Decimal("10")
    assert target.balance == Decimal("0")
