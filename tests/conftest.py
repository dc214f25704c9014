import os

os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite:///:memory:")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Category, Currency


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@pytest.fixture
def session():
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def currencies(session):
    rows = {
        "USD": Currency(code="USD", symbol="$", name="US Dollar", is_base=True),
        "VES": Currency(code="VES", symbol="Bs", name="Bolivar"),
        "EUR": Currency(code="EUR", symbol="€", name="Euro"),
        "USDT": Currency(code="USDT", symbol="₮", name="Tether"),
    }
    session.add_all(rows.values())
    session.commit()
    return rows


@pytest.fixture
def make_account(session):
    def _make(currency: Currency, balance="0", name=None) -> Account:
        account = Account(
            name=name or f"{currency.code} wallet",
            balance=Decimal(balance),
            currency_id=currency.id,
        )
        session.add(account)
        session.commit()
        return account

    return _make


@pytest.fixture
def category(session):
    groceries = Category(name="Groceries", color="#22aa55")
    session.add(groceries)
    session.commit()
    return groceries
