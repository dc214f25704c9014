from datetime import datetime, timedelta
from decimal import Decimal

from fx_rates import ExchangeRateResolver, ProviderRates, RateStore, RateSyncService
from models import RateSource


def _fake_fetcher(rates, calls=None):
    def fetch(base_code, *, timeout):
        if calls is not None:
            calls.append(base_code)
        return ProviderRates(
            provider="er-api",
            base=base_code,
            rates={code: Decimal(value) for code, value in rates.items()},
            fetched_at=datetime(2025, 6, 1, 12),
        )

    return fetch


def test_sync_writes_both_directions_for_fiat(session, currencies):
    calls = []
    service = RateSyncService(session, fetcher=_fake_fetcher({"VES": "40", "EUR": "0.8"}, calls))

    result = service.sync_official(now=datetime(2025, 6, 1, 12))

    assert calls == ["USD"]
    assert result.synced == 4
    assert result.errors == []
    usd, ves, eur, usdt = (currencies[c] for c in ("USD", "VES", "EUR", "USDT"))
    store = RateStore(session)
    assert store.latest(usd.id, ves.id).rate == Decimal("40")
    assert store.latest(ves.id, usd.id).rate == Decimal("0.025")
    assert store.latest(eur.id, usd.id).rate == Decimal("1.25")
    assert store.latest(usd.id, ves.id).source == RateSource.official
    # Crypto is never priced by the fiat provider.
    assert store.latest(usd.id, usdt.id) is None

    resolved = ExchangeRateResolver(session, intermediate_codes=("USD",)).resolve(
        eur.id, ves.id
    )
    assert resolved.rate == Decimal("1.25") * Decimal("40")


def test_sync_reports_codes_missing_from_provider(session, currencies):
    service = RateSyncService(session, fetcher=_fake_fetcher({"VES": "40"}))

    result = service.sync_official(now=datetime(2025, 6, 1, 12))

    assert result.synced == 2
    assert result.errors == ["No rate found for EUR"]


def test_sync_honours_cooldown(session, currencies):
    calls = []
    service = RateSyncService(session, fetcher=_fake_fetcher({"VES": "40", "EUR": "0.8"}, calls))
    first = datetime(2025, 6, 1, 12)
    service.sync_official(now=first)

    blocked = service.sync_official(now=first + timedelta(hours=1))
    assert blocked.synced == 0
    assert blocked.errors
    assert calls == ["USD"]

    later = service.sync_official(now=first + timedelta(hours=7))
    assert later.synced == 4
    assert calls == ["USD", "USD"]


def test_provider_failure_is_reported_not_raised(session, currencies):
    def failing(base_code, *, timeout):
        raise RuntimeError("Failed to fetch rates from er-api for USD")

    result = RateSyncService(session, fetcher=failing).sync_official()

    assert result.synced == 0
    assert result.errors == ["Failed to fetch rates from er-api for USD"]
    assert RateStore(session).latest_all() == []
