from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from errors import InvalidOperation, NotFound, RateUnavailable
from models import Currency, ExchangeRate, RateSource, utcnow

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.00000001")
RATE_QUANT = Decimal("0.0000000001")
ONE = Decimal("1")

CRYPTO_CODES = frozenset({"USDT", "BTC", "ETH", "BNB", "SOL"})


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE_QUANT, rounding=ROUND_HALF_UP)


class RateKind(str, Enum):
    identity = "identity"
    direct = "direct"
    inverse = "inverse"
    intermediate = "intermediate"


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal  # units of `to` per 1 unit of `from`
    source: RateSource
    fetched_at: Optional[datetime] = None


@dataclass(frozen=True)
class IntermediateRoute:
    currency_id: int
    currency_code: str
    rate1: Decimal  # source -> intermediate
    rate2: Decimal  # intermediate -> target


@dataclass(frozen=True)
class RateResult:
    rate: Decimal
    kind: RateKind
    source: RateSource
    intermediate_route: Optional[IntermediateRoute] = None

    @property
    def is_inverse(self) -> bool:
        return self.kind == RateKind.inverse


class RateLookup(Protocol):
    def quote(self, from_currency_id: int, to_currency_id: int) -> Optional[RateQuote]:
        ...

    def currencies(self) -> Sequence[tuple[int, str]]:
        ...


class RateStore:
    """Append-only access to stored exchange-rate rows."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, rate_id: int) -> ExchangeRate:
        rate = self.session.get(ExchangeRate, rate_id)
        if not rate:
            raise NotFound("Exchange rate not found")
        return rate

    def latest(
        self, from_currency_id: int, to_currency_id: int
    ) -> Optional[ExchangeRate]:
        stmt = (
            select(ExchangeRate)
            .where(
                ExchangeRate.from_currency_id == from_currency_id,
                ExchangeRate.to_currency_id == to_currency_id,
            )
            .order_by(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def latest_all(self) -> list[ExchangeRate]:
        ranked = select(
            ExchangeRate.id.label("rate_id"),
            func.row_number()
            .over(
                partition_by=(
                    ExchangeRate.from_currency_id,
                    ExchangeRate.to_currency_id,
                ),
                order_by=(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc()),
            )
            .label("position"),
        ).subquery()
        stmt = (
            select(ExchangeRate)
            .join(ranked, ranked.c.rate_id == ExchangeRate.id)
            .where(ranked.c.position == 1)
            .order_by(ExchangeRate.from_currency_id, ExchangeRate.to_currency_id)
        )
        return list(self.session.scalars(stmt).all())

    def history(
        self, from_currency_id: int, to_currency_id: int, limit: int = 30
    ) -> list[ExchangeRate]:
        stmt = (
            select(ExchangeRate)
            .where(
                ExchangeRate.from_currency_id == from_currency_id,
                ExchangeRate.to_currency_id == to_currency_id,
            )
            .order_by(ExchangeRate.fetched_at.desc(), ExchangeRate.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def newest_fetch(self, source: RateSource) -> Optional[datetime]:
        stmt = select(func.max(ExchangeRate.fetched_at)).where(
            ExchangeRate.source == source
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def add(
        self,
        from_currency_id: int,
        to_currency_id: int,
        rate: Decimal,
        source: RateSource = RateSource.manual,
        fetched_at: Optional[datetime] = None,
    ) -> ExchangeRate:
        if from_currency_id == to_currency_id:
            raise InvalidOperation("Source and target currencies must differ")
        rate = quantize_rate(to_decimal(rate))
        if rate <= 0:
            raise InvalidOperation("Exchange rate must be positive")
        row = ExchangeRate(
            from_currency_id=from_currency_id,
            to_currency_id=to_currency_id,
            rate=rate,
            source=source,
            fetched_at=fetched_at or utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def delete(self, rate_id: int) -> None:
        self.session.delete(self.get(rate_id))
        self.session.flush()


class _StoreLookup:
    def __init__(self, store: RateStore) -> None:
        self.store = store

    def quote(self, from_currency_id: int, to_currency_id: int) -> Optional[RateQuote]:
        row = self.store.latest(from_currency_id, to_currency_id)
        if row is None:
            return None
        return RateQuote(rate=row.rate, source=row.source, fetched_at=row.fetched_at)

    def currencies(self) -> Sequence[tuple[int, str]]:
        stmt = select(Currency.id, Currency.code).order_by(Currency.id)
        return [(row.id, row.code) for row in self.store.session.execute(stmt)]


@dataclass
class RateSnapshot:
    """The latest quote for every stored pair, read in two queries."""

    quotes: dict[tuple[int, int], RateQuote] = field(default_factory=dict)
    currency_rows: list[tuple[int, str]] = field(default_factory=list)

    @classmethod
    def load(cls, store: RateStore) -> "RateSnapshot":
        quotes = {
            (row.from_currency_id, row.to_currency_id): RateQuote(
                rate=row.rate, source=row.source, fetched_at=row.fetched_at
            )
            for row in store.latest_all()
        }
        return cls(quotes=quotes, currency_rows=list(_StoreLookup(store).currencies()))

    def quote(self, from_currency_id: int, to_currency_id: int) -> Optional[RateQuote]:
        return self.quotes.get((from_currency_id, to_currency_id))

    def currencies(self) -> Sequence[tuple[int, str]]:
        return self.currency_rows


class ExchangeRateResolver:
    def __init__(
        self,
        session: Session,
        store: Optional[RateStore] = None,
        intermediate_codes: Optional[Iterable[str]] = None,
    ) -> None:
        self.session = session
        self.store = store or RateStore(session)
        if intermediate_codes is None:
            intermediate_codes = get_settings().intermediate_currencies
        self.intermediate_codes = frozenset(code.upper() for code in intermediate_codes)

    def resolve(
        self,
        source_currency_id: int,
        target_currency_id: int,
        intermediate_currency_id: Optional[int] = None,
    ) -> Optional[RateResult]:
        return self._resolve(
            _StoreLookup(self.store),
            source_currency_id,
            target_currency_id,
            intermediate_currency_id,
        )

    def require(
        self,
        source_currency_id: int,
        target_currency_id: int,
        intermediate_currency_id: Optional[int] = None,
    ) -> RateResult:
        result = self.resolve(
            source_currency_id, target_currency_id, intermediate_currency_id
        )
        if result is None:
            raise RateUnavailable(
                f"No exchange rate from currency {source_currency_id} "
                f"to currency {target_currency_id}"
            )
        return result

    def snapshot(self) -> RateSnapshot:
        return RateSnapshot.load(self.store)

    def resolve_pairs(
        self,
        pairs: Iterable[tuple[int, int]],
        intermediate_currency_id: Optional[int] = None,
        snapshot: Optional[RateSnapshot] = None,
    ) -> dict[tuple[int, int], Optional[RateResult]]:
        lookup = snapshot or self.snapshot()
        results: dict[tuple[int, int], Optional[RateResult]] = {}
        for source_id, target_id in pairs:
            if (source_id, target_id) in results:
                continue
            results[(source_id, target_id)] = self._resolve(
                lookup, source_id, target_id, intermediate_currency_id
            )
        return results

    def resolve_many(
        self,
        source_currency_id: int,
        target_currency_ids: Sequence[int],
        intermediate_currency_id: Optional[int] = None,
    ) -> dict[int, Optional[RateResult]]:
        """One slot per target; a target with no route maps to None."""
        resolved = self.resolve_pairs(
            [(source_currency_id, target_id) for target_id in target_currency_ids],
            intermediate_currency_id,
        )
        return {
            target_id: resolved[(source_currency_id, target_id)]
            for target_id in target_currency_ids
        }

    def _resolve(
        self,
        lookup: RateLookup,
        source_id: int,
        target_id: int,
        intermediate_id: Optional[int],
    ) -> Optional[RateResult]:
        if source_id == target_id:
            return RateResult(rate=ONE, kind=RateKind.identity, source=RateSource.official)

        if intermediate_id is not None:
            codes = dict(lookup.currencies())
            if intermediate_id not in codes:
                return None
            return self._via(lookup, source_id, target_id, intermediate_id, codes[intermediate_id])

        leg = self._direct_or_inverse(lookup, source_id, target_id)
        if leg is not None:
            return leg

        for candidate_id, code in lookup.currencies():
            if candidate_id in (source_id, target_id):
                continue
            if self.intermediate_codes and code.upper() not in self.intermediate_codes:
                continue
            routed = self._via(lookup, source_id, target_id, candidate_id, code)
            if routed is not None:
                return routed
        return None

    @staticmethod
    def _direct_or_inverse(
        lookup: RateLookup, source_id: int, target_id: int
    ) -> Optional[RateResult]:
        if source_id == target_id:
            return RateResult(rate=ONE, kind=RateKind.identity, source=RateSource.official)

        direct = lookup.quote(source_id, target_id)
        if direct is not None:
            return RateResult(rate=direct.rate, kind=RateKind.direct, source=direct.source)

        reverse = lookup.quote(target_id, source_id)
        if reverse is not None and reverse.rate != 0:
            return RateResult(
                rate=ONE / reverse.rate, kind=RateKind.inverse, source=reverse.source
            )
        return None

    def _via(
        self,
        lookup: RateLookup,
        source_id: int,
        target_id: int,
        intermediate_id: int,
        intermediate_code: str,
    ) -> Optional[RateResult]:
        first = self._direct_or_inverse(lookup, source_id, intermediate_id)
        if first is None:
            return None
        second = self._direct_or_inverse(lookup, intermediate_id, target_id)
        if second is None:
            return None
        return RateResult(
            rate=first.rate * second.rate,
            kind=RateKind.intermediate,
            source=first.source,
            intermediate_route=IntermediateRoute(
                currency_id=intermediate_id,
                currency_code=intermediate_code,
                rate1=first.rate,
                rate2=second.rate,
            ),
        )


def _row_field(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


@dataclass(frozen=True)
class ConvertedRow:
    item: Any
    amount: Decimal
    currency_id: int
    converted_amount: Decimal
    rate: Optional[Decimal]
    used_custom_rate: bool = False

    @property
    def rate_missing(self) -> bool:
        return self.rate is None


@dataclass(frozen=True)
class ConversionTotal:
    total: Decimal
    included: int
    excluded: int


class ConversionBatchService:
    """Converts heterogeneous rows into one base currency.

    Rows may be mappings or objects exposing ``amount``, ``currency_id`` and
    optionally ``custom_rate``. Every distinct currency pair is resolved once
    against a single snapshot of the latest rates.
    """

    def __init__(self, resolver: ExchangeRateResolver) -> None:
        self.resolver = resolver

    def convert_many_to_base_currency(
        self, rows: Sequence[Any], base_currency_id: int
    ) -> list[ConvertedRow]:
        return self._convert(rows, base_currency_id, honor_custom_rates=False)

    def convert_many_with_custom_rates(
        self, rows: Sequence[Any], base_currency_id: int
    ) -> list[ConvertedRow]:
        return self._convert(rows, base_currency_id, honor_custom_rates=True)

    @staticmethod
    def total(converted: Iterable[ConvertedRow]) -> ConversionTotal:
        total = Decimal("0")
        included = 0
        excluded = 0
        for row in converted:
            if row.rate_missing:
                excluded += 1
                continue
            total += row.converted_amount
            included += 1
        return ConversionTotal(total=total, included=included, excluded=excluded)

    def _convert(
        self, rows: Sequence[Any], base_currency_id: int, *, honor_custom_rates: bool
    ) -> list[ConvertedRow]:
        prepared: list[tuple[Any, Decimal, int, Optional[Decimal]]] = []
        pending: set[tuple[int, int]] = set()
        for row in rows:
            amount = to_decimal(_row_field(row, "amount"))
            currency_id = int(_row_field(row, "currency_id"))
            custom_rate = None
            if honor_custom_rates:
                raw = _row_field(row, "custom_rate")
                if raw is not None and to_decimal(raw) > 0:
                    custom_rate = to_decimal(raw)
            prepared.append((row, amount, currency_id, custom_rate))
            if currency_id != base_currency_id and custom_rate is None:
                pending.add((currency_id, base_currency_id))

        resolved = self.resolver.resolve_pairs(sorted(pending)) if pending else {}

        converted: list[ConvertedRow] = []
        for row, amount, currency_id, custom_rate in prepared:
            if currency_id == base_currency_id:
                converted.append(ConvertedRow(row, amount, currency_id, amount, ONE))
                continue
            if custom_rate is not None:
                converted.append(
                    ConvertedRow(
                        row,
                        amount,
                        currency_id,
                        quantize_money(amount * custom_rate),
                        custom_rate,
                        used_custom_rate=True,
                    )
                )
                continue
            result = resolved.get((currency_id, base_currency_id))
            if result is None:
                converted.append(ConvertedRow(row, amount, currency_id, amount, None))
                continue
            converted.append(
                ConvertedRow(
                    row,
                    amount,
                    currency_id,
                    quantize_money(amount * result.rate),
                    result.rate,
                )
            )

        missing = sum(1 for row in converted if row.rate_missing)
        if missing:
            logger.info(
                f"conversion_batch: rows={len(converted)} base={base_currency_id} "
                f"rate_missing={missing}"
            )
        return converted


@dataclass(frozen=True)
class ProviderRates:
    provider: str
    base: str
    rates: dict[str, Decimal]  # quote units per 1 base
    fetched_at: datetime


def fetch_er_api_rates(base_code: str, *, timeout: float) -> ProviderRates:
    url = f"https://open.er-api.com/v6/latest/{base_code}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(f"Failed to fetch rates from er-api for {base_code}") from exc

    if payload.get("result") != "success":
        raise RuntimeError("FX provider returned an error")
    try:
        rates = {
            str(code).upper(): Decimal(str(value))
            for code, value in payload["rates"].items()
        }
    except Exception as exc:
        raise RuntimeError("Unexpected FX provider response") from exc

    return ProviderRates(
        provider="er-api", base=base_code, rates=rates, fetched_at=fetched_at
    )


@dataclass(frozen=True)
class SyncResult:
    synced: int
    errors: list[str]
    source: RateSource = RateSource.official


class RateSyncService:
    def __init__(
        self,
        session: Session,
        fetcher: Optional[Callable[..., ProviderRates]] = None,
    ) -> None:
        self.session = session
        self.settings = get_settings()
        self.store = RateStore(session)
        self.fetcher = fetcher or fetch_er_api_rates

    def sync_official(self, now: Optional[datetime] = None) -> SyncResult:
        provider = (self.settings.fx_provider or "er-api").lower()
        if provider != "er-api":
            raise InvalidOperation(f"Unsupported FX provider: {provider}")

        now = now or utcnow()
        cooldown = timedelta(hours=self.settings.rate_sync_cooldown_hours)
        last = self.store.newest_fetch(RateSource.official)
        if last is not None and now - last < cooldown:
            return SyncResult(
                synced=0,
                errors=[f"Official rates can be synced again after {last + cooldown}"],
            )

        currencies = self.session.scalars(
            select(Currency)
            .where(Currency.code.not_in(sorted(CRYPTO_CODES)))
            .order_by(Currency.id)
        ).all()
        if not currencies:
            return SyncResult(synced=0, errors=["No fiat currencies registered"])

        base = next((c for c in currencies if c.is_base), currencies[0])
        try:
            quote = self.fetcher(base.code, timeout=self.settings.fx_timeout_secs)
        except RuntimeError as exc:
            logger.warning(f"rate_sync: provider={provider} error={exc}")
            return SyncResult(synced=0, errors=[str(exc)])

        errors: list[str] = []
        synced = 0
        for target in currencies:
            if target.id == base.id:
                continue
            rate = quote.rates.get(target.code.upper())
            if not rate:
                errors.append(f"No rate found for {target.code}")
                continue
            self.store.add(base.id, target.id, rate, RateSource.official, now)
            self.store.add(target.id, base.id, ONE / rate, RateSource.official, now)
            synced += 2

        self.session.commit()
        logger.info(
            f"rate_sync: provider={provider} base={base.code} synced={synced} "
            f"errors={len(errors)}"
        )
        return SyncResult(synced=synced, errors=errors)
