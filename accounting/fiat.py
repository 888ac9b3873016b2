"""
Price Oracle module for cl-accounting

Provides historical bitcoin prices for valuing ledger entries:
- Price / Granularity value types and best granularity selection
- Point lookup with last-observation-carried-forward semantics
- msat to fiat conversion
- RetryPolicy: bounded, cancellable retries for HTTP price queries
- PriceSource: validated access to one of the price backends, with
  conversion of USD series into the requested currency

Backends themselves live in price_backends.
"""

import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from .errors import (
    GranularityRequiredError,
    GranularityUnexpectedError,
    GranularityUnsupportedError,
    NoPricesError,
    PriceOutOfRangeError,
    PricePointsRequiredError,
    QueryTooLongError,
    RetriesExhaustedError,
    ShuttingDownError,
    UnknownGranularityError,
    UnknownPriceBackendError,
    UnsupportedCurrencyError,
    ValidationError,
)
from .utils import DISALLOW_FUTURE_RANGE, validate_time_range

if TYPE_CHECKING:
    from pyln.client import Plugin

# Maximum number of chunks a single price query may be split into
MAX_QUERIES = 5

# Retry defaults for a single HTTP query
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_SLEEP = 0.5

# Prices are quoted per whole bitcoin: 1 BTC = 1e8 sat = 1e11 msat
MSAT_PER_BTC = Decimal(100_000_000_000)

DEFAULT_CURRENCY = "USD"

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass(frozen=True)
class Price:
    """
    The bitcoin price in a currency at a point in time.

    Attributes:
        timestamp: Unix time the price is quoted at
        price: Fiat price of 1 BTC
        currency: Currency code the price is quoted in
    """
    timestamp: int
    price: Decimal
    currency: str = DEFAULT_CURRENCY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": str(self.price),
            "price_timestamp": self.timestamp,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class Granularity:
    """
    Level of aggregation price information is provided at.

    Attributes:
        aggregation: Bucket width in seconds
        maximum_query: Longest period in seconds one query may cover
        label: Name the price api uses for this granularity
    """
    aggregation: int
    maximum_query: int
    label: str

    def max_split_duration(self) -> int:
        """Longest period we can cover when splitting into MAX_QUERIES."""
        return self.maximum_query * MAX_QUERIES


GRANULARITY_MINUTE = Granularity(MINUTE, DAY, "m1")
GRANULARITY_5_MINUTE = Granularity(5 * MINUTE, 5 * DAY, "m5")
GRANULARITY_15_MINUTE = Granularity(15 * MINUTE, 7 * DAY, "m15")
GRANULARITY_30_MINUTE = Granularity(30 * MINUTE, 14 * DAY, "m30")
GRANULARITY_HOUR = Granularity(HOUR, 30 * DAY, "h1")
GRANULARITY_6_HOUR = Granularity(6 * HOUR, 183 * DAY, "h6")
GRANULARITY_12_HOUR = Granularity(12 * HOUR, 365 * DAY, "h12")
GRANULARITY_DAY = Granularity(DAY, 7305 * DAY, "d1")

# Supported granularities, finest first
ASCENDING_GRANULARITY: List[Granularity] = [
    GRANULARITY_MINUTE,
    GRANULARITY_5_MINUTE,
    GRANULARITY_15_MINUTE,
    GRANULARITY_30_MINUTE,
    GRANULARITY_HOUR,
    GRANULARITY_6_HOUR,
    GRANULARITY_12_HOUR,
    GRANULARITY_DAY,
]


def granularity_from_label(label: str) -> Granularity:
    for granularity in ASCENDING_GRANULARITY:
        if granularity.label == label:
            return granularity
    raise UnknownGranularityError(label)


def best_granularity(duration: int) -> Granularity:
    """
    Get the finest granularity that can cover a period of duration seconds
    within MAX_QUERIES queries.

    Raises:
        QueryTooLongError: if even the coarsest granularity is too fine
    """
    for granularity in ASCENDING_GRANULARITY:
        if granularity.max_split_duration() >= duration:
            return granularity

    raise QueryTooLongError()


def get_price(prices: List[Price], timestamp: int) -> Price:
    """
    Get the price for a timestamp from a series sorted by ascending time.

    Returns the last price quoted at or before the timestamp. We never
    interpolate, a timestamp between two points gets the earlier one.

    Raises:
        NoPricesError: if the series is empty
        PriceOutOfRangeError: if the timestamp precedes the first point
    """
    if not prices:
        raise NoPricesError()

    last_price: Optional[Price] = None
    for price in prices:
        if timestamp < price.timestamp:
            break
        last_price = price

    if last_price is None:
        raise PriceOutOfRangeError(timestamp)

    return last_price


def msat_to_fiat(price: Decimal, amount_msat: int) -> Decimal:
    """Convert a msat amount to fiat given the price of one bitcoin."""
    price_per_msat = price / MSAT_PER_BTC
    return price_per_msat * Decimal(amount_msat)


# =============================================================================
# RETRIES
# =============================================================================

class RetryPolicy:
    """
    Bounded retries for a single price api query.

    A failed query is logged and retried after sleep_seconds. The wait is
    done on the cancel event, so setting it aborts immediately with
    ShuttingDownError. Conversion errors are not retried.
    """

    def __init__(self, plugin: 'Plugin', max_attempts: int = DEFAULT_MAX_RETRIES,
                 sleep_seconds: float = DEFAULT_RETRY_SLEEP):
        self.plugin = plugin
        self.max_attempts = max_attempts
        self.sleep_seconds = sleep_seconds

    def run(self, query: Callable[[], Any], convert: Callable[[Any], List[Price]],
            cancel: Optional[threading.Event] = None) -> List[Price]:
        if cancel is None:
            cancel = threading.Event()

        for attempt in range(self.max_attempts):
            if cancel.is_set():
                raise ShuttingDownError()

            try:
                response = query()
            except Exception as e:
                self.plugin.log(
                    f"http get attempt: {attempt} failed: {e}", level='error'
                )
                if cancel.wait(self.sleep_seconds):
                    raise ShuttingDownError()
                continue

            return convert(response)

        raise RetriesExhaustedError(self.max_attempts)


# =============================================================================
# PRICE SOURCE
# =============================================================================

class PriceBackend(Enum):
    """Which api we use for fiat price data."""
    UNKNOWN = "unknown"
    COINCAP = "coincap"
    COINDESK = "coindesk"
    CUSTOM = "custom"
    COINGECKO = "coingecko"
    COINBASE = "coinbase"

    @classmethod
    def from_name(cls, name: Optional[str]) -> 'PriceBackend':
        if not name:
            return cls.UNKNOWN
        try:
            return cls(name.lower())
        except ValueError:
            raise UnknownPriceBackendError(name)


# Coinbase candles only come in these bucket widths
COINBASE_GRANULARITIES = frozenset({
    GRANULARITY_MINUTE.label,
    GRANULARITY_5_MINUTE.label,
    GRANULARITY_15_MINUTE.label,
    GRANULARITY_HOUR.label,
    GRANULARITY_6_HOUR.label,
    GRANULARITY_DAY.label,
})


@dataclass
class PriceSourceConfig:
    """
    Options used to build a PriceSource.

    Attributes:
        backend: Api used for price data
        granularity: Price granularity, only meaningful for some backends
        price_points: User provided prices for the custom backend
        currency: Currency the report should be valued in
    """
    backend: PriceBackend = PriceBackend.UNKNOWN
    granularity: Optional[Granularity] = None
    price_points: List[Price] = field(default_factory=list)
    currency: str = DEFAULT_CURRENCY

    def validate(self) -> None:
        """Check that the fields are valid for the chosen backend."""
        if self.backend == PriceBackend.UNKNOWN:
            # Callers must pick a backend to choose a granularity
            if self.granularity is not None:
                raise GranularityUnexpectedError()

        elif self.backend == PriceBackend.COINCAP:
            if self.granularity is None:
                raise GranularityRequiredError()

        elif self.backend == PriceBackend.COINDESK:
            if self.granularity is not None and self.granularity != GRANULARITY_DAY:
                raise GranularityUnsupportedError(
                    "coindesk only provides daily price granularity"
                )

        elif self.backend == PriceBackend.COINGECKO:
            if self.granularity is not None:
                raise GranularityUnsupportedError(
                    "coingecko automatically provides hourly price "
                    "granularity for the last 90 days and daily price "
                    "granularity for dates older than that"
                )

        elif self.backend == PriceBackend.COINBASE:
            if (self.granularity is not None and
                    self.granularity.label not in COINBASE_GRANULARITIES):
                raise GranularityUnsupportedError(
                    f"coinbase does not provide {self.granularity.label} candles"
                )

        elif self.backend == PriceBackend.CUSTOM:
            if not self.price_points:
                raise PricePointsRequiredError()


def validate_custom_price_points(prices: List[Price], start: int) -> None:
    """Check that at least one custom price precedes the start time."""
    for price in prices:
        if price.timestamp < start:
            return

    raise ValidationError(
        "expected at least one price point with a timestamp preceding "
        "the given start time"
    )


class PriceSource:
    """
    Validated access to a price backend.

    get_prices returns a series sorted by ascending timestamp, quoted in
    the configured currency. USD series are converted by dividing by the
    USD rate of the target currency.
    """

    def __init__(self, plugin: 'Plugin', cfg: Optional[PriceSourceConfig],
                 retry: Optional[RetryPolicy] = None, session=None,
                 backend=None, rates=None, timeout: Optional[float] = None):
        """
        Args:
            plugin: pyln Plugin used for logging
            cfg: Price source configuration
            retry: Retry policy for HTTP queries
            session: requests.Session shared by HTTP backends
            backend: Pre-built backend, overrides cfg.backend
            rates: Pre-built exchange rate lookup
            timeout: HTTP timeout in seconds
        """
        from .price_backends import DEFAULT_HTTP_TIMEOUT, CoinCapRates, new_backend

        if cfg is None:
            raise ValidationError("a price source config is expected")
        cfg.validate()

        if timeout is None:
            timeout = DEFAULT_HTTP_TIMEOUT

        self.plugin = plugin
        self.cfg = cfg
        self.retry = retry or RetryPolicy(plugin)
        self.impl = backend or new_backend(plugin, cfg, self.retry, session, timeout)
        self.rates = rates or CoinCapRates(plugin, self.retry, session, timeout)

    def get_prices(self, start: int, end: int,
                   cancel: Optional[threading.Event] = None) -> List[Price]:
        validate_time_range(start, end, DISALLOW_FUTURE_RANGE)

        records = self.impl.raw_price_data(start, end, cancel)

        # Do not trust the api to sort for us
        records = sorted(records, key=lambda p: p.timestamp)

        return self._convert_currency(records, cancel)

    def _convert_currency(self, records: List[Price],
                          cancel: Optional[threading.Event]) -> List[Price]:
        target = self.cfg.currency.upper()
        if all(p.currency.upper() == target for p in records):
            return records

        rate: Optional[Decimal] = None
        converted = []
        for record in records:
            if record.currency.upper() == target:
                converted.append(record)
                continue

            if record.currency.upper() != DEFAULT_CURRENCY:
                raise UnsupportedCurrencyError(record.currency)

            if rate is None:
                rate = self.rates.usd_rate(target, cancel)
                self.plugin.log(
                    f"converting USD prices to {target} at rate {rate}",
                    level='debug'
                )

            converted.append(Price(
                timestamp=record.timestamp,
                price=record.price / rate,
                currency=target,
            ))

        return converted


def get_prices(plugin: 'Plugin', timestamps: List[int],
               cfg: PriceSourceConfig,
               cancel: Optional[threading.Event] = None,
               source: Optional[PriceSource] = None) -> Dict[int, Price]:
    """
    Get the price for each of a set of timestamps with a single range query.

    Returns:
        Dict mapping each timestamp to the price used for it
    """
    if not timestamps:
        return {}

    plugin.log(f"getting prices for: {len(timestamps)} requests", level='debug')

    ordered = sorted(timestamps)
    start, end = ordered[0], ordered[-1]

    if source is None:
        source = PriceSource(plugin, cfg)

    price_data = source.get_prices(start, end, cancel)

    return {ts: get_price(price_data, ts) for ts in ordered}
