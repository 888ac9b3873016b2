"""
Price backends for cl-accounting

Each backend turns a [start, end) range into a list of Price records:
- CoinCapAPI: granular history, split into chunks per granularity limits
- CoinDeskAPI: daily closing prices
- CoinGeckoAPI: hourly for the last 90 days, daily before that
- CoinbaseAPI: exchange candles, paged 300 buckets at a time
- CustomPrices: user supplied price points, no network access

HTTP queries run through a RetryPolicy and a shared requests.Session.
Query and convert functions are attributes so that they can be swapped
out in tests.
"""

import json
import math
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import requests

from .errors import PeriodTooLongError, UnknownGranularityError, UnsupportedCurrencyError
from .fiat import (
    ASCENDING_GRANULARITY,
    DAY,
    DEFAULT_CURRENCY,
    GRANULARITY_HOUR,
    MAX_QUERIES,
    Granularity,
    Price,
    PriceBackend,
    PriceSourceConfig,
    RetryPolicy,
)

if TYPE_CHECKING:
    from pyln.client import Plugin

COINCAP_HISTORY_API = "https://api.coincap.io/v2/assets/bitcoin/history"
COINCAP_RATES_API = "https://api.coincap.io/v2/rates"
COINDESK_HISTORY_API = "https://api.coindesk.com/v1/bpi/historical/close.json"
COINGECKO_HISTORY_API = "https://api.coingecko.com/api/v3/coins/bitcoin/market_chart"
COINBASE_HISTORY_API = "https://api.exchange.coinbase.com/products/{product}/candles"

COINDESK_TIME_FORMAT = "%Y-%m-%d"

# Coinbase returns at most this many buckets per request
COINBASE_CANDLE_CAP = 300
COINBASE_DEFAULT_PAIR = "BTC-USD"

# CoinGecko serves hourly data for this many days back, daily before that
COINGECKO_HOURLY_DAYS = 89

DEFAULT_HTTP_TIMEOUT = 10


def _http_get(session: requests.Session, url: str, params: Dict[str, Any],
              timeout: float) -> bytes:
    response = session.get(url, params=params, timeout=timeout)
    response.raise_for_status()
    return response.content


def _loads(data: Any) -> Any:
    return json.loads(data, parse_float=Decimal)


# =============================================================================
# COINCAP
# =============================================================================

def parse_coincap_data(data: Any) -> List[Price]:
    """
    Parse coincap history. Timestamps are in milliseconds and prices are
    decimal strings:
        {"data": [{"priceUsd": "6379.35", "time": 1588032000000}, ...]}
    """
    entries = _loads(data).get("data") or []

    return [
        Price(
            timestamp=int(entry["time"]) // 1000,
            price=Decimal(str(entry["priceUsd"])),
            currency=DEFAULT_CURRENCY,
        )
        for entry in entries
    ]


class CoinCapAPI:
    """
    Historical prices from coincap.

    The finer the granularity, the shorter the period coincap lets us query
    at once, so longer ranges are split into up to MAX_QUERIES windows.
    """

    def __init__(self, plugin: 'Plugin', granularity: Granularity,
                 retry: RetryPolicy, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.plugin = plugin
        self.granularity = granularity
        self.retry = retry
        self.session = session or requests.Session()
        self.timeout = timeout
        self.query: Callable[[int, int, Granularity], Any] = self._query
        self.convert: Callable[[Any], List[Price]] = parse_coincap_data

    def _query(self, start: int, end: int, granularity: Granularity) -> bytes:
        # The coincap api requires milliseconds
        params = {
            "interval": granularity.label,
            "start": start * 1000,
            "end": end * 1000,
        }
        self.plugin.log(f"coincap url: {COINCAP_HISTORY_API} {params}", level='debug')
        return _http_get(self.session, COINCAP_HISTORY_API, params, self.timeout)

    def raw_price_data(self, start: int, end: int,
                       cancel: Optional[threading.Event] = None) -> List[Price]:
        granularity = self.granularity
        if granularity not in ASCENDING_GRANULARITY:
            raise UnknownGranularityError(granularity.label)

        # Limit on the caller's period, the backwards shift below may add
        # one extra window
        duration = max(end - start, granularity.aggregation)
        if math.ceil(duration / granularity.maximum_query) > MAX_QUERIES:
            raise PeriodTooLongError(granularity.label)

        # Shift back one bucket so that the first price precedes start,
        # lookups never extrapolate forward
        query_start = start - granularity.aggregation

        records: List[Price] = []
        while query_start < end:
            query_end = min(query_start + granularity.maximum_query, end)

            records.extend(self.retry.run(
                lambda s=query_start, e=query_end: self.query(s, e, granularity),
                self.convert, cancel,
            ))

            query_start = query_end

        return sorted(records, key=lambda p: p.timestamp)


class CoinCapRates:
    """USD exchange rates for fiat currencies from coincap."""

    def __init__(self, plugin: 'Plugin', retry: RetryPolicy,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.plugin = plugin
        self.retry = retry
        self.session = session or requests.Session()
        self.timeout = timeout
        self.query: Callable[[], Any] = self._query

    def _query(self) -> bytes:
        return _http_get(self.session, COINCAP_RATES_API, {}, self.timeout)

    @staticmethod
    def parse_rates(data: Any) -> Dict[str, Decimal]:
        """
        Parse the rates listing into currency symbol -> USD rate:
            {"data": [{"symbol": "EUR", "rateUsd": "1.08", ...}, ...]}
        """
        rates = {}
        for entry in _loads(data).get("data") or []:
            symbol = entry.get("symbol")
            rate = entry.get("rateUsd")
            if symbol and rate:
                rates[symbol.upper()] = Decimal(str(rate))
        return rates

    def usd_rate(self, currency: str,
                 cancel: Optional[threading.Event] = None) -> Decimal:
        """Get the USD value of one unit of currency."""
        rates = self.retry.run(self.query, self.parse_rates, cancel)
        rate = rates.get(currency.upper())
        if not rate:
            raise UnsupportedCurrencyError(currency)
        return rate


# =============================================================================
# COINDESK
# =============================================================================

def parse_coindesk_data(data: Any) -> List[Price]:
    """Parse coindesk's {"bpi": {"2020-04-28": 7754.5, ...}} response."""
    entries = _loads(data).get("bpi") or {}

    records = []
    for date, price in entries.items():
        day = datetime.strptime(date, COINDESK_TIME_FORMAT).replace(tzinfo=timezone.utc)
        records.append(Price(
            timestamp=int(day.timestamp()),
            price=Decimal(str(price)),
            currency=DEFAULT_CURRENCY,
        ))

    return records


class CoinDeskAPI:
    """Daily closing prices from coindesk."""

    def __init__(self, plugin: 'Plugin', retry: RetryPolicy,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.plugin = plugin
        self.retry = retry
        self.session = session or requests.Session()
        self.timeout = timeout
        self.query: Callable[[int, int], Any] = self._query

    def _query(self, start: int, end: int) -> bytes:
        params = {
            "start": _utc_date(start),
            "end": _utc_date(end),
        }
        self.plugin.log(f"coindesk url: {COINDESK_HISTORY_API} {params}", level='debug')
        return _http_get(self.session, COINDESK_HISTORY_API, params, self.timeout)

    def raw_price_data(self, start: int, end: int,
                       cancel: Optional[threading.Event] = None) -> List[Price]:
        # Coindesk does not include the current day, step back one day so
        # that at least one price is always returned
        start -= DAY

        return self.retry.run(
            lambda: self.query(start, end), parse_coindesk_data, cancel
        )


def _utc_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime(COINDESK_TIME_FORMAT)


# =============================================================================
# COINGECKO
# =============================================================================

def parse_coingecko_data(data: Any) -> List[Price]:
    """Parse coingecko's {"prices": [[ms_timestamp, price], ...]} response."""
    entries = _loads(data).get("prices") or []

    records = []
    for entry in entries:
        if len(entry) != 2:
            raise ValueError(
                f"expected price and timestamp got: {len(entry)} entries"
            )
        records.append(Price(
            timestamp=int(entry[0]) // 1000,
            price=Decimal(str(entry[1])),
            currency=DEFAULT_CURRENCY,
        ))

    return records


class CoinGeckoAPI:
    """
    Prices from coingecko.

    The api takes a lag in days relative to now rather than a range, and
    serves hourly data for the last 90 days and daily data before that. A
    range straddling that breakpoint is queried in two parts.
    """

    def __init__(self, plugin: 'Plugin', retry: RetryPolicy,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        self.plugin = plugin
        self.retry = retry
        self.session = session or requests.Session()
        self.timeout = timeout
        self.clock = clock
        self.query: Callable[[int], Any] = self._query

    def _query(self, lag_days: int) -> bytes:
        params = {"vs_currency": "usd", "days": lag_days}
        self.plugin.log(f"coingecko url: {COINGECKO_HISTORY_API} {params}", level='debug')
        return _http_get(self.session, COINGECKO_HISTORY_API, params, self.timeout)

    @staticmethod
    def api_ranges(now: int, start: int, end: int) -> List[tuple]:
        """Split [start, end) at the hourly/daily breakpoint."""
        breakpoint_ts = now - COINGECKO_HOURLY_DAYS * DAY

        ranges = []
        if start < breakpoint_ts:
            ranges.append((start, min(end, breakpoint_ts)))

        if end > breakpoint_ts:
            ranges.append((max(start, breakpoint_ts), end))

        return ranges

    def _query_range(self, now: int, start: int, end: int,
                     cancel: Optional[threading.Event]) -> List[Price]:
        # One extra day of lag so that we get a price before start
        lag = (now - start) // DAY + 1

        records = self.retry.run(
            lambda: self.query(lag), parse_coingecko_data, cancel
        )

        # Queries run up to now, drop everything past our end
        return [r for r in records if r.timestamp <= end]

    def raw_price_data(self, start: int, end: int,
                       cancel: Optional[threading.Event] = None) -> List[Price]:
        now = int(self.clock())

        records: List[Price] = []
        for range_start, range_end in self.api_ranges(now, start, end):
            records.extend(self._query_range(now, range_start, range_end, cancel))

        return records


# =============================================================================
# COINBASE
# =============================================================================

def parse_coinbase_data(data: Any) -> List[Price]:
    """
    Parse coinbase candles, newest first:
        [[time, low, high, open, close, volume], ...]

    Buckets without trades are missing, short rows are skipped.
    """
    records = []
    for candle in _loads(data) or []:
        if len(candle) < 5:
            continue
        records.append(Price(
            timestamp=int(candle[0]),
            price=Decimal(str(candle[4])),
            currency=DEFAULT_CURRENCY,
        ))
    return records


class CoinbaseAPI:
    """Exchange candles from coinbase, paged COINBASE_CANDLE_CAP at a time."""

    def __init__(self, plugin: 'Plugin', granularity: Granularity,
                 retry: RetryPolicy, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 product: str = COINBASE_DEFAULT_PAIR):
        self.plugin = plugin
        self.granularity = granularity
        self.retry = retry
        self.session = session or requests.Session()
        self.timeout = timeout
        self.product = product
        self.query: Callable[[int, int], Any] = self._query

    def _query(self, start: int, end: int) -> bytes:
        url = COINBASE_HISTORY_API.format(product=self.product)
        params = {
            "start": datetime.fromtimestamp(start, tz=timezone.utc).isoformat(),
            "end": datetime.fromtimestamp(end, tz=timezone.utc).isoformat(),
            "granularity": self.granularity.aggregation,
        }
        self.plugin.log(f"coinbase url: {url} {params}", level='debug')
        return _http_get(self.session, url, params, self.timeout)

    def raw_price_data(self, start: int, end: int,
                       cancel: Optional[threading.Event] = None) -> List[Price]:
        aggregation = self.granularity.aggregation
        chunk = aggregation * COINBASE_CANDLE_CAP

        # Align to a bucket boundary so the first candle precedes start
        query_start = start - (start % aggregation)

        records: List[Price] = []
        while query_start < end:
            query_end = min(query_start + chunk, end)

            records.extend(self.retry.run(
                lambda s=query_start, e=query_end: self.query(s, e),
                parse_coinbase_data, cancel,
            ))

            query_start = query_end

        return records


# =============================================================================
# CUSTOM
# =============================================================================

class CustomPrices:
    """User provided price points, returned as is."""

    def __init__(self, entries: List[Price]):
        self.entries = list(entries)

    def raw_price_data(self, start: int, end: int,
                       cancel: Optional[threading.Event] = None) -> List[Price]:
        return list(self.entries)


def new_backend(plugin: 'Plugin', cfg: PriceSourceConfig, retry: RetryPolicy,
                session: Optional[requests.Session] = None,
                timeout: float = DEFAULT_HTTP_TIMEOUT):
    """Build the backend for a validated config."""
    if cfg.backend == PriceBackend.COINCAP:
        return CoinCapAPI(plugin, cfg.granularity, retry, session, timeout)

    if cfg.backend in (PriceBackend.UNKNOWN, PriceBackend.COINDESK):
        return CoinDeskAPI(plugin, retry, session, timeout)

    if cfg.backend == PriceBackend.COINGECKO:
        return CoinGeckoAPI(plugin, retry, session, timeout)

    if cfg.backend == PriceBackend.COINBASE:
        return CoinbaseAPI(
            plugin, cfg.granularity or GRANULARITY_HOUR, retry, session, timeout
        )

    if cfg.backend == PriceBackend.CUSTOM:
        return CustomPrices(cfg.price_points)

    # Unreachable for a validated config
    raise ValueError(f"unknown price backend: {cfg.backend}")
