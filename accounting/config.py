"""
Configuration module for cl-accounting

Contains the Config dataclass that holds the plugin options, the frozen
ConfigSnapshot taken for each report, and ReportRequest which validates the
parameters of a single accounting-report call.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .categories import CustomCategory, parse_categories
from .errors import ValidationError
from .fiat import (
    DEFAULT_CURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_SLEEP,
    Granularity,
    Price,
    PriceBackend,
    PriceSourceConfig,
    best_granularity,
    granularity_from_label,
    validate_custom_price_points,
)
from .utils import DISALLOW_FUTURE_RANGE, DISALLOW_ZERO_RANGE, validate_time_range

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'fiat_backend': str,
    'granularity': str,
    'fiat_currency': str,
    'disable_fiat': bool,
    'unconfirmed_as_now': bool,
    'http_timeout_seconds': int,
    'price_retries': int,
    'price_retry_sleep': float,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'http_timeout_seconds': (1, 300),
    'price_retries': (1, 10),
    'price_retry_sleep': (0.0, 60.0),
}


def parse_field(key: str, value: Any) -> Any:
    """
    Convert and range check a raw option value.

    Raises:
        ValidationError: if the key is unknown, or the value has the wrong
            type or is out of range
    """
    if key not in CONFIG_FIELD_TYPES:
        raise ValidationError(f"Unknown config key: {key}")

    field_type = CONFIG_FIELD_TYPES[key]
    try:
        if field_type == bool:
            typed_value = value if isinstance(value, bool) else \
                str(value).lower() in ('true', '1', 'yes', 'on')
        elif field_type == int:
            typed_value = int(value)
        elif field_type == float:
            typed_value = float(value)
        else:
            typed_value = str(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"Invalid value for {key} (expected {field_type.__name__}): {e}"
        )

    if key in CONFIG_FIELD_RANGES:
        min_val, max_val = CONFIG_FIELD_RANGES[key]
        if not (min_val <= typed_value <= max_val):
            raise ValidationError(
                f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"
            )

    return typed_value


@dataclass
class Config:
    """
    Configuration container for the accounting plugin.

    All values can be set via plugin options at startup.
    """

    # Price api, one of coincap, coindesk, coingecko, coinbase, custom.
    # Empty uses the default backend (coindesk)
    fiat_backend: str = ''

    # Price granularity label (m1 ... d1), empty picks the best available
    granularity: str = ''

    # Currency reports are valued in
    fiat_currency: str = DEFAULT_CURRENCY

    # Value all entries at zero and skip price lookups
    disable_fiat: bool = False

    # Stamp unconfirmed transactions with the current time instead of
    # dropping them
    unconfirmed_as_now: bool = False

    # Price api queries
    http_timeout_seconds: int = 10
    price_retries: int = DEFAULT_MAX_RETRIES
    price_retry_sleep: float = DEFAULT_RETRY_SLEEP

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Config':
        """Build a config from plugin options, validating every value."""
        return cls(
            fiat_backend=parse_field('fiat_backend', options.get('accounting-fiat-backend', '')),
            granularity=parse_field('granularity', options.get('accounting-granularity', '')),
            fiat_currency=parse_field(
                'fiat_currency', options.get('accounting-fiat-currency', DEFAULT_CURRENCY)
            ).upper(),
            disable_fiat=parse_field('disable_fiat', options.get('accounting-disable-fiat', 'false')),
            unconfirmed_as_now=parse_field(
                'unconfirmed_as_now', options.get('accounting-unconfirmed-as-now', 'false')
            ),
            http_timeout_seconds=parse_field(
                'http_timeout_seconds', options.get('accounting-http-timeout-seconds', 10)
            ),
            price_retries=parse_field(
                'price_retries', options.get('accounting-price-retries', DEFAULT_MAX_RETRIES)
            ),
            price_retry_sleep=parse_field(
                'price_retry_sleep', options.get('accounting-price-retry-sleep', DEFAULT_RETRY_SLEEP)
            ),
        )

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one report.

        A report captures a snapshot when it starts and uses only that
        snapshot until it returns.
        """
        return ConfigSnapshot.from_config(self)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable configuration for the duration of one report."""
    fiat_backend: str
    granularity: str
    fiat_currency: str
    disable_fiat: bool
    unconfirmed_as_now: bool
    http_timeout_seconds: int
    price_retries: int
    price_retry_sleep: float

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        return cls(
            fiat_backend=config.fiat_backend,
            granularity=config.granularity,
            fiat_currency=config.fiat_currency,
            disable_fiat=config.disable_fiat,
            unconfirmed_as_now=config.unconfirmed_as_now,
            http_timeout_seconds=config.http_timeout_seconds,
            price_retries=config.price_retries,
            price_retry_sleep=config.price_retry_sleep,
        )


# =============================================================================
# REQUESTS
# =============================================================================

def parse_price_points(raw: Optional[List[Dict[str, Any]]],
                       currency: str) -> List[Price]:
    """
    Parse custom price points given as
    [{"timestamp": 1588032000, "price": "7750.12", "currency": "USD"}, ...]
    """
    prices = []
    for point in raw or []:
        try:
            prices.append(Price(
                timestamp=int(point["timestamp"]),
                price=Decimal(str(point["price"])),
                currency=str(point.get("currency") or currency).upper(),
            ))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise ValidationError(f"invalid price point {point}: {e}")

    return prices


def price_source_config(cfg: ConfigSnapshot, start: int, end: int,
                        fiat_backend: Optional[str] = None,
                        granularity: Optional[str] = None,
                        currency: Optional[str] = None,
                        custom_prices: Optional[List[Dict[str, Any]]] = None
                        ) -> PriceSourceConfig:
    """
    Build and validate the price source config for a request.

    Request values override the plugin options. When coincap is used
    without a granularity, the best granularity for the range is picked.
    """
    backend = PriceBackend.from_name(fiat_backend or cfg.fiat_backend)
    label = granularity or cfg.granularity
    target_currency = (currency or cfg.fiat_currency).upper()

    chosen: Optional[Granularity] = None
    if label:
        chosen = granularity_from_label(label)
    elif backend == PriceBackend.COINCAP:
        chosen = best_granularity(end - start)

    prices = parse_price_points(custom_prices, target_currency)
    if prices and backend != PriceBackend.CUSTOM:
        raise ValidationError(
            "custom prices can only be used with the custom price backend"
        )

    price_cfg = PriceSourceConfig(
        backend=backend,
        granularity=chosen,
        price_points=prices,
        currency=target_currency,
    )
    price_cfg.validate()

    if backend == PriceBackend.CUSTOM:
        validate_custom_price_points(prices, start)

    return price_cfg


@dataclass
class ReportRequest:
    """
    Validated parameters of an accounting report call.

    Attributes:
        start: Report start, unix seconds, inclusive
        end: Report end, unix seconds, exclusive
        disable_fiat: Value entries at zero
        price_cfg: Price source config, None when fiat is disabled
        categories: Compiled custom categories
        unconfirmed_as_now: Stamp unconfirmed transactions with now
    """
    start: int
    end: int
    disable_fiat: bool = False
    price_cfg: Optional[PriceSourceConfig] = None
    categories: List[CustomCategory] = field(default_factory=list)
    unconfirmed_as_now: bool = False

    @classmethod
    def from_rpc(cls, cfg: ConfigSnapshot, start_time: Any = None,
                 end_time: Any = None, disable_fiat: Optional[bool] = None,
                 granularity: Optional[str] = None,
                 fiat_backend: Optional[str] = None,
                 currency: Optional[str] = None,
                 categories: Optional[List[Dict[str, Any]]] = None,
                 custom_prices: Optional[List[Dict[str, Any]]] = None,
                 now: Optional[int] = None) -> 'ReportRequest':
        """
        Parse and validate RPC parameters.

        end_time defaults to now. The range must be non-empty and must not
        end in the future.

        Raises:
            ValidationError: (a ValueError) for any invalid parameter
        """
        if now is None:
            now = int(time.time())

        if start_time is None:
            raise ValidationError("start_time required")

        try:
            start = int(start_time)
            end = int(end_time) if end_time is not None else now
        except (TypeError, ValueError) as e:
            raise ValidationError(f"invalid time range: {e}")

        validate_time_range(
            start, end, DISALLOW_ZERO_RANGE, DISALLOW_FUTURE_RANGE, now=now
        )

        if disable_fiat is None:
            disable_fiat = cfg.disable_fiat
        else:
            disable_fiat = parse_field('disable_fiat', disable_fiat)

        price_cfg = None
        if not disable_fiat:
            price_cfg = price_source_config(
                cfg, start, end, fiat_backend, granularity, currency,
                custom_prices,
            )

        return cls(
            start=start,
            end=end,
            disable_fiat=disable_fiat,
            price_cfg=price_cfg,
            categories=parse_categories(categories),
            unconfirmed_as_now=cfg.unconfirmed_as_now,
        )
