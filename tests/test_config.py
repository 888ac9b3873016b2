"""
Tests for configuration and request validation.

Tests:
- Option parsing and range checks
- Config snapshots
- Price source config selection
- accounting-report parameter validation
"""

from dataclasses import FrozenInstanceError
from decimal import Decimal

import pytest

from accounting.config import (
    Config,
    ReportRequest,
    parse_field,
    parse_price_points,
    price_source_config,
)
from accounting.errors import (
    EndBeforeStartError,
    FutureRangeError,
    GranularityUnsupportedError,
    UnknownPriceBackendError,
    ValidationError,
    ZeroRangeError,
)
from accounting.fiat import (
    DAY,
    GRANULARITY_5_MINUTE,
    GRANULARITY_DAY,
    GRANULARITY_MINUTE,
    PriceBackend,
)

NOW = 1_700_000_000


class TestParseField:
    """Test option value parsing."""

    def test_bool_strings(self):
        """Booleans accept the usual strings."""
        assert parse_field('disable_fiat', 'true') is True
        assert parse_field('disable_fiat', 'false') is False
        assert parse_field('disable_fiat', True) is True

    def test_int(self):
        """Numeric options are converted."""
        assert parse_field('price_retries', '5') == 5

    def test_out_of_range(self):
        """Values outside their range are rejected."""
        with pytest.raises(ValidationError):
            parse_field('price_retries', 0)

    def test_bad_type(self):
        """Values of the wrong type are rejected."""
        with pytest.raises(ValidationError):
            parse_field('http_timeout_seconds', 'soon')

    def test_unknown_key(self):
        """Unknown keys are rejected."""
        with pytest.raises(ValidationError):
            parse_field('nonsense', 1)


class TestConfig:
    """Test the plugin configuration."""

    def test_defaults(self):
        """Missing options take their defaults."""
        config = Config.from_options({})

        assert config.fiat_backend == ''
        assert config.fiat_currency == 'USD'
        assert config.disable_fiat is False
        assert config.price_retries == 3

    def test_from_options(self):
        """Plugin options are parsed into the config."""
        config = Config.from_options({
            'accounting-fiat-backend': 'coincap',
            'accounting-fiat-currency': 'eur',
            'accounting-unconfirmed-as-now': 'true',
            'accounting-price-retry-sleep': '1.5',
        })

        assert config.fiat_backend == 'coincap'
        assert config.fiat_currency == 'EUR'
        assert config.unconfirmed_as_now is True
        assert config.price_retry_sleep == 1.5

    def test_snapshot_immutable(self):
        """Snapshots can not be changed."""
        snapshot = Config().snapshot()

        with pytest.raises(FrozenInstanceError):
            snapshot.disable_fiat = True

    def test_snapshot_isolated(self):
        """Later config changes do not affect a snapshot."""
        config = Config()
        snapshot = config.snapshot()

        config.fiat_currency = 'EUR'

        assert snapshot.fiat_currency == 'USD'


class TestPriceSourceConfig:
    """Test building the price config for a request."""

    def test_default_backend(self):
        """No backend gives the default backend with no granularity."""
        cfg = price_source_config(Config().snapshot(), 0, DAY)

        assert cfg.backend == PriceBackend.UNKNOWN
        assert cfg.granularity is None

    def test_coincap_best_granularity(self):
        """Coincap without a granularity picks the best for the range."""
        snapshot = Config().snapshot()

        assert price_source_config(snapshot, 0, DAY, 'coincap').granularity == GRANULARITY_MINUTE
        assert price_source_config(snapshot, 0, 10 * DAY, 'coincap').granularity == GRANULARITY_5_MINUTE

    def test_request_overrides_option(self):
        """Request values win over plugin options."""
        snapshot = Config(fiat_backend='coincap', granularity='h1').snapshot()

        cfg = price_source_config(snapshot, 0, DAY, 'coindesk', 'd1', 'gbp')

        assert cfg.backend == PriceBackend.COINDESK
        assert cfg.granularity == GRANULARITY_DAY
        assert cfg.currency == 'GBP'

    def test_unknown_backend(self):
        """Unknown backends are rejected."""
        with pytest.raises(UnknownPriceBackendError):
            price_source_config(Config().snapshot(), 0, DAY, 'kraken')

    def test_custom_prices(self):
        """Custom prices are parsed for the custom backend."""
        cfg = price_source_config(
            Config().snapshot(), 100, DAY, 'custom',
            custom_prices=[{"timestamp": 50, "price": "7750.12"}],
        )

        assert cfg.price_points[0].price == Decimal("7750.12")
        assert cfg.price_points[0].currency == 'USD'

    def test_custom_prices_wrong_backend(self):
        """Custom prices require the custom backend."""
        with pytest.raises(ValidationError):
            price_source_config(
                Config().snapshot(), 100, DAY, 'coindesk',
                custom_prices=[{"timestamp": 50, "price": "1"}],
            )

    def test_bad_price_point(self):
        """Malformed price points are rejected."""
        with pytest.raises(ValidationError):
            parse_price_points([{"timestamp": 1}], 'USD')

        with pytest.raises(ValidationError):
            parse_price_points([{"timestamp": 1, "price": "lots"}], 'USD')


class TestReportRequest:
    """Test accounting-report parameter validation."""

    def test_end_defaults_to_now(self):
        """A missing end time is now."""
        request = ReportRequest.from_rpc(
            Config().snapshot(), start_time=NOW - DAY, now=NOW
        )

        assert request.end == NOW
        assert request.price_cfg is not None

    def test_start_required(self):
        """A start time is required."""
        with pytest.raises(ValidationError):
            ReportRequest.from_rpc(Config().snapshot(), now=NOW)

    def test_end_before_start(self):
        """End before start is rejected."""
        with pytest.raises(EndBeforeStartError):
            ReportRequest.from_rpc(
                Config().snapshot(), start_time=NOW - 10, end_time=NOW - 20, now=NOW
            )

    def test_zero_range(self):
        """An empty range is rejected."""
        with pytest.raises(ZeroRangeError):
            ReportRequest.from_rpc(
                Config().snapshot(), start_time=NOW - 10, end_time=NOW - 10, now=NOW
            )

    def test_future_range(self):
        """Ranges ending in the future are rejected."""
        with pytest.raises(FutureRangeError):
            ReportRequest.from_rpc(
                Config().snapshot(), start_time=NOW - 10, end_time=NOW + 10, now=NOW
            )

    def test_disable_fiat_skips_price_config(self):
        """Disabling fiat skips price config validation entirely."""
        snapshot = Config(fiat_backend='coincap').snapshot()

        request = ReportRequest.from_rpc(
            snapshot, start_time=NOW - DAY, disable_fiat='true',
            granularity='w1', now=NOW,
        )

        assert request.disable_fiat is True
        assert request.price_cfg is None

    def test_disable_fiat_from_options(self):
        """The plugin option applies when the request does not say."""
        snapshot = Config(disable_fiat=True, unconfirmed_as_now=True).snapshot()

        request = ReportRequest.from_rpc(snapshot, start_time=NOW - DAY, now=NOW)

        assert request.disable_fiat is True
        assert request.unconfirmed_as_now is True

    def test_categories_parsed(self):
        """Categories are compiled into the request."""
        request = ReportRequest.from_rpc(
            Config().snapshot(), start_time=NOW - DAY, disable_fiat=True,
            categories=[{"name": "a", "label_patterns": ["^a"], "on_chain": True}],
            now=NOW,
        )

        assert [c.name for c in request.categories] == ["a"]

    def test_price_config_errors(self):
        """Price config errors surface as validation errors."""
        snapshot = Config().snapshot()

        with pytest.raises(GranularityUnsupportedError):
            ReportRequest.from_rpc(
                snapshot, start_time=NOW - DAY, fiat_backend='coindesk',
                granularity='h1', now=NOW,
            )
