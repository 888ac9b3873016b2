#!/usr/bin/env python3
"""
cl-accounting: A Node Accounting Plugin for Core Lightning

This plugin produces an accounting report of all balance-affecting activity
of the node over a period: channel opens and closes, on chain sends,
receives and sweeps, invoices, payments (including circular rebalances) and
forwards. Every entry is valued in fiat using historical bitcoin prices.

Dependencies:
- pyln-client: Core Lightning plugin framework
- requests: Historical price api queries
- bookkeeper plugin (built-in): On chain history and fees

Author: Lightning Goats Team
License: MIT
"""

import signal
import threading
from typing import Any, Dict, List, Optional

from pyln.client import Plugin, RpcError

from accounting.cln_source import BookkeeperEvents, ClnOffChainSource, ClnOnChainSource
from accounting.config import Config, ReportRequest, price_source_config
from accounting.errors import AccountingError
from accounting.fiat import PriceSource, RetryPolicy, get_prices, msat_to_fiat
from accounting.report import NodeReporter


plugin = Plugin()

config: Optional[Config] = None

# =============================================================================
# SHUTDOWN SIGNAL
# =============================================================================
# Set on SIGTERM so that a report waiting between price api retries fails
# immediately instead of holding up `lightning-cli plugin stop`.

shutdown_event = threading.Event()


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='accounting-fiat-backend',
    default='',
    description='Price api: coincap, coindesk, coingecko, coinbase or custom (default: coindesk)'
)

plugin.add_option(
    name='accounting-granularity',
    default='',
    description='Price granularity m1, m5, m15, m30, h1, h6, h12 or d1 (default: best available)'
)

plugin.add_option(
    name='accounting-fiat-currency',
    default='USD',
    description='Currency reports are valued in (default: USD)'
)

plugin.add_option(
    name='accounting-disable-fiat',
    default='false',
    description='Skip price lookups and value entries at zero (default: false)'
)

plugin.add_option(
    name='accounting-unconfirmed-as-now',
    default='false',
    description='Include unconfirmed transactions stamped with the current time (default: false)'
)

plugin.add_option(
    name='accounting-http-timeout-seconds',
    default='10',
    description='Timeout for a single price api request (default: 10)'
)

plugin.add_option(
    name='accounting-price-retries',
    default='3',
    description='Attempts per price api request (default: 3)'
)

plugin.add_option(
    name='accounting-price-retry-sleep',
    default='0.5',
    description='Seconds to wait between price api attempts (default: 0.5)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the accounting plugin.

    Parses and validates options, and installs the shutdown handler.
    """
    global config

    plugin.log("Initializing cl-accounting plugin...")

    config = Config.from_options(options)

    plugin.log(f"Configuration loaded: fiat_backend={config.fiat_backend or 'default'}, "
               f"granularity={config.granularity or 'best'}, "
               f"currency={config.fiat_currency}, disable_fiat={config.disable_fiat}")

    def handle_shutdown_signal(signum, frame):
        """Abort in-flight price queries when lightningd stops the plugin."""
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    plugin.log("cl-accounting plugin initialized successfully!")


def _price_source(plugin: Plugin, price_cfg) -> PriceSource:
    cfg = config.snapshot()
    retry = RetryPolicy(plugin, cfg.price_retries, cfg.price_retry_sleep)
    return PriceSource(plugin, price_cfg, retry=retry, timeout=cfg.http_timeout_seconds)


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("accounting-report")
def accounting_report(plugin: Plugin,
                      start_time: int,
                      end_time: Optional[int] = None,
                      disable_fiat: Optional[bool] = None,
                      granularity: Optional[str] = None,
                      fiat_backend: Optional[str] = None,
                      currency: Optional[str] = None,
                      categories: Optional[List[Dict[str, Any]]] = None,
                      custom_prices: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Get the accounting report for [start_time, end_time).

    Usage: lightning-cli accounting-report start_time [end_time] [disable_fiat]
           [granularity] [fiat_backend] [currency] [categories] [custom_prices]

    categories: [{"name": "swaps", "label_patterns": ["^swap"],
                  "on_chain": true, "off_chain": false}, ...]
    custom_prices: [{"timestamp": 1588032000, "price": "7750.12"}, ...]
    """
    if config is None:
        return {"error": "Plugin not fully initialized"}

    try:
        request = ReportRequest.from_rpc(
            config.snapshot(), start_time=start_time, end_time=end_time,
            disable_fiat=disable_fiat, granularity=granularity,
            fiat_backend=fiat_backend, currency=currency,
            categories=categories, custom_prices=custom_prices,
        )
    except ValueError as e:
        return {"error": str(e)}

    bookkeeper = BookkeeperEvents(plugin)
    price_source = None
    if not request.disable_fiat:
        price_source = _price_source(plugin, request.price_cfg)

    reporter = NodeReporter(
        plugin,
        ClnOnChainSource(plugin, bookkeeper),
        ClnOffChainSource(plugin),
        price_source=price_source,
    )

    try:
        report = reporter.report(request, cancel=shutdown_event)
    except (AccountingError, ValueError, RpcError) as e:
        plugin.log(f"Accounting report failed: {e}", level='error')
        return {"error": str(e)}

    return {
        "start_time": request.start,
        "end_time": request.end,
        "count": len(report),
        "entries": [entry.to_dict() for entry in report],
    }


@plugin.method("accounting-exchangerate")
def accounting_exchangerate(plugin: Plugin,
                            timestamps: List[int],
                            granularity: Optional[str] = None,
                            fiat_backend: Optional[str] = None,
                            currency: Optional[str] = None,
                            custom_prices: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Get the bitcoin price at each of a set of timestamps.

    Usage: lightning-cli accounting-exchangerate '[1588032000, 1588118400]'
    """
    if config is None:
        return {"error": "Plugin not fully initialized"}

    try:
        ordered = sorted(int(ts) for ts in timestamps or [])
        if not ordered:
            return {"error": "at least one timestamp required"}

        price_cfg = price_source_config(
            config.snapshot(), ordered[0], ordered[-1], fiat_backend,
            granularity, currency, custom_prices,
        )

        prices = get_prices(
            plugin, ordered, price_cfg, cancel=shutdown_event,
            source=_price_source(plugin, price_cfg),
        )
    except (AccountingError, ValueError, TypeError) as e:
        return {"error": str(e)}

    return {
        "rates": [
            {"timestamp": ts, **price.to_dict()}
            for ts, price in prices.items()
        ]
    }


@plugin.method("accounting-fiat-estimate")
def accounting_fiat_estimate(plugin: Plugin,
                             amount_msat: int,
                             timestamp: int,
                             granularity: Optional[str] = None,
                             fiat_backend: Optional[str] = None,
                             currency: Optional[str] = None) -> Dict[str, Any]:
    """
    Get the fiat value of an amount at a point in time.

    Usage: lightning-cli accounting-fiat-estimate amount_msat timestamp
    """
    if config is None:
        return {"error": "Plugin not fully initialized"}

    try:
        amount_msat = int(amount_msat)
        timestamp = int(timestamp)
        if amount_msat < 0:
            return {"error": "amount_msat must be non-negative"}

        price_cfg = price_source_config(
            config.snapshot(), timestamp, timestamp, fiat_backend,
            granularity, currency,
        )

        prices = get_prices(
            plugin, [timestamp], price_cfg, cancel=shutdown_event,
            source=_price_source(plugin, price_cfg),
        )
    except (AccountingError, ValueError, TypeError) as e:
        return {"error": str(e)}

    price = prices[timestamp]

    return {
        "amount_msat": amount_msat,
        "fiat_value": str(msat_to_fiat(price.price, amount_msat)),
        **price.to_dict(),
    }


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
