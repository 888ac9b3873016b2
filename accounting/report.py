"""
Node report assembly.

Combines the on chain and off chain entries for a period into a single
report ordered by timestamp, valued with one price series fetched for the
whole period.
"""

import threading
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from .categories import split_categories
from .config import ReportRequest
from .entries import EntryUtils, LedgerEntry, PriceLookup
from .fiat import DEFAULT_CURRENCY, Price, PriceSource, PriceSourceConfig, get_price
from .off_chain import OffChainReporter
from .on_chain import OnChainReporter
from .sources import OffChainSource, OnChainSource

if TYPE_CHECKING:
    from pyln.client import Plugin

Report = List[LedgerEntry]


def get_conversion(plugin: 'Plugin', start: int, end: int, disable_fiat: bool,
                   cfg: Optional[PriceSourceConfig],
                   cancel: Optional[threading.Event] = None,
                   source: Optional[PriceSource] = None) -> PriceLookup:
    """
    Get a price lookup for timestamps in [start, end).

    With fiat disabled the lookup returns a zero price and no api is
    queried. Otherwise the series for the whole range is fetched once, up
    front, so that building entries never blocks on the network.
    """
    if disable_fiat:
        currency = cfg.currency if cfg is not None else DEFAULT_CURRENCY

        def zero_price(timestamp: int) -> Price:
            return Price(timestamp=0, price=Decimal(0), currency=currency)

        return zero_price

    if source is None:
        source = PriceSource(plugin, cfg)

    prices = source.get_prices(start, end, cancel)

    plugin.log(
        f"Retrieved: {len(prices)} price points for [{start}, {end})",
        level='debug'
    )

    def lookup(timestamp: int) -> Price:
        return get_price(prices, timestamp)

    return lookup


def sort_report(entries: List[LedgerEntry]) -> Report:
    """Order entries by timestamp, ties keep their relative order."""
    return sorted(entries, key=lambda e: e.timestamp)


class NodeReporter:
    """
    Builds the full accounting report of a node.

    Either part failing aborts the whole report, there are no partial
    results.
    """

    def __init__(self, plugin: 'Plugin', on_chain: OnChainSource,
                 off_chain: OffChainSource,
                 price_source: Optional[PriceSource] = None):
        self.plugin = plugin
        self.on_chain = on_chain
        self.off_chain = off_chain
        self.price_source = price_source

    def report(self, cfg: ReportRequest,
               cancel: Optional[threading.Event] = None) -> Report:
        price_lookup = get_conversion(
            self.plugin, cfg.start, cfg.end, cfg.disable_fiat, cfg.price_cfg,
            cancel, self.price_source,
        )

        return self.report_with_prices(cfg, price_lookup)

    def report_with_prices(self, cfg: ReportRequest,
                           price_lookup: PriceLookup) -> Report:
        """Build a report with a given price lookup, no price api calls."""
        on_chain_categories, off_chain_categories = split_categories(cfg.categories)

        on_chain_reporter = OnChainReporter(
            self.plugin, self.on_chain, cfg.unconfirmed_as_now
        )
        on_chain_entries = on_chain_reporter.report(
            cfg.start, cfg.end,
            EntryUtils(price_lookup=price_lookup, categories=on_chain_categories),
        )

        off_chain_reporter = OffChainReporter(self.plugin, self.off_chain)
        off_chain_entries = off_chain_reporter.report(
            cfg.start, cfg.end,
            EntryUtils(price_lookup=price_lookup, categories=off_chain_categories),
        )

        self.plugin.log(
            f"Report: {len(on_chain_entries)} on chain entries, "
            f"{len(off_chain_entries)} off chain entries",
            level='info'
        )

        return sort_report(on_chain_entries + off_chain_entries)


def node_report(plugin: 'Plugin', on_chain: OnChainSource,
                off_chain: OffChainSource, cfg: ReportRequest,
                cancel: Optional[threading.Event] = None) -> Report:
    return NodeReporter(plugin, on_chain, off_chain).report(cfg, cancel)
