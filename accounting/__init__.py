"""
cl-accounting package

This package contains the modules for the accounting plugin:
- records: Raw node records (transactions, channels, invoices, payments)
- filters: Range, settlement and duplicate filtering of records
- entries: Ledger entry types and the factories that create them
- on_chain / off_chain / report: Report assembly
- fiat / price_backends: Historical bitcoin prices
- categories: Custom entry categories
- fees: On chain fee calculation
- cln_source: Core Lightning data sources
- config: Configuration and request validation
- errors: Error types
"""

from .categories import CustomCategory
from .cln_source import ClnOffChainSource, ClnOnChainSource
from .config import Config, ConfigSnapshot, ReportRequest
from .entries import EntryType, LedgerEntry
from .errors import AccountingError, ValidationError
from .fiat import Granularity, Price, PriceBackend, PriceSource, PriceSourceConfig, RetryPolicy
from .report import NodeReporter, Report, node_report

__all__ = [
    'AccountingError',
    'ClnOffChainSource',
    'ClnOnChainSource',
    'Config',
    'ConfigSnapshot',
    'CustomCategory',
    'EntryType',
    'Granularity',
    'LedgerEntry',
    'NodeReporter',
    'Price',
    'PriceBackend',
    'PriceSource',
    'PriceSourceConfig',
    'Report',
    'ReportRequest',
    'RetryPolicy',
    'ValidationError',
    'node_report',
]
