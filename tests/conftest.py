"""
Pytest fixtures for cl-accounting tests.

Provides mock plugin and RPC fixtures, a fixed price lookup, and in-memory
data sources.
"""

import os
import sys
from decimal import Decimal
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from accounting.fiat import Price
from accounting.records import (
    ClosedChannel,
    ForwardingEvent,
    Invoice,
    OpenChannel,
    Payment,
    PaymentRequest,
    Transaction,
)

OWN_PUBKEY = "02" + "a" * 64
PEER_PUBKEY = "03" + "b" * 64

TEST_PRICE = Decimal("10000")


def make_txid(char: str) -> str:
    return char * 64


class FakeOnChainSource:
    """In-memory on chain source."""

    def __init__(self, transactions: Optional[List[Transaction]] = None,
                 open_channels: Optional[List[OpenChannel]] = None,
                 closed_channels: Optional[List[ClosedChannel]] = None,
                 sweeps: Optional[List[str]] = None, fees: Optional[dict] = None):
        self.transactions = transactions or []
        self.open_channels = open_channels or []
        self.closed_channels = closed_channels or []
        self.sweeps = sweeps or []
        self.fees = fees

    def list_open_channels(self):
        return self.open_channels

    def list_closed_channels(self):
        return self.closed_channels

    def list_transactions(self):
        return self.transactions

    def list_sweeps(self):
        return self.sweeps

    def fee_lookup(self):
        if self.fees is None:
            return None
        return lambda txid: self.fees[txid]


class FakeOffChainSource:
    """In-memory off chain source."""

    def __init__(self, invoices: Optional[List[Invoice]] = None,
                 payments: Optional[List[Payment]] = None,
                 forwards: Optional[List[ForwardingEvent]] = None,
                 payment_requests: Optional[dict] = None,
                 pubkey: str = OWN_PUBKEY):
        self.invoices = invoices or []
        self.payments = payments or []
        self.forwards = forwards or []
        self.payment_requests = payment_requests or {}
        self.pubkey = pubkey
        self.forward_ranges = []

    def own_pubkey(self):
        return self.pubkey

    def list_invoices(self):
        return self.invoices

    def list_payments(self):
        return self.payments

    def list_forwards(self, start, end):
        self.forward_ranges.append((start, end))
        return self.forwards

    def decode_payment_request(self, payment_request):
        return self.payment_requests[payment_request]


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    rpc.getinfo.return_value = {
        "id": OWN_PUBKEY,
        "alias": "test-node",
        "network": "regtest"
    }

    rpc.listpeerchannels.return_value = {"channels": []}
    rpc.listclosedchannels.return_value = {"closedchannels": []}
    rpc.listinvoices.return_value = {"invoices": []}
    rpc.listsendpays.return_value = {"payments": []}
    rpc.listforwards.return_value = {"forwards": []}
    rpc.listtransactions.return_value = {"transactions": []}
    rpc.call.return_value = {"events": []}

    return rpc


@pytest.fixture
def price_lookup():
    """Price lookup returning a fixed price quoted at the requested time."""
    def lookup(timestamp: int) -> Price:
        return Price(timestamp=timestamp, price=TEST_PRICE, currency="USD")
    return lookup


@pytest.fixture
def failing_price_lookup():
    """Price lookup that always fails."""
    def lookup(timestamp: int) -> Price:
        raise RuntimeError("price unavailable")
    return lookup


@pytest.fixture
def sample_payment_request():
    return PaymentRequest(destination=PEER_PUBKEY, description="coffee")
