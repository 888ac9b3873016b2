"""
Collaborator interfaces for the report engine.

Anything that satisfies these protocols can feed a report: the Core
Lightning adapter in cln_source, or in-memory fakes in tests.
"""

from typing import List, Optional, Protocol

from .entries import FeeLookup
from .records import (
    ClosedChannel,
    ForwardingEvent,
    Invoice,
    OpenChannel,
    Payment,
    PaymentRequest,
    Transaction,
)


class OnChainSource(Protocol):
    """On chain records of our node."""

    def list_open_channels(self) -> List[OpenChannel]:
        ...

    def list_closed_channels(self) -> List[ClosedChannel]:
        ...

    def list_transactions(self) -> List[Transaction]:
        ...

    def list_sweeps(self) -> List[str]:
        """Txids of transactions that swept timelocked outputs to our wallet."""
        ...

    def fee_lookup(self) -> Optional[FeeLookup]:
        """Get a txid -> fee in sats lookup, None if the source has none."""
        ...


class OffChainSource(Protocol):
    """Off chain records of our node."""

    def own_pubkey(self) -> str:
        ...

    def list_invoices(self) -> List[Invoice]:
        ...

    def list_payments(self) -> List[Payment]:
        ...

    def list_forwards(self, start: int, end: int) -> List[ForwardingEvent]:
        """Forwards settled in [start, end)."""
        ...

    def decode_payment_request(self, payment_request: str) -> PaymentRequest:
        ...
