"""
On chain report assembly.

Wallet transactions are matched against our channels to tell channel opens
and closes apart from sweeps and ordinary sends and receives:

    open channel (funding txid)
      -> closed channel reconstructed open (funding txid)
      -> channel close (closing txid)
      -> sweep or generic transaction

A single transaction funding several of our channels can not have its fee
attributed, such transactions abort the report.
"""

from dataclasses import replace
from typing import Dict, Generic, List, Set, TYPE_CHECKING, TypeVar

from .entries import (
    EntryUtils,
    LedgerEntry,
    channel_open_entries,
    closed_channel_entries,
    on_chain_entries,
    open_channel_from_close_summary,
    sweep_entries,
)
from .errors import BatchedTransactionError
from .filters import filter_on_chain
from .records import ClosedChannel, OpenChannel, Transaction
from .sources import OnChainSource

if TYPE_CHECKING:
    from pyln.client import Plugin

T = TypeVar("T")


class TxidMap(Generic[T]):
    """
    Channels keyed by a transaction id.

    Keys that more than one channel maps to are remembered as batched
    rather than overwritten.
    """

    def __init__(self):
        self.channels: Dict[str, T] = {}
        self.batched: Set[str] = set()

    def add(self, txid: str, channel: T) -> None:
        if txid in self.channels:
            self.batched.add(txid)
        self.channels[txid] = channel

    def lookup(self, txid: str):
        """
        Get the channel for a txid, None if there is none.

        Raises:
            BatchedTransactionError: if several channels share the txid
        """
        if txid in self.batched:
            raise BatchedTransactionError(txid)
        return self.channels.get(txid)

    def __len__(self) -> int:
        return len(self.channels)


def on_chain_report_entries(plugin: 'Plugin', txns: List[Transaction],
                            open_channels: 'TxidMap[OpenChannel]',
                            channel_opens: 'TxidMap[ClosedChannel]',
                            channel_closes: 'TxidMap[ClosedChannel]',
                            sweeps: Set[str],
                            utils: EntryUtils) -> List[LedgerEntry]:
    """Dispatch each filtered transaction to the matching entry factory."""
    entries: List[LedgerEntry] = []

    for tx in txns:
        open_channel = open_channels.lookup(tx.tx_hash)
        if open_channel is not None:
            entries.extend(channel_open_entries(open_channel, tx, utils))
            continue

        closed_open = channel_opens.lookup(tx.tx_hash)
        if closed_open is not None:
            entries.extend(open_channel_from_close_summary(closed_open, tx, utils))
            continue

        closed_channel = channel_closes.lookup(tx.tx_hash)
        if closed_channel is not None:
            entries.extend(closed_channel_entries(plugin, closed_channel, tx, utils))
            continue

        # Sweeps are on chain resolutions of our channels paying back into
        # our wallet, everything else is a generic send or receive
        if tx.tx_hash in sweeps:
            entries.extend(sweep_entries(tx, utils))
            continue

        entries.extend(on_chain_entries(tx, utils))

    return entries


class OnChainReporter:
    """Produces the on chain part of a report."""

    def __init__(self, plugin: 'Plugin', source: OnChainSource,
                 unconfirmed_as_now: bool = False):
        self.plugin = plugin
        self.source = source
        self.unconfirmed_as_now = unconfirmed_as_now

    def report(self, start: int, end: int,
               utils: EntryUtils) -> List[LedgerEntry]:
        txns = self.source.list_transactions()
        sweeps = set(self.source.list_sweeps())

        filtered = filter_on_chain(
            start, end, txns, unconfirmed_as_now=self.unconfirmed_as_now,
            sweeps=sweeps,
        )

        self.plugin.log(
            f"Retrieved: {len(txns)} on chain transactions, "
            f"{len(filtered)} filtered",
            level='info'
        )

        if not filtered:
            return []

        open_channels: TxidMap[OpenChannel] = TxidMap()
        for channel in self.source.list_open_channels():
            open_channels.add(channel.funding_txid, channel)

        # Closed channels are keyed twice: by closing txid to find the close
        # and by funding txid to reconstruct the open
        channel_opens: TxidMap[ClosedChannel] = TxidMap()
        channel_closes: TxidMap[ClosedChannel] = TxidMap()
        for channel in self.source.list_closed_channels():
            channel_opens.add(channel.funding_txid, channel)
            channel_closes.add(channel.closing_tx_hash, channel)

        self.plugin.log(
            f"Matching against: {len(open_channels)} open channels, "
            f"{len(channel_closes)} closed channels, {len(sweeps)} sweeps",
            level='debug'
        )

        if utils.get_fee is None:
            utils = replace(utils, get_fee=self.source.fee_lookup())

        return on_chain_report_entries(
            self.plugin, filtered, open_channels, channel_opens,
            channel_closes, sweeps, utils,
        )
