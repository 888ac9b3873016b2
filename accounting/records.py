"""
Raw record types consumed by the ledger engine.

These are the node facing shapes: source adapters produce them, filters
normalize them and the entry factories turn them into LedgerEntry values.
All amounts on chain are in sats, all amounts off chain are in msat and
all timestamps are unix seconds unless the field name says otherwise.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class InvoiceState(Enum):
    OPEN = "open"
    SETTLED = "settled"
    CANCELED = "canceled"
    ACCEPTED = "accepted"


class PaymentStatus(Enum):
    UNKNOWN = "unknown"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HtlcStatus(Enum):
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Initiator(Enum):
    """Which side of a channel initiated an action (open or close)."""
    UNKNOWN = "unknown"
    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"


class CloseType(Enum):
    COOPERATIVE = "cooperative"
    LOCAL_FORCE = "local_force"
    REMOTE_FORCE = "remote_force"
    BREACH = "breach"
    FUNDING_CANCELED = "funding_canceled"
    ABANDONED = "abandoned"
    UNKNOWN = "unknown"


def txid_from_channel_point(channel_point: str) -> str:
    """
    Get the funding txid from a "<txid>:<index>" channel point.

    Raises:
        ValueError: if the channel point is malformed
    """
    parts = channel_point.split(":")
    if len(parts) != 2:
        raise ValueError(
            f"expected 2 parts of channel point, got: {len(parts)}"
        )

    txid, index = parts
    try:
        int(index)
    except ValueError:
        raise ValueError(f"invalid index in channel point: {channel_point}")

    if len(txid) != 64:
        raise ValueError(f"invalid txid in channel point: {channel_point}")

    return txid


@dataclass(frozen=True)
class Transaction:
    """
    A wallet transaction.

    amount is the net change to our wallet in sats, negative for sends
    (where it also includes the fee we paid). fee is the absolute fee in
    sats.
    """
    tx_hash: str
    amount: int
    fee: int
    timestamp: int
    confirmations: int = 1
    label: str = ""


@dataclass(frozen=True)
class OpenChannel:
    channel_point: str
    channel_id: str
    remote_pubkey: str
    capacity: int
    initiator: bool

    @property
    def funding_txid(self) -> str:
        return txid_from_channel_point(self.channel_point)


@dataclass(frozen=True)
class ClosedChannel:
    channel_point: str
    channel_id: str
    remote_pubkey: str
    capacity: int
    closing_tx_hash: str
    settled_balance: int = 0
    close_type: CloseType = CloseType.UNKNOWN
    open_initiator: Initiator = Initiator.UNKNOWN
    close_initiator: Initiator = Initiator.UNKNOWN

    @property
    def funding_txid(self) -> str:
        return txid_from_channel_point(self.channel_point)


@dataclass(frozen=True)
class Invoice:
    payment_hash: str
    preimage: str
    memo: str
    value_msat: int
    amount_paid_msat: int
    settle_date: int
    state: InvoiceState
    is_keysend: bool = False
    payment_request: str = ""


@dataclass(frozen=True)
class Hop:
    pubkey: str
    channel_id: str = ""
    amount_to_forward_msat: int = 0


@dataclass(frozen=True)
class HtlcAttempt:
    status: HtlcStatus
    hops: List[Hop] = field(default_factory=list)
    resolve_time_ns: int = 0


@dataclass(frozen=True)
class Payment:
    payment_hash: str
    preimage: str
    amount_msat: int
    fee_msat: int
    status: PaymentStatus
    sequence_number: int
    htlcs: List[HtlcAttempt] = field(default_factory=list)
    payment_request: str = ""


@dataclass(frozen=True)
class ForwardingEvent:
    timestamp: int
    channel_in: str
    channel_out: str
    amount_in_msat: int
    amount_out_msat: int
    fee_msat: int


@dataclass(frozen=True)
class PaymentRequest:
    """The parts of a decoded payment request the ledger uses."""
    destination: str
    description: str = ""
