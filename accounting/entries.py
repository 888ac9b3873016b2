"""
Ledger entries and the factories that produce them.

Each factory turns one classified record into one or more LedgerEntry
values. Amounts are handed to new_ledger_entry as signed msat values; the
sign becomes the credit flag and the magnitude the amount, so an entry's
amount is never negative. Fee entries reference their parent entry with a
":-1" suffix.

Factories value every entry through a price lookup. Any price error aborts
the entry, and with it the report.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from .categories import CustomCategory, get_category
from .fiat import Price, msat_to_fiat
from .records import (
    ClosedChannel,
    ForwardingEvent,
    Initiator,
    Invoice,
    OpenChannel,
    Transaction,
)
from .utils import inverted_sats_to_msat, sats_to_msat

if TYPE_CHECKING:
    from pyln.client import Plugin
    from .filters import PaymentInfo

# Suffix that links a fee entry to its parent entry
FEE_REFERENCE_SUFFIX = ":-1"


class EntryType(Enum):
    """Lightning specific type of a ledger entry."""
    LOCAL_CHANNEL_OPEN = 1
    REMOTE_CHANNEL_OPEN = 2
    CHANNEL_OPEN_FEE = 3
    CHANNEL_CLOSE = 4
    RECEIPT = 5
    PAYMENT = 6
    FEE = 7
    CIRCULAR_RECEIPT = 8
    FORWARD = 9
    FORWARD_FEE = 10
    CIRCULAR_PAYMENT = 11
    CIRCULAR_PAYMENT_FEE = 12
    SWEEP = 13
    SWEEP_FEE = 14
    CHANNEL_CLOSE_FEE = 15

    @property
    def label(self) -> str:
        return ENTRY_TYPE_LABELS[self]


ENTRY_TYPE_LABELS: Dict[EntryType, str] = {
    EntryType.LOCAL_CHANNEL_OPEN: "local channel open",
    EntryType.REMOTE_CHANNEL_OPEN: "remote channel open",
    EntryType.CHANNEL_OPEN_FEE: "channel open fee",
    EntryType.CHANNEL_CLOSE: "channel close",
    EntryType.RECEIPT: "receipt",
    EntryType.PAYMENT: "payment",
    EntryType.FEE: "fee",
    EntryType.CIRCULAR_RECEIPT: "circular payment receipt",
    EntryType.FORWARD: "forward",
    EntryType.FORWARD_FEE: "forward fee",
    EntryType.CIRCULAR_PAYMENT: "circular payment",
    EntryType.CIRCULAR_PAYMENT_FEE: "circular payment fee",
    EntryType.SWEEP: "sweep",
    EntryType.SWEEP_FEE: "sweep fee",
    EntryType.CHANNEL_CLOSE_FEE: "channel close fee",
}

# Every entry type must serialize, fail at import rather than at report time
_unlabelled = [t.name for t in EntryType if t not in ENTRY_TYPE_LABELS]
if _unlabelled:
    raise RuntimeError(f"entry types without a label: {_unlabelled}")


@dataclass(frozen=True)
class LedgerEntry:
    """
    A single change to our balance.

    Attributes:
        timestamp: Unix time of the event (block time on chain)
        amount: Absolute balance change in msat
        fiat_value: Fiat value of amount at btc_price
        txid: Transaction id, or a synthetic id for off chain events
        reference: Unique identifier for the entry where available
        note: Free text
        entry_type: Kind of entry
        category: Custom category name, empty if none matched
        on_chain: Whether the event happened on chain
        credit: True if the entry increased our balance
        btc_price: Price used to value the entry
    """
    timestamp: int
    amount: int
    fiat_value: Decimal
    txid: str
    reference: str
    note: str
    entry_type: EntryType
    category: str
    on_chain: bool
    credit: bool
    btc_price: Price

    def signed_amount(self) -> int:
        """Balance effect of the entry in msat."""
        return self.amount if self.credit else -self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "amount_msat": self.amount,
            "fiat_value": str(self.fiat_value),
            "txid": self.txid,
            "reference": self.reference,
            "note": self.note,
            "type": ENTRY_TYPE_LABELS[self.entry_type],
            "category": self.category,
            "on_chain": self.on_chain,
            "credit": self.credit,
            "btc_price": self.btc_price.to_dict(),
        }


PriceLookup = Callable[[int], Price]
FeeLookup = Callable[[str], int]


@dataclass
class EntryUtils:
    """
    What the factories need besides the record itself.

    Attributes:
        price_lookup: Price at a unix timestamp
        categories: Custom categories for the entries being produced
        get_fee: Fee in sats paid by a transaction, None if unavailable
    """
    price_lookup: PriceLookup
    categories: List[CustomCategory] = field(default_factory=list)
    get_fee: Optional[FeeLookup] = None


def fee_reference(reference: str) -> str:
    return f"{reference}{FEE_REFERENCE_SUFFIX}"


def new_ledger_entry(timestamp: int, amount_msat: int, entry_type: EntryType,
                     txid: str, reference: str, note: str, category: str,
                     on_chain: bool, price_lookup: PriceLookup) -> LedgerEntry:
    """
    Create an entry from a signed msat amount.

    Negative amounts are recorded as debits of their absolute value, zero
    and positive amounts as credits.
    """
    credit = amount_msat >= 0
    amount = abs(amount_msat)

    btc_price = price_lookup(timestamp)

    return LedgerEntry(
        timestamp=timestamp,
        amount=amount,
        fiat_value=msat_to_fiat(btc_price.price, amount),
        txid=txid,
        reference=reference,
        note=note,
        entry_type=entry_type,
        category=category,
        on_chain=on_chain,
        credit=credit,
        btc_price=btc_price,
    )


# =============================================================================
# CHANNEL OPENS AND CLOSES
# =============================================================================

def channel_open_note(initiator: bool, remote_pubkey: str, capacity: int) -> str:
    if not initiator:
        return (f"remote peer {remote_pubkey} initiated channel open with "
                f"capacity: {capacity} sat")

    return (f"initiated channel with remote peer: {remote_pubkey}, "
            f"capacity: {capacity} sats")


def channel_open_fee_note(channel_id: str) -> str:
    return f"fees to open channel: {channel_id}"


def open_entries(tx: Transaction, utils: EntryUtils, amount_msat: int,
                 capacity: int, entry_type: EntryType, remote_pubkey: str,
                 channel_id: str, initiator: bool) -> List[LedgerEntry]:
    """
    Create channel open entries from the fields shared by open channels and
    close summaries.

    A channel we opened gets a fee entry for the funding transaction; when
    our peer opened, they paid the fees and the open has no effect on our
    balance.
    """
    category = get_category(tx.label, utils.categories)

    open_entry = new_ledger_entry(
        tx.timestamp, amount_msat, entry_type, tx.tx_hash, channel_id,
        channel_open_note(initiator, remote_pubkey, capacity), category,
        True, utils.price_lookup,
    )

    if not initiator:
        return [open_entry]

    fee_entry = new_ledger_entry(
        tx.timestamp, inverted_sats_to_msat(tx.fee),
        EntryType.CHANNEL_OPEN_FEE, tx.tx_hash, fee_reference(tx.tx_hash),
        channel_open_fee_note(channel_id), category, True,
        utils.price_lookup,
    )

    return [open_entry, fee_entry]


def channel_open_entries(channel: OpenChannel, tx: Transaction,
                         utils: EntryUtils) -> List[LedgerEntry]:
    """Entries for the funding transaction of a currently open channel."""
    amount_msat = sats_to_msat(tx.amount)
    entry_type = EntryType.LOCAL_CHANNEL_OPEN

    if not channel.initiator:
        amount_msat = 0
        entry_type = EntryType.REMOTE_CHANNEL_OPEN

    return open_entries(
        tx, utils, amount_msat, channel.capacity, entry_type,
        channel.remote_pubkey, channel.channel_id, channel.initiator,
    )


def open_channel_from_close_summary(channel: ClosedChannel, tx: Transaction,
                                    utils: EntryUtils) -> List[LedgerEntry]:
    """
    Entries for the funding transaction of an already closed channel.

    When the close summary does not record who opened the channel we infer
    it from the transaction: a remote open does not touch our wallet, so a
    negative amount means we opened it.
    """
    amount_msat = sats_to_msat(tx.amount)

    if channel.open_initiator == Initiator.LOCAL:
        initiator = True
    elif channel.open_initiator == Initiator.REMOTE:
        initiator = False
    else:
        initiator = amount_msat < 0

    entry_type = EntryType.LOCAL_CHANNEL_OPEN
    if not initiator:
        amount_msat = 0
        entry_type = EntryType.REMOTE_CHANNEL_OPEN

    return open_entries(
        tx, utils, amount_msat, channel.capacity, entry_type,
        channel.remote_pubkey, channel.channel_id, initiator,
    )


def channel_close_note(channel_id: str, close_type: str, initiator: str) -> str:
    return (f"close channel: {channel_id}, close type: {close_type}, "
            f"closed by: {initiator}")


def closed_channel_entries(plugin: 'Plugin', channel: ClosedChannel,
                           tx: Transaction,
                           utils: EntryUtils) -> List[LedgerEntry]:
    """
    Entries for a channel close transaction.

    The close entry only reflects the balance paid out directly by the close
    transaction. Htlcs and timelocked outputs resolved on chain later are
    not included.

    A close fee entry is only added when we opened the channel (the opener
    pays the close fee) and a fee lookup is available.
    """
    category = get_category(tx.label, utils.categories)
    closing_txid = channel.closing_tx_hash

    close_entry = new_ledger_entry(
        tx.timestamp, sats_to_msat(tx.amount), EntryType.CHANNEL_CLOSE,
        closing_txid, closing_txid,
        channel_close_note(
            channel.channel_id, channel.close_type.value,
            channel.close_initiator.value,
        ),
        category, True, utils.price_lookup,
    )

    if channel.open_initiator == Initiator.REMOTE:
        return [close_entry]

    if channel.open_initiator != Initiator.LOCAL:
        plugin.log(
            f"channel {channel.channel_id} open initiator "
            f"{channel.open_initiator.value}, close fee not recorded",
            level='warn'
        )
        return [close_entry]

    if utils.get_fee is None:
        plugin.log(
            f"no fee lookup available, close fee for channel "
            f"{channel.channel_id} not recorded",
            level='warn'
        )
        return [close_entry]

    fee_sats = utils.get_fee(closing_txid)

    fee_entry = new_ledger_entry(
        tx.timestamp, inverted_sats_to_msat(fee_sats),
        EntryType.CHANNEL_CLOSE_FEE, closing_txid,
        fee_reference(closing_txid), "", category, True,
        utils.price_lookup,
    )

    return [close_entry, fee_entry]


# =============================================================================
# OTHER ON CHAIN
# =============================================================================

def sweep_entries(tx: Transaction, utils: EntryUtils) -> List[LedgerEntry]:
    """Entries for a sweep of timelocked funds back into our wallet."""
    category = get_category(tx.label, utils.categories)

    sweep_entry = new_ledger_entry(
        tx.timestamp, sats_to_msat(tx.amount), EntryType.SWEEP, tx.tx_hash,
        tx.tx_hash, tx.label, category, True, utils.price_lookup,
    )

    if tx.fee == 0:
        return [sweep_entry]

    fee_entry = new_ledger_entry(
        tx.timestamp, inverted_sats_to_msat(tx.fee), EntryType.SWEEP_FEE,
        tx.tx_hash, fee_reference(tx.tx_hash), "", category, True,
        utils.price_lookup,
    )

    return [sweep_entry, fee_entry]


def on_chain_entries(tx: Transaction, utils: EntryUtils) -> List[LedgerEntry]:
    """
    Entries for an on chain transaction unrelated to our channels.

    The amount has already had fees removed by filter_on_chain, so the fee
    entry does not count them twice.
    """
    amount_msat = sats_to_msat(tx.amount)
    category = get_category(tx.label, utils.categories)

    entry_type = EntryType.RECEIPT
    if amount_msat < 0:
        entry_type = EntryType.PAYMENT

    tx_entry = new_ledger_entry(
        tx.timestamp, amount_msat, entry_type, tx.tx_hash, tx.tx_hash,
        tx.label, category, True, utils.price_lookup,
    )

    if tx.fee == 0:
        return [tx_entry]

    fee_entry = new_ledger_entry(
        tx.timestamp, inverted_sats_to_msat(tx.fee), EntryType.FEE,
        tx.tx_hash, fee_reference(tx.tx_hash), "", category, True,
        utils.price_lookup,
    )

    return [tx_entry, fee_entry]


# =============================================================================
# OFF CHAIN
# =============================================================================

def invoice_note(memo: str, amount_msat: int, amount_paid_msat: int,
                 keysend: bool) -> str:
    notes = []

    if memo:
        notes.append(f"memo: {memo}")

    if amount_msat != amount_paid_msat:
        notes.append(
            f"invoice overpaid original amount: {amount_msat} msat, "
            f"paid: {amount_paid_msat}"
        )

    if keysend:
        notes.append("keysend payment")

    return "/".join(notes)


def invoice_entry(invoice: Invoice, circular: bool,
                  utils: EntryUtils) -> LedgerEntry:
    entry_type = EntryType.RECEIPT
    if circular:
        entry_type = EntryType.CIRCULAR_RECEIPT

    note = invoice_note(
        invoice.memo, invoice.value_msat, invoice.amount_paid_msat,
        invoice.is_keysend,
    )

    return new_ledger_entry(
        invoice.settle_date, invoice.amount_paid_msat, entry_type,
        invoice.payment_hash, invoice.preimage, note,
        get_category(invoice.memo, utils.categories), False,
        utils.price_lookup,
    )


def payment_reference(sequence_number: int, preimage: str) -> str:
    """
    Payment hashes may repeat across payments, the sequence number in the
    payments database does not.
    """
    return f"{sequence_number}:{preimage}"


def payment_note(destination: Optional[str], description: Optional[str]) -> str:
    notes = []

    if description:
        notes.append(f"memo: {description}")

    if destination:
        notes.append(f"destination: {destination}")

    return "/".join(notes)


def payment_entries(payment: 'PaymentInfo', circular: bool,
                    utils: EntryUtils) -> List[LedgerEntry]:
    """Entries for an outgoing payment and the routing fees paid on it."""
    entry_type = EntryType.PAYMENT
    fee_type = EntryType.FEE
    if circular:
        entry_type = EntryType.CIRCULAR_PAYMENT
        fee_type = EntryType.CIRCULAR_PAYMENT_FEE

    raw = payment.payment
    reference = payment_reference(raw.sequence_number, raw.preimage)
    note = payment_note(payment.destination, payment.description)
    category = get_category(payment.description or "", utils.categories)

    payment_entry = new_ledger_entry(
        payment.settle_time, -raw.amount_msat, entry_type, raw.payment_hash,
        reference, note, category, False, utils.price_lookup,
    )

    if raw.fee_msat == 0:
        return [payment_entry]

    fee_entry = new_ledger_entry(
        payment.settle_time, -raw.fee_msat, fee_type, raw.payment_hash,
        fee_reference(reference), note, category, False,
        utils.price_lookup,
    )

    return [payment_entry, fee_entry]


def forward_txid(forward: ForwardingEvent) -> str:
    return f"{forward.channel_in}:{forward.channel_out}"


def forward_note(amount_in_msat: int, amount_out_msat: int) -> str:
    return f"incoming: {amount_in_msat} msat outgoing: {amount_out_msat} msat"


def forward_entries(forward: ForwardingEvent,
                    utils: EntryUtils) -> List[LedgerEntry]:
    """
    Entries for a forward through our node.

    The forwarded amount passes through without changing our balance, so
    the forward itself is a zero amount entry. The fee we earned is a
    credit.
    """
    txid = forward_txid(forward)
    note = forward_note(forward.amount_in_msat, forward.amount_out_msat)

    forward_entry = new_ledger_entry(
        forward.timestamp, 0, EntryType.FORWARD, txid, "", note, "", False,
        utils.price_lookup,
    )

    if forward.fee_msat == 0:
        return [forward_entry]

    fee_entry = new_ledger_entry(
        forward.timestamp, forward.fee_msat, EntryType.FORWARD_FEE, txid,
        "", "", "", False, utils.price_lookup,
    )

    return [forward_entry, fee_entry]
