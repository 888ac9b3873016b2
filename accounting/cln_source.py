"""
Core Lightning data sources for cl-accounting

Maps lightningd RPC results into the record types the report engine uses:
- listpeerchannels / listclosedchannels: channels
- bkpr-listaccountevents (bookkeeper plugin): wallet transactions, sweeps,
  closing transactions and on chain fees
- listtransactions / listfunds / getrawblockbyheight: the same on chain
  history rebuilt from the wallet when bookkeeper is not running
- listinvoices / listsendpays / listforwards: off chain activity
- decode: payment request details

A source caches what it fetched, create one per report.
"""

from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pyln.client import RpcError

from .entries import FeeLookup
from .errors import AccountingError
from .fees import calculate_fee
from .fiat import MSAT_PER_BTC
from .filters import in_range
from .records import (
    ClosedChannel,
    CloseType,
    ForwardingEvent,
    Hop,
    HtlcAttempt,
    HtlcStatus,
    Initiator,
    Invoice,
    InvoiceState,
    OpenChannel,
    Payment,
    PaymentRequest,
    PaymentStatus,
    Transaction,
)
from .utils import parse_msat

if TYPE_CHECKING:
    from pyln.client import Plugin

WALLET_ACCOUNT = "wallet"

# Block header timestamp, hex offsets of 4 little endian bytes
HEADER_TIME_START = 136
HEADER_TIME_END = 144

INVOICE_STATES: Dict[str, InvoiceState] = {
    "paid": InvoiceState.SETTLED,
    "unpaid": InvoiceState.OPEN,
    "expired": InvoiceState.CANCELED,
}

HTLC_STATES: Dict[str, HtlcStatus] = {
    "complete": HtlcStatus.SUCCEEDED,
    "failed": HtlcStatus.FAILED,
    "pending": HtlcStatus.IN_FLIGHT,
}

INITIATORS: Dict[str, Initiator] = {
    "local": Initiator.LOCAL,
    "remote": Initiator.REMOTE,
}


def _initiator(value: Optional[str]) -> Initiator:
    return INITIATORS.get(value or "", Initiator.UNKNOWN)


def _event_txid(event: Dict[str, Any]) -> str:
    """Get the txid an event belongs to: the spend for withdrawals."""
    if event.get("spending_txid"):
        return event["spending_txid"]
    if event.get("txid"):
        return event["txid"]
    outpoint = event.get("outpoint", "")
    return outpoint.split(":")[0] if outpoint else ""


class BookkeeperEvents:
    """Lazily fetched bookkeeper account events, shared by the sources."""

    def __init__(self, plugin: 'Plugin'):
        self.plugin = plugin
        self._events: Optional[List[Dict[str, Any]]] = None
        self._available: Optional[bool] = None

    def events(self) -> List[Dict[str, Any]]:
        if self._events is None:
            result = self.plugin.rpc.call("bkpr-listaccountevents")
            self._events = result.get("events", [])
            self.plugin.log(
                f"Retrieved: {len(self._events)} bookkeeper events",
                level='debug'
            )
        return self._events

    def available(self) -> bool:
        if self._available is None:
            try:
                self.events()
                self._available = True
            except RpcError as e:
                self.plugin.log(
                    f"bookkeeper not available, using wallet history: {e}",
                    level='warn'
                )
                self._available = False
        return self._available


# =============================================================================
# ON CHAIN
# =============================================================================

class ClnOnChainSource:
    """On chain records from lightningd and the bookkeeper plugin."""

    def __init__(self, plugin: 'Plugin',
                 bookkeeper: Optional[BookkeeperEvents] = None):
        self.plugin = plugin
        self.bookkeeper = bookkeeper or BookkeeperEvents(plugin)
        self._wallet_txs: Optional[Dict[str, Dict[str, Any]]] = None
        self._wallet_outputs: Optional[Dict[str, int]] = None
        self._closed: Optional[List[Dict[str, Any]]] = None
        self._block_times: Dict[int, int] = {}

    def list_open_channels(self) -> List[OpenChannel]:
        result = self.plugin.rpc.listpeerchannels()

        channels = []
        for channel in result.get("channels", []):
            funding_txid = channel.get("funding_txid")
            if not funding_txid:
                continue

            channels.append(OpenChannel(
                channel_point=f"{funding_txid}:{channel.get('funding_outnum', 0)}",
                channel_id=channel.get("short_channel_id") or channel.get("channel_id", ""),
                remote_pubkey=channel.get("peer_id", ""),
                capacity=parse_msat(channel.get("total_msat", 0)) // 1000,
                initiator=channel.get("opener") == "local",
            ))

        return channels

    def _closed_channels(self) -> List[Dict[str, Any]]:
        if self._closed is None:
            result = self.plugin.rpc.listclosedchannels()
            self._closed = result.get("closedchannels", [])
        return self._closed

    def _closing_txids(self) -> Dict[str, str]:
        """Map funding outpoints to the transaction that spent them."""
        closing = {}

        if not self.bookkeeper.available():
            for txid, tx in self._wallet_transactions().items():
                for tx_in in tx.get("inputs", []):
                    closing[f"{tx_in['txid']}:{tx_in['index']}"] = txid
            return closing

        for event in self.bookkeeper.events():
            if event.get("tag") != "channel_close":
                continue
            if event.get("outpoint") and event.get("spending_txid"):
                closing[event["outpoint"]] = event["spending_txid"]
        return closing

    def list_closed_channels(self) -> List[ClosedChannel]:
        closing_txids = self._closing_txids()

        channels = []
        for channel in self._closed_channels():
            funding_txid = channel.get("funding_txid")
            if not funding_txid:
                continue

            channel_point = f"{funding_txid}:{channel.get('funding_outnum', 0)}"
            channel_id = channel.get("short_channel_id") or channel.get("channel_id", "")

            closing_txid = closing_txids.get(channel_point)
            if not closing_txid:
                self.plugin.log(
                    f"closing transaction unknown for channel {channel_id}",
                    level='warn'
                )
                continue

            if closing_txid == channel.get("last_commitment_txid"):
                close_type = CloseType.LOCAL_FORCE
            elif channel.get("close_cause") == "onchain":
                close_type = CloseType.REMOTE_FORCE
            else:
                close_type = CloseType.COOPERATIVE

            channels.append(ClosedChannel(
                channel_point=channel_point,
                channel_id=channel_id,
                remote_pubkey=channel.get("peer_id", ""),
                capacity=parse_msat(channel.get("total_msat", 0)) // 1000,
                closing_tx_hash=closing_txid,
                settled_balance=parse_msat(channel.get("final_to_us_msat", 0)) // 1000,
                close_type=close_type,
                open_initiator=_initiator(channel.get("opener")),
                close_initiator=_initiator(channel.get("closer")),
            ))

        return channels

    def list_transactions(self) -> List[Transaction]:
        """
        Wallet transactions from the bookkeeper wallet account.

        A transaction's amount is its net effect on the wallet in sats,
        including the fee for sends. Its fee comes from the wallet's
        onchain_fee events.
        """
        if not self.bookkeeper.available():
            return self._wallet_history()

        txns: 'OrderedDict[str, Dict[str, Any]]' = OrderedDict()

        for event in self.bookkeeper.events():
            if event.get("account") != WALLET_ACCOUNT:
                continue

            txid = _event_txid(event)
            if not txid:
                continue

            tx = txns.setdefault(txid, {
                "net_msat": 0, "fee_msat": 0, "timestamp": 0,
                "confirmed": False, "label": "", "chain": False,
            })

            credit = parse_msat(event.get("credit_msat", 0))
            debit = parse_msat(event.get("debit_msat", 0))

            if event.get("type") == "onchain_fee":
                tx["fee_msat"] += debit - credit
                continue

            if event.get("type") != "chain":
                continue

            tx["chain"] = True
            tx["net_msat"] += credit - debit
            tx["timestamp"] = max(tx["timestamp"], int(event.get("timestamp", 0)))
            tx["confirmed"] = tx["confirmed"] or bool(event.get("blockheight"))
            if event.get("description") and not tx["label"]:
                tx["label"] = event["description"]

        return [
            Transaction(
                tx_hash=txid,
                amount=tx["net_msat"] // 1000,
                fee=abs(tx["fee_msat"]) // 1000,
                timestamp=tx["timestamp"],
                confirmations=1 if tx["confirmed"] else 0,
                label=tx["label"],
            )
            for txid, tx in txns.items()
            if tx["chain"]
        ]

    def list_sweeps(self) -> List[str]:
        """Wallet deposits that came from one of our channel accounts."""
        if not self.bookkeeper.available():
            return self._wallet_sweeps()

        sweeps = []
        for event in self.bookkeeper.events():
            if (event.get("account") == WALLET_ACCOUNT and
                    event.get("tag") == "deposit" and event.get("origin")):
                txid = _event_txid(event)
                if txid and txid not in sweeps:
                    sweeps.append(txid)
        return sweeps

    def get_fee(self, txid: str) -> int:
        """Total on chain fee in sats recorded by bookkeeper for txid."""
        fee_msat = 0
        for event in self.bookkeeper.events():
            if event.get("type") == "onchain_fee" and event.get("txid") == txid:
                fee_msat += (parse_msat(event.get("credit_msat", 0)) -
                             parse_msat(event.get("debit_msat", 0)))
        return abs(fee_msat) // 1000

    def _wallet_transactions(self) -> Dict[str, Dict[str, Any]]:
        if self._wallet_txs is None:
            result = self.plugin.rpc.listtransactions()
            self._wallet_txs = {
                tx["hash"]: tx for tx in result.get("transactions", [])
            }
        return self._wallet_txs

    def _our_outputs(self) -> Dict[str, int]:
        """Wallet outputs, spent or not, keyed by outpoint, in msat."""
        if self._wallet_outputs is None:
            result = self.plugin.rpc.listfunds(spent=True)
            self._wallet_outputs = {
                f"{output['txid']}:{output['output']}":
                    parse_msat(output.get("amount_msat", 0))
                for output in result.get("outputs", [])
            }
        return self._wallet_outputs

    def _block_time(self, height: int) -> int:
        """
        Get a block's timestamp from its header.

        Raises:
            AccountingError: if the backend does not have the block
        """
        if height not in self._block_times:
            result = self.plugin.rpc.call("getrawblockbyheight", {"height": height})
            block = result.get("block")
            if not block:
                raise AccountingError(f"block {height} not available")

            header_time = bytes.fromhex(block[HEADER_TIME_START:HEADER_TIME_END])
            self._block_times[height] = int.from_bytes(header_time, "little")

        return self._block_times[height]

    def _wallet_sweeps(self) -> List[str]:
        """Wallet transactions paying us from the outputs of a channel close."""
        closing_txids = self._closing_txids()
        outputs = self._our_outputs()

        closes = set()
        for channel in self._closed_channels():
            if channel.get("funding_txid"):
                outpoint = f"{channel['funding_txid']}:{channel.get('funding_outnum', 0)}"
                if outpoint in closing_txids:
                    closes.add(closing_txids[outpoint])

        sweeps = []
        for txid, tx in self._wallet_transactions().items():
            if txid in closes:
                continue

            spends_close = any(i["txid"] in closes for i in tx.get("inputs", []))
            pays_us = any(
                f"{txid}:{o.get('index', 0)}" in outputs for o in tx.get("outputs", [])
            )
            if spends_close and pays_us:
                sweeps.append(txid)

        return sweeps

    def _wallet_history(self) -> List[Transaction]:
        """
        Wallet transactions rebuilt from listtransactions and listfunds.

        The amount is what the transaction paid to our outputs less what it
        spent of them. Fees are only known for transactions we funded and
        for sweeps, and are calculated from their inputs. Timestamps come
        from the block header.
        """
        outputs = self._our_outputs()
        sweeps = set(self._wallet_sweeps())

        txns = []
        for txid, tx in self._wallet_transactions().items():
            received = sum(
                outputs.get(f"{txid}:{o.get('index', 0)}", 0)
                for o in tx.get("outputs", [])
            )
            spent = sum(
                outputs.get(f"{i['txid']}:{i['index']}", 0)
                for i in tx.get("inputs", [])
            )

            fee = 0
            if spent or txid in sweeps:
                fee = self.calculate_fee(txid)

            height = int(tx.get("blockheight") or 0)

            txns.append(Transaction(
                tx_hash=txid,
                amount=(received - spent) // 1000,
                fee=fee,
                timestamp=self._block_time(height) if height else 0,
                confirmations=1 if height else 0,
            ))

        self.plugin.log(
            f"Rebuilt: {len(txns)} transactions from wallet history",
            level='debug'
        )

        return txns

    def get_details(self, txid: str) -> Dict[str, Any]:
        """
        Get a wallet transaction in bitcoind's decoded layout, for
        calculate_fee.

        Raises:
            AccountingError: if the transaction is not known to our wallet
        """
        tx = self._wallet_transactions().get(txid)
        if tx is None:
            raise AccountingError(f"transaction {txid} not found in wallet")

        outputs = sorted(tx.get("outputs", []), key=lambda o: o.get("index", 0))

        return {
            "txid": txid,
            "vin": [
                {"txid": i["txid"], "vout": i["index"]}
                for i in tx.get("inputs", [])
            ],
            "vout": [
                {
                    "value": Decimal(parse_msat(o.get("amount_msat", 0))) / MSAT_PER_BTC,
                    "n": o.get("index", 0),
                }
                for o in outputs
            ],
        }

    def calculate_fee(self, txid: str) -> int:
        return calculate_fee(self.get_details, txid)

    def fee_lookup(self) -> Optional[FeeLookup]:
        """
        Prefer bookkeeper's fee records, falling back to walking the inputs
        of wallet transactions.
        """
        if self.bookkeeper.available():
            return self.get_fee
        return self.calculate_fee


# =============================================================================
# OFF CHAIN
# =============================================================================

class ClnOffChainSource:
    """Off chain records from lightningd."""

    def __init__(self, plugin: 'Plugin'):
        self.plugin = plugin
        self._pubkey: Optional[str] = None

    def own_pubkey(self) -> str:
        if self._pubkey is None:
            self._pubkey = self.plugin.rpc.getinfo()["id"]
        return self._pubkey

    def list_invoices(self) -> List[Invoice]:
        result = self.plugin.rpc.listinvoices()

        invoices = []
        for invoice in result.get("invoices", []):
            received = parse_msat(invoice.get("amount_received_msat", 0))
            value = parse_msat(invoice.get("amount_msat", 0))
            # Amountless invoices have no requested value
            if "amount_msat" not in invoice:
                value = received

            invoices.append(Invoice(
                payment_hash=invoice.get("payment_hash", ""),
                preimage=invoice.get("payment_preimage", ""),
                memo=invoice.get("description", ""),
                value_msat=value,
                amount_paid_msat=received,
                settle_date=int(invoice.get("paid_at", 0)),
                state=INVOICE_STATES.get(invoice.get("status", ""), InvoiceState.OPEN),
                is_keysend=invoice.get("label", "").startswith("keysend"),
                payment_request=invoice.get("bolt11") or invoice.get("bolt12", ""),
            ))

        return invoices

    def list_payments(self) -> List[Payment]:
        """
        Payments from listsendpays.

        Each sendpay is one part of a payment. Parts are grouped by payment
        hash and group id into a payment with one htlc attempt per part.
        """
        result = self.plugin.rpc.listsendpays()

        groups: 'OrderedDict[tuple, List[Dict[str, Any]]]' = OrderedDict()
        for part in result.get("payments", []):
            key = (part.get("payment_hash", ""), part.get("groupid", 0))
            groups.setdefault(key, []).append(part)

        payments = []
        for (payment_hash, _), parts in groups.items():
            htlcs = []
            amount_msat = 0
            fee_msat = 0
            preimage = ""

            for part in parts:
                status = HTLC_STATES.get(part.get("status", ""), HtlcStatus.FAILED)
                resolved_at = part.get("completed_at") or part.get("created_at", 0)

                htlcs.append(HtlcAttempt(
                    status=status,
                    hops=[Hop(pubkey=part["destination"])] if part.get("destination") else [],
                    resolve_time_ns=int(resolved_at) * 1_000_000_000,
                ))

                if status == HtlcStatus.SUCCEEDED:
                    amount = parse_msat(part.get("amount_msat", 0))
                    sent = parse_msat(part.get("amount_sent_msat", 0))
                    amount_msat += amount
                    fee_msat += sent - amount
                    preimage = preimage or part.get("payment_preimage", "")

            statuses = {h.status for h in htlcs}
            if HtlcStatus.SUCCEEDED in statuses:
                status = PaymentStatus.SUCCEEDED
            elif HtlcStatus.IN_FLIGHT in statuses:
                status = PaymentStatus.IN_FLIGHT
            else:
                status = PaymentStatus.FAILED

            payments.append(Payment(
                payment_hash=payment_hash,
                preimage=preimage,
                amount_msat=amount_msat,
                fee_msat=fee_msat,
                status=status,
                sequence_number=min(int(p.get("id", 0)) for p in parts),
                htlcs=htlcs,
                payment_request=parts[0].get("bolt11") or parts[0].get("bolt12", ""),
            ))

        return payments

    def list_forwards(self, start: int, end: int) -> List[ForwardingEvent]:
        # listforwards has no time filter, so we filter client-side
        result = self.plugin.rpc.listforwards(status="settled")

        forwards = []
        for forward in result.get("forwards", []):
            timestamp = int(forward.get("resolved_time") or forward.get("received_time", 0))
            if not in_range(timestamp, start, end):
                continue

            forwards.append(ForwardingEvent(
                timestamp=timestamp,
                channel_in=forward.get("in_channel", ""),
                channel_out=forward.get("out_channel", ""),
                amount_in_msat=parse_msat(forward.get("in_msat", 0)),
                amount_out_msat=parse_msat(forward.get("out_msat", 0)),
                fee_msat=parse_msat(forward.get("fee_msat", 0)),
            ))

        return forwards

    def decode_payment_request(self, payment_request: str) -> PaymentRequest:
        decoded = self.plugin.rpc.decode(payment_request)

        destination = (decoded.get("payee") or decoded.get("invoice_node_id")
                       or decoded.get("offer_node_id", ""))

        return PaymentRequest(
            destination=destination,
            description=decoded.get("description", ""),
        )
