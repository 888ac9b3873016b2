"""
Tests for the Core Lightning data sources.

Tests:
- Channel listing from listpeerchannels and listclosedchannels
- Wallet transactions, sweeps and fees from bookkeeper events
- Fee lookup fallback to listtransactions
- Wallet history when bookkeeper is not running
- Invoices, sendpays and forwards
"""

import pytest
from pyln.client import RpcError

from accounting.cln_source import BookkeeperEvents, ClnOffChainSource, ClnOnChainSource
from accounting.entries import EntryType, EntryUtils
from accounting.errors import AccountingError
from accounting.on_chain import OnChainReporter
from accounting.records import CloseType, HtlcStatus, Initiator, InvoiceState, PaymentStatus

from conftest import OWN_PUBKEY, PEER_PUBKEY, make_txid

FUNDING = make_txid("f")
CLOSING = make_txid("c")
DEPOSIT = make_txid("d")
SPEND = make_txid("e")
SWEEP = make_txid("5")


def _events():
    return [
        {"account": "wallet", "type": "chain", "tag": "deposit",
         "outpoint": f"{DEPOSIT}:0", "credit_msat": 100_000_000,
         "debit_msat": 0, "timestamp": 100, "blockheight": 10,
         "description": "salary"},
        {"account": "wallet", "type": "chain", "tag": "withdrawal",
         "outpoint": f"{DEPOSIT}:0", "spending_txid": SPEND,
         "credit_msat": 0, "debit_msat": 100_000_000, "timestamp": 200,
         "blockheight": 11},
        {"account": "wallet", "type": "chain", "tag": "deposit",
         "outpoint": f"{SPEND}:1", "credit_msat": 49_000_000,
         "debit_msat": 0, "timestamp": 200, "blockheight": 11},
        {"account": "wallet", "type": "onchain_fee", "tag": "onchain_fee",
         "txid": SPEND, "credit_msat": 0, "debit_msat": 1_000_000,
         "timestamp": 200},
        {"account": "100x1x0", "type": "chain", "tag": "channel_close",
         "outpoint": f"{FUNDING}:0", "spending_txid": CLOSING,
         "credit_msat": 0, "debit_msat": 50_000_000, "timestamp": 300,
         "blockheight": 12},
        {"account": "wallet", "type": "chain", "tag": "deposit",
         "outpoint": f"{SWEEP}:0", "origin": "100x1x0",
         "credit_msat": 20_000_000, "debit_msat": 0, "timestamp": 400},
        {"account": "100x1x0", "type": "onchain_fee", "tag": "onchain_fee",
         "txid": CLOSING, "credit_msat": 0, "debit_msat": 300_000,
         "timestamp": 300},
    ]


class TestBookkeeperEvents:
    """Test bookkeeper event fetching."""

    def test_cached(self, mock_plugin, mock_rpc):
        """Events are fetched once."""
        mock_plugin.rpc = mock_rpc
        bookkeeper = BookkeeperEvents(mock_plugin)

        bookkeeper.events()
        bookkeeper.events()

        mock_rpc.call.assert_called_once_with("bkpr-listaccountevents")

    def test_unavailable(self, mock_plugin, mock_rpc):
        """A failing bookkeeper call is logged and reported unavailable."""
        mock_rpc.call.side_effect = RpcError(
            "bkpr-listaccountevents", {}, {"message": "Unknown command"}
        )
        mock_plugin.rpc = mock_rpc

        assert BookkeeperEvents(mock_plugin).available() is False
        assert mock_plugin.log.call_args[1]["level"] == 'warn'


class TestClnOnChainSource:
    """Test on chain records from lightningd."""

    def _source(self, mock_plugin, mock_rpc, events=None):
        mock_rpc.call.return_value = {"events": _events() if events is None else events}
        mock_plugin.rpc = mock_rpc
        return ClnOnChainSource(mock_plugin)

    def test_open_channels(self, mock_plugin, mock_rpc):
        """Open channels map from listpeerchannels."""
        mock_rpc.listpeerchannels.return_value = {"channels": [
            {"peer_id": PEER_PUBKEY, "funding_txid": FUNDING, "funding_outnum": 1,
             "short_channel_id": "100x1x1", "total_msat": 2_000_000_000,
             "opener": "local"},
            {"peer_id": PEER_PUBKEY, "opener": "remote"},
        ]}
        source = self._source(mock_plugin, mock_rpc)

        channels = source.list_open_channels()

        assert len(channels) == 1
        assert channels[0].channel_point == f"{FUNDING}:1"
        assert channels[0].capacity == 2_000_000
        assert channels[0].initiator is True

    def test_closed_channels(self, mock_plugin, mock_rpc):
        """Closed channels take their closing txid from bookkeeper."""
        mock_rpc.listclosedchannels.return_value = {"closedchannels": [
            {"peer_id": PEER_PUBKEY, "funding_txid": FUNDING, "funding_outnum": 0,
             "short_channel_id": "100x1x0", "total_msat": 50_000_000,
             "final_to_us_msat": 20_000_000, "opener": "local",
             "closer": "remote", "close_cause": "onchain",
             "last_commitment_txid": make_txid("9")},
            {"peer_id": PEER_PUBKEY, "funding_txid": make_txid("8"),
             "short_channel_id": "200x1x0", "opener": "remote"},
        ]}
        source = self._source(mock_plugin, mock_rpc)

        channels = source.list_closed_channels()

        assert len(channels) == 1
        channel = channels[0]
        assert channel.closing_tx_hash == CLOSING
        assert channel.settled_balance == 20_000
        assert channel.close_type == CloseType.REMOTE_FORCE
        assert channel.open_initiator == Initiator.LOCAL
        assert channel.close_initiator == Initiator.REMOTE
        # The second channel's close is unknown to bookkeeper
        assert mock_plugin.log.call_args[1]["level"] == 'warn'

    def test_transactions(self, mock_plugin, mock_rpc):
        """Wallet events group into transactions with net amounts and fees."""
        source = self._source(mock_plugin, mock_rpc)

        txns = {tx.tx_hash: tx for tx in source.list_transactions()}

        assert set(txns) == {DEPOSIT, SPEND, SWEEP}
        assert txns[DEPOSIT].amount == 100_000
        assert txns[DEPOSIT].label == "salary"
        assert txns[SPEND].amount == -51_000
        assert txns[SPEND].fee == 1000
        assert txns[SPEND].timestamp == 200
        assert txns[SWEEP].confirmations == 0

    def test_sweeps(self, mock_plugin, mock_rpc):
        """Deposits from channel accounts are sweeps."""
        source = self._source(mock_plugin, mock_rpc)

        assert source.list_sweeps() == [SWEEP]

    def test_fee_from_bookkeeper(self, mock_plugin, mock_rpc):
        """Bookkeeper fees are used when bookkeeper is available."""
        source = self._source(mock_plugin, mock_rpc)

        get_fee = source.fee_lookup()

        assert get_fee(CLOSING) == 300

    def test_fee_fallback(self, mock_plugin, mock_rpc):
        """Without bookkeeper fees are calculated from wallet transactions."""
        parent = make_txid("1")
        mock_rpc.call.side_effect = RpcError("bkpr-listaccountevents", {}, {})
        mock_rpc.listtransactions.return_value = {"transactions": [
            {"hash": parent, "inputs": [], "outputs": [
                {"index": 0, "amount_msat": 60_000_000},
            ]},
            {"hash": CLOSING, "inputs": [{"txid": parent, "index": 0}],
             "outputs": [{"index": 0, "amount_msat": 59_700_000}]},
        ]}
        mock_plugin.rpc = mock_rpc
        source = ClnOnChainSource(mock_plugin)

        get_fee = source.fee_lookup()

        assert get_fee(CLOSING) == 300


BLOCK_TIME = 150


def _block(timestamp):
    """Raw block hex with only a header, timestamped."""
    header = bytes(68) + timestamp.to_bytes(4, "little") + bytes(8)
    return header.hex()


def _without_bookkeeper(method, params=None):
    if method == "getrawblockbyheight":
        return {"blockhash": "00" * 32, "block": _block(BLOCK_TIME)}
    raise RpcError(method, params or {}, {"message": "Unknown command"})


class TestWalletHistory:
    """Test on chain records rebuilt from the wallet without bookkeeper."""

    def _source(self, mock_plugin, mock_rpc):
        parent = make_txid("1")
        sweep = make_txid("2")
        mock_rpc.call.side_effect = _without_bookkeeper
        mock_rpc.listtransactions.return_value = {"transactions": [
            {"hash": parent, "blockheight": 100, "inputs": [], "outputs": [
                {"index": 0, "amount_msat": 60_000_000},
            ]},
            {"hash": FUNDING, "blockheight": 101,
             "inputs": [{"txid": parent, "index": 0}],
             "outputs": [
                 {"index": 0, "amount_msat": 50_000_000},
                 {"index": 1, "amount_msat": 9_900_000},
             ]},
            {"hash": CLOSING, "blockheight": 102,
             "inputs": [{"txid": FUNDING, "index": 0}],
             "outputs": [{"index": 0, "amount_msat": 49_700_000}]},
            {"hash": sweep, "blockheight": 0,
             "inputs": [{"txid": CLOSING, "index": 0}],
             "outputs": [{"index": 0, "amount_msat": 49_500_000}]},
        ]}
        mock_rpc.listfunds.return_value = {"outputs": [
            {"txid": parent, "output": 0, "amount_msat": 60_000_000,
             "status": "spent"},
            {"txid": FUNDING, "output": 1, "amount_msat": 9_900_000,
             "status": "confirmed"},
            {"txid": sweep, "output": 0, "amount_msat": 49_500_000,
             "status": "unconfirmed"},
        ]}
        mock_rpc.listclosedchannels.return_value = {"closedchannels": [
            {"peer_id": PEER_PUBKEY, "funding_txid": FUNDING, "funding_outnum": 0,
             "short_channel_id": "100x1x0", "total_msat": 50_000_000,
             "final_to_us_msat": 49_700_000, "opener": "local",
             "closer": "local", "close_cause": "onchain",
             "last_commitment_txid": CLOSING},
        ]}
        mock_plugin.rpc = mock_rpc
        return ClnOnChainSource(mock_plugin), parent, sweep

    def test_transactions(self, mock_plugin, mock_rpc):
        """Amounts are the net change in our outputs, fees are walked."""
        source, parent, sweep = self._source(mock_plugin, mock_rpc)

        txns = {tx.tx_hash: tx for tx in source.list_transactions()}

        assert txns[parent].amount == 60_000
        assert txns[parent].fee == 0
        assert txns[FUNDING].amount == -50_100
        assert txns[FUNDING].fee == 100
        assert txns[FUNDING].timestamp == BLOCK_TIME
        # A force close to a timelocked output pays the wallet nothing yet
        assert txns[CLOSING].amount == 0
        assert txns[CLOSING].fee == 0
        assert txns[sweep].amount == 49_500
        assert txns[sweep].fee == 200
        assert txns[sweep].confirmations == 0

    def test_block_times_cached(self, mock_plugin, mock_rpc):
        """Each block header is fetched once."""
        source, _, _ = self._source(mock_plugin, mock_rpc)

        source.list_transactions()
        source.list_transactions()

        heights = [
            c[0][1]["height"] for c in mock_rpc.call.call_args_list
            if c[0][0] == "getrawblockbyheight"
        ]
        assert sorted(heights) == [100, 101, 102]

    def test_closed_channels(self, mock_plugin, mock_rpc):
        """Closing txids come from the wallet transaction spending the funding output."""
        source, _, _ = self._source(mock_plugin, mock_rpc)

        channels = source.list_closed_channels()

        assert channels[0].closing_tx_hash == CLOSING
        assert channels[0].close_type == CloseType.LOCAL_FORCE

    def test_sweeps(self, mock_plugin, mock_rpc):
        """Transactions paying us from a closing transaction are sweeps."""
        source, _, sweep = self._source(mock_plugin, mock_rpc)

        assert source.list_sweeps() == [sweep]

    def test_bookkeeper_checked_once(self, mock_plugin, mock_rpc):
        """A missing bookkeeper is only asked for and warned about once."""
        source, _, _ = self._source(mock_plugin, mock_rpc)

        source.list_sweeps()
        source.list_closed_channels()

        bookkeeper_calls = [
            c for c in mock_rpc.call.call_args_list
            if c[0][0] == "bkpr-listaccountevents"
        ]
        assert len(bookkeeper_calls) == 1

    def test_missing_block(self, mock_plugin, mock_rpc):
        """A block the backend does not have aborts the listing."""
        source, _, _ = self._source(mock_plugin, mock_rpc)

        def no_blocks(method, params=None):
            if method == "getrawblockbyheight":
                return {"blockhash": None, "block": None}
            raise RpcError(method, params or {}, {})

        mock_rpc.call.side_effect = no_blocks

        with pytest.raises(AccountingError):
            source.list_transactions()

    def test_report(self, mock_plugin, mock_rpc, price_lookup):
        """An on chain report runs from wallet history alone."""
        source, _, _ = self._source(mock_plugin, mock_rpc)

        entries = OnChainReporter(mock_plugin, source, unconfirmed_as_now=True).report(
            100, 2**40, EntryUtils(price_lookup)
        )

        assert [e.entry_type for e in entries] == [
            EntryType.RECEIPT,
            EntryType.LOCAL_CHANNEL_OPEN,
            EntryType.CHANNEL_OPEN_FEE,
            EntryType.CHANNEL_CLOSE,
            EntryType.CHANNEL_CLOSE_FEE,
            EntryType.SWEEP,
            EntryType.SWEEP_FEE,
        ]
        # The close fee is walked from the funding output we spent
        assert entries[4].amount == 300_000
        assert entries[6].amount == 200_000


class TestClnOffChainSource:
    """Test off chain records from lightningd."""

    def test_own_pubkey(self, mock_plugin, mock_rpc):
        """Our pubkey comes from getinfo and is cached."""
        mock_plugin.rpc = mock_rpc
        source = ClnOffChainSource(mock_plugin)

        assert source.own_pubkey() == OWN_PUBKEY
        source.own_pubkey()
        mock_rpc.getinfo.assert_called_once()

    def test_invoices(self, mock_plugin, mock_rpc):
        """Invoices map with amountless invoices valued at what was paid."""
        mock_rpc.listinvoices.return_value = {"invoices": [
            {"label": "keysend-1", "payment_hash": "h1", "status": "paid",
             "amount_received_msat": 5000, "paid_at": 100,
             "payment_preimage": "p1", "description": "tip"},
            {"label": "inv", "payment_hash": "h2", "status": "expired",
             "amount_msat": 1000, "bolt11": "lnbc1"},
        ]}
        mock_plugin.rpc = mock_rpc

        invoices = ClnOffChainSource(mock_plugin).list_invoices()

        assert invoices[0].value_msat == 5000
        assert invoices[0].amount_paid_msat == 5000
        assert invoices[0].is_keysend is True
        assert invoices[0].state == InvoiceState.SETTLED
        assert invoices[1].state == InvoiceState.CANCELED
        assert invoices[1].payment_request == "lnbc1"

    def test_multi_part_payment(self, mock_plugin, mock_rpc):
        """Sendpay parts group into one payment with an htlc per part."""
        mock_rpc.listsendpays.return_value = {"payments": [
            {"id": 4, "payment_hash": "h", "groupid": 1, "status": "failed",
             "destination": PEER_PUBKEY, "amount_msat": 500,
             "amount_sent_msat": 505, "created_at": 90},
            {"id": 5, "payment_hash": "h", "groupid": 1, "status": "complete",
             "destination": PEER_PUBKEY, "amount_msat": 500,
             "amount_sent_msat": 505, "created_at": 95, "completed_at": 100,
             "payment_preimage": "p", "bolt11": "lnbc1"},
            {"id": 6, "payment_hash": "h", "groupid": 1, "status": "complete",
             "destination": PEER_PUBKEY, "amount_msat": 500,
             "amount_sent_msat": 502, "created_at": 95, "completed_at": 110},
        ]}
        mock_plugin.rpc = mock_rpc

        payments = ClnOffChainSource(mock_plugin).list_payments()

        assert len(payments) == 1
        payment = payments[0]
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount_msat == 1000
        assert payment.fee_msat == 7
        assert payment.sequence_number == 4
        assert payment.preimage == "p"
        assert [h.status for h in payment.htlcs] == [
            HtlcStatus.FAILED, HtlcStatus.SUCCEEDED, HtlcStatus.SUCCEEDED,
        ]
        assert payment.htlcs[2].resolve_time_ns == 110 * 1_000_000_000

    def test_pending_payment(self, mock_plugin, mock_rpc):
        """A payment with only pending parts is in flight."""
        mock_rpc.listsendpays.return_value = {"payments": [
            {"id": 1, "payment_hash": "h", "status": "pending",
             "destination": PEER_PUBKEY, "created_at": 90},
        ]}
        mock_plugin.rpc = mock_rpc

        payments = ClnOffChainSource(mock_plugin).list_payments()

        assert payments[0].status == PaymentStatus.IN_FLIGHT

    def test_forwards_filtered(self, mock_plugin, mock_rpc):
        """Settled forwards are filtered to the range."""
        mock_rpc.listforwards.return_value = {"forwards": [
            {"in_channel": "1x1x1", "out_channel": "2x2x2", "in_msat": 1010,
             "out_msat": 1000, "fee_msat": 10, "status": "settled",
             "received_time": 140.5, "resolved_time": 150.25},
            {"in_channel": "1x1x1", "out_channel": "2x2x2", "in_msat": 1010,
             "out_msat": 1000, "fee_msat": 10, "status": "settled",
             "received_time": 250, "resolved_time": 251},
        ]}
        mock_plugin.rpc = mock_rpc

        forwards = ClnOffChainSource(mock_plugin).list_forwards(100, 200)

        mock_rpc.listforwards.assert_called_once_with(status="settled")
        assert len(forwards) == 1
        assert forwards[0].timestamp == 150
        assert forwards[0].fee_msat == 10

    def test_decode(self, mock_plugin, mock_rpc):
        """Decoded payment requests give the payee and description."""
        mock_rpc.decode.return_value = {"payee": PEER_PUBKEY, "description": "coffee"}
        mock_plugin.rpc = mock_rpc

        request = ClnOffChainSource(mock_plugin).decode_payment_request("lnbc1")

        assert request.destination == PEER_PUBKEY
        assert request.description == "coffee"
