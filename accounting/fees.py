"""
On chain fee calculation by walking a transaction's inputs.

Works on bitcoind style decoded transactions (getrawtransaction verbose):
    {"txid": ..., "vin": [{"txid": ..., "vout": 0}, ...],
     "vout": [{"value": 0.0123, "n": 0}, ...]}
"""

from decimal import Decimal
from typing import Any, Callable, Dict

SATS_PER_BTC = Decimal(100_000_000)

GetDetails = Callable[[str], Dict[str, Any]]


def btc_to_sats(value: Any) -> int:
    """Convert a BTC denominated output value to sats."""
    amount = Decimal(str(value)) * SATS_PER_BTC
    if amount != amount.to_integral_value():
        raise ValueError(f"invalid bitcoin amount: {value}")
    return int(amount)


def _check_txid(txid: str) -> None:
    if len(txid) != 64:
        raise ValueError(f"invalid txid: {txid}")
    int(txid, 16)


def calculate_fee(get_details: GetDetails, txid: str) -> int:
    """
    Get the fee paid by a transaction in sats.

    The fee is the total value of the outputs spent by the transaction's
    inputs, less the total value of its outputs. Each input's previous
    transaction is looked up with get_details.

    Raises:
        ValueError: on a malformed txid or amount
    """
    _check_txid(txid)
    tx = get_details(txid)

    fee = 0

    for tx_in in tx.get("vin", []):
        prev_txid = tx_in["txid"]
        _check_txid(prev_txid)

        prev_tx = get_details(prev_txid)
        prev_out = prev_tx["vout"][tx_in["vout"]]
        fee += btc_to_sats(prev_out["value"])

    for tx_out in tx.get("vout", []):
        fee -= btc_to_sats(tx_out["value"])

    return fee
