"""
Record filters for cl-accounting

Narrow raw node records down to the ones that belong in a report and
normalize them:
- On chain transactions: confirmation and range checks, fee double
  counting correction
- Invoices: settled and in range
- Payments: settle time from htlc resolution, destination resolution for
  circular payment detection, duplicate rejection
"""

import time
from dataclasses import dataclass, replace
from typing import Callable, Collection, List, Optional, Tuple

from .errors import DuplicatesNotSupportedError, NoHopsError, ReceiveWithFeeError
from .records import (
    HtlcStatus,
    Invoice,
    InvoiceState,
    Payment,
    PaymentRequest,
    PaymentStatus,
    Transaction,
)

NANOSECONDS_PER_SECOND = 1_000_000_000

DecodePaymentRequest = Callable[[str], PaymentRequest]


def in_range(timestamp: int, start: int, end: int) -> bool:
    """Whether a timestamp lies in [start, end)."""
    return start <= timestamp < end


def filter_on_chain(start: int, end: int, txns: List[Transaction],
                    unconfirmed_as_now: bool = False,
                    now: Optional[int] = None,
                    sweeps: Collection[str] = ()) -> List[Transaction]:
    """
    Get the transactions in [start, end), with fees removed from amounts.

    Unconfirmed transactions have no block timestamp. They are dropped,
    unless unconfirmed_as_now is set in which case they are stamped with
    the current time (some backends lag behind the chain and report recent
    sweeps as unconfirmed).

    The amount of a send from our wallet includes the fee we paid, which we
    record as a separate entry, so the fee is added back to the (negative)
    amount. Receives are not expected to carry a fee, except for sweeps of our
    channel outputs which pay their fee from the swept funds.

    Zero amount transactions are kept; a force close that pays us nothing
    still needs its fees accounted for.

    Raises:
        ReceiveWithFeeError: if an incoming transaction other than a sweep
            has a fee
    """
    filtered = []

    for tx in txns:
        if tx.confirmations == 0:
            if not unconfirmed_as_now:
                continue
            tx = replace(tx, timestamp=now if now is not None else int(time.time()))

        if not in_range(tx.timestamp, start, end):
            continue

        if tx.amount < 0:
            tx = replace(tx, amount=tx.amount + abs(tx.fee))
        elif tx.amount > 0 and tx.fee != 0 and tx.tx_hash not in sweeps:
            raise ReceiveWithFeeError(tx.tx_hash)

        filtered.append(tx)

    return filtered


def filter_invoices(start: int, end: int, invoices: List[Invoice]) -> List[Invoice]:
    """Get the settled invoices that were settled in [start, end)."""
    return [
        invoice for invoice in invoices
        if invoice.state == InvoiceState.SETTLED
        and in_range(invoice.settle_date, start, end)
    ]


# =============================================================================
# PAYMENTS
# =============================================================================

@dataclass(frozen=True)
class PaymentInfo:
    """
    A payment with the details we resolve for it.

    A multi part payment is only settled once all of its htlcs resolve, so
    settle_time is the latest resolve time of its successful htlcs.

    Attributes:
        payment: The raw payment
        destination: Pubkey the payment was made to, None if unknown
        description: Description from the payment request, if decoded
        settle_time: Unix time the payment settled, 0 if it did not succeed
    """
    payment: Payment
    destination: Optional[str] = None
    description: Optional[str] = None
    settle_time: int = 0

    @property
    def payment_hash(self) -> str:
        return self.payment.payment_hash

    @property
    def status(self) -> PaymentStatus:
        return self.payment.status


def payment_htlc_destination(payment: Payment) -> Optional[str]:
    """
    Get the destination of a payment from its first htlc's route.

    All htlcs of a payment go to the same node, so the last hop of the
    first one is enough.

    Returns:
        None if the payment has no htlcs (legacy or not yet dispatched)

    Raises:
        NoHopsError: if the first htlc has an empty route
    """
    if not payment.htlcs:
        return None

    hops = payment.htlcs[0].hops
    if not hops:
        raise NoHopsError(payment.payment_hash)

    return hops[-1].pubkey


def payment_request_details(payment_request: str, decode: DecodePaymentRequest
                            ) -> Tuple[Optional[str], Optional[str]]:
    """
    Decode a payment request into (destination, description).

    Returns (None, None) when there is no payment request, which is the
    case for keysend payments and legacy records.
    """
    if not payment_request:
        return None, None

    decoded = decode(payment_request)

    return decoded.destination, decoded.description


def pre_process_payments(payments: List[Payment],
                         decode: DecodePaymentRequest) -> List[PaymentInfo]:
    """
    Resolve the destination, description and settle time of each payment.

    The htlc route is preferred for the destination because it needs no
    decoding and is present for keysend payments. The payment request is
    the fallback for payments without htlcs.
    """
    processed = []

    for payment in payments:
        pay_req_destination, description = payment_request_details(
            payment.payment_request, decode
        )

        try:
            destination = payment_htlc_destination(payment)
        except NoHopsError:
            destination = None

        if destination is None:
            destination = pay_req_destination

        settle_time = 0
        if payment.status == PaymentStatus.SUCCEEDED:
            latest_ns = 0
            for htlc in payment.htlcs:
                if htlc.status != HtlcStatus.SUCCEEDED:
                    continue
                latest_ns = max(latest_ns, htlc.resolve_time_ns)
            settle_time = latest_ns // NANOSECONDS_PER_SECOND

        processed.append(PaymentInfo(
            payment=payment,
            destination=destination,
            description=description,
            settle_time=settle_time,
        ))

    return processed


def filter_payments(start: int, end: int,
                    payments: List[PaymentInfo]) -> List[PaymentInfo]:
    """Get the successful payments that settled in [start, end)."""
    return [
        payment for payment in payments
        if payment.status == PaymentStatus.SUCCEEDED
        and in_range(payment.settle_time, start, end)
    ]


def sanity_check_duplicates(payments: List[PaymentInfo]) -> None:
    """
    Fail on payments sharing a payment hash.

    Legacy nodes allowed several payments to one hash; we can not tell
    those apart for accounting purposes.

    Raises:
        DuplicatesNotSupportedError
    """
    seen = set()

    for payment in payments:
        if payment.payment_hash in seen:
            raise DuplicatesNotSupportedError(payment.payment_hash)
        seen.add(payment.payment_hash)
