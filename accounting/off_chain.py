"""
Off chain report assembly.

Invoices, payments and forwards are fetched from an OffChainSource, filtered
and converted to ledger entries. Payments made to our own node (circular
rebalances) are detected so that both the payment and the invoice it paid
are recorded with circular entry types.
"""

from typing import Dict, List, TYPE_CHECKING

from .entries import (
    EntryUtils,
    LedgerEntry,
    forward_entries,
    invoice_entry,
    payment_entries,
)
from .errors import DifferentDuplicatesError
from .filters import (
    PaymentInfo,
    filter_invoices,
    filter_payments,
    pre_process_payments,
    sanity_check_duplicates,
)
from .records import ForwardingEvent, Invoice
from .sources import OffChainSource

if TYPE_CHECKING:
    from pyln.client import Plugin


def get_circular_payments(own_pubkey: str, payments: List[PaymentInfo],
                          plugin: 'Plugin') -> Dict[str, bool]:
    """
    Get the payment hashes of payments made to our own node.

    This runs over all payments, not only settled ones: we may have settled
    the invoice of a circular payment while the payment itself is still
    resolving back to us.

    Payments with an unknown destination are skipped with a warning, so
    old circular payments on legacy nodes may go undetected.

    Duplicate payment hashes are allowed here (legacy nodes have them),
    but duplicates must agree on whether they were paid to us, otherwise a
    lookup by hash would be wrong for one of them.

    Raises:
        DifferentDuplicatesError
    """
    to_self_by_hash: Dict[str, bool] = {}

    for payment in payments:
        if payment.destination is None:
            plugin.log(
                f"payment {payment.payment_hash} destination unknown",
                level='warn'
            )
            continue

        to_self = payment.destination == own_pubkey

        previous = to_self_by_hash.get(payment.payment_hash)
        if previous is not None and previous != to_self:
            raise DifferentDuplicatesError(payment.payment_hash)

        to_self_by_hash[payment.payment_hash] = to_self

    return {h: True for h, to_self in to_self_by_hash.items() if to_self}


def off_chain_entries(invoices: List[Invoice], payments: List[PaymentInfo],
                      circular: Dict[str, bool],
                      forwards: List[ForwardingEvent],
                      utils: EntryUtils) -> List[LedgerEntry]:
    """
    Convert filtered off chain records into entries.

    Every record passed in is expected to lie in the report range. The
    circular map may cover payments outside of it.
    """
    entries: List[LedgerEntry] = []

    for invoice in invoices:
        entries.append(invoice_entry(
            invoice, circular.get(invoice.payment_hash, False), utils
        ))

    for payment in payments:
        entries.extend(payment_entries(
            payment, circular.get(payment.payment_hash, False), utils
        ))

    for forward in forwards:
        entries.extend(forward_entries(forward, utils))

    return entries


class OffChainReporter:
    """Produces the off chain part of a report."""

    def __init__(self, plugin: 'Plugin', source: OffChainSource):
        self.plugin = plugin
        self.source = source

    def report(self, start: int, end: int,
               utils: EntryUtils) -> List[LedgerEntry]:
        invoices = self.source.list_invoices()
        filtered_invoices = filter_invoices(start, end, invoices)

        self.plugin.log(
            f"Retrieved: {len(invoices)} invoices, "
            f"{len(filtered_invoices)} filtered",
            level='info'
        )

        payments = self.source.list_payments()
        pre_processed = pre_process_payments(
            payments, self.source.decode_payment_request
        )

        circular = get_circular_payments(
            self.source.own_pubkey(), pre_processed, self.plugin
        )

        filtered_payments = filter_payments(start, end, pre_processed)
        sanity_check_duplicates(filtered_payments)

        self.plugin.log(
            f"Retrieved: {len(payments)} payments, "
            f"{len(filtered_payments)} filtered, {len(circular)} circular",
            level='info'
        )

        # Forwards are already scoped to the range by the source
        forwards = self.source.list_forwards(start, end)

        self.plugin.log(f"Retrieved: {len(forwards)} forwards", level='info')

        return off_chain_entries(
            filtered_invoices, filtered_payments, circular, forwards, utils
        )
