"""Guia ↔ invoice join and per-unit ICMS enrichment."""

import logging
from typing import Iterable, Mapping, Optional

from stcredit.models import EnrichedRow, Invoice, PaymentRecord, compute_current_balance

logger = logging.getLogger(__name__)

NEGATIVE_CURRENT_BALANCE = "NEGATIVE_CURRENT_BALANCE"
UNMATCHED_INVOICE = "UNMATCHED_INVOICE"


def index_invoices(invoices: Iterable[Invoice]) -> dict[str, Invoice]:
    """Index invoices by normalized note number; the first occurrence wins."""
    index: dict[str, Invoice] = {}
    for invoice in invoices:
        key = invoice.normalized_number
        if key in index:
            logger.warning(
                "duplicate invoice for note %s (kept %s, ignored %s)",
                key,
                index[key].note_number,
                invoice.note_number,
            )
            continue
        index[key] = invoice
    return index


def _per_unit(total: float, quantity: float) -> float:
    if quantity > 0:
        return total / quantity
    return 0.0


def enrich_payment(
    payment: PaymentRecord,
    invoice: Optional[Invoice],
    opening_balance: float = 0.0,
) -> EnrichedRow:
    """Build the enriched row for one guia and its (optional) invoice."""
    quantity = invoice.quantity if invoice is not None else 0.0
    current_balance = compute_current_balance(quantity, opening_balance)

    warnings: list[str] = []
    if invoice is None:
        warnings.append(UNMATCHED_INVOICE)
    if current_balance < 0:
        warnings.append(NEGATIVE_CURRENT_BALANCE)

    return EnrichedRow(
        guia=payment,
        quantity=quantity,
        opening_balance=opening_balance,
        current_balance=current_balance,
        icms_proprio_total=payment.icms_proprio_credit,
        icms_st_total=payment.icms_st_credit,
        icms_proprio_per_unit=_per_unit(payment.icms_proprio_credit, quantity),
        icms_st_per_unit=_per_unit(payment.icms_st_credit, quantity),
        access_key=invoice.access_key if invoice is not None else None,
        matched=invoice is not None,
        warnings=warnings,
    )


def enrich_rows(
    payments: Iterable[PaymentRecord],
    invoices: Iterable[Invoice],
    opening_balances: Optional[Mapping[str, float]] = None,
) -> list[EnrichedRow]:
    """
    Join usable guias with their invoices.

    Invoices are indexed once by normalized note number. Guias that are not
    usable are skipped; usable guias without an invoice are still emitted with
    quantity 0. Output order follows the input guia order.

    Args:
        payments: Guia feed.
        invoices: Invoice feed.
        opening_balances: Known opening balance per guia id.

    Returns:
        One EnrichedRow per usable guia.
    """
    balances = opening_balances or {}
    index = index_invoices(invoices)

    rows: list[EnrichedRow] = []
    skipped = 0
    unmatched = 0
    for payment in payments:
        if not payment.is_usable:
            skipped += 1
            continue

        invoice = index.get(payment.normalized_number)
        if invoice is None:
            unmatched += 1
            logger.debug(
                "guia %s: no invoice for note %s", payment.guia_id, payment.note_number
            )

        rows.append(
            enrich_payment(payment, invoice, balances.get(payment.guia_id, 0.0))
        )

    logger.info(
        "enriched %d guias (%d unmatched, %d not usable)", len(rows), unmatched, skipped
    )
    return rows
