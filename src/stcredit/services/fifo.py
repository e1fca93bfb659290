"""FIFO allocation of stock exits against note balances."""

import csv
import io
import logging
from typing import Iterable, Mapping, Optional, Protocol

from stcredit.models import AllocationResult, AllocationRow, Competencia, ConsumptionStatus
from stcredit.normalizer import normalize_note_number, note_sort_key
from stcredit.repositories.base import BalanceSnapshot

logger = logging.getLogger(__name__)


class BalanceSource(Protocol):
    """Anything carrying a guia id, note number and current balance."""

    @property
    def guia_id(self) -> str: ...

    @property
    def note_number(self) -> str: ...

    current_balance: float


def _fifo_order_key(row: BalanceSource) -> tuple:
    return (
        note_sort_key(row.note_number),
        normalize_note_number(row.note_number),
        row.guia_id,
    )


def _consumption_status(consumed: float, closing: float) -> ConsumptionStatus:
    if closing <= 0:
        return "UTILIZADO"
    if consumed > 0:
        return "PARCIAL"
    return "PENDENTE"


def allocate_fifo(total_exits: float, rows: Iterable[BalanceSource]) -> AllocationResult:
    """
    Consume total exits oldest note first.

    Notes are ordered by numeric note number (ties broken by normalized
    number, then guia id), so the same inputs in any order give the same
    result. Each note consumes min(remaining, current balance); a note whose
    current balance is not positive consumes nothing.
    """
    ordered = sorted(rows, key=_fifo_order_key)

    remaining = total_exits
    allocated: list[AllocationRow] = []
    total_consumed = 0.0

    for row in ordered:
        opening = row.current_balance
        if remaining <= 0 or opening <= 0:
            consumed = 0.0
        else:
            consumed = min(remaining, opening)
            remaining -= consumed
            total_consumed += consumed

        closing = opening - consumed
        allocated.append(
            AllocationRow(
                guia_id=row.guia_id,
                note_number=row.note_number,
                opening=opening,
                consumed=consumed,
                closing=closing,
                status=_consumption_status(consumed, closing),
            )
        )

    fully_consumed = sum(1 for r in allocated if r.status == "UTILIZADO")
    unallocated = max(remaining, 0.0)
    if unallocated > 0:
        logger.warning(
            "%.3f exits left unallocated after consuming %d notes",
            unallocated,
            len(allocated),
        )

    return AllocationResult(
        total_exits=total_exits,
        rows=allocated,
        fully_consumed_count=fully_consumed,
        total_consumed=total_consumed,
        unallocated_exits=unallocated,
    )


def to_snapshots(
    result: AllocationResult,
    company_id: str,
    competencia: Competencia,
    opening_balances: Optional[Mapping[str, float]] = None,
) -> list[BalanceSnapshot]:
    """Map an allocation to the balance snapshots saved for the period."""
    openings = opening_balances or {}
    return [
        BalanceSnapshot(
            company_id=company_id,
            guia_id=row.guia_id,
            note_number=row.note_number,
            competencia_ano=competencia.year,
            competencia_mes=competencia.month,
            saldo_remanescente=row.closing,
            quantidade_original=row.opening,
            quantidade_consumida=row.consumed,
            saldo_anterior=openings.get(row.guia_id, 0.0),
            confirmed=True,
        )
        for row in result.rows
    ]


def allocation_to_csv(result: AllocationResult) -> str:
    """Render an allocation as semicolon-delimited CSV text."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=";", lineterminator="\n")
    writer.writerow(["guia_id", "numero_nota", "saldo_inicial", "consumido", "saldo_final", "status"])
    for row in result.rows:
        writer.writerow(
            [
                row.guia_id,
                row.note_number,
                _format_qty(row.opening),
                _format_qty(row.consumed),
                _format_qty(row.closing),
                row.status,
            ]
        )
    return buffer.getvalue()


def _format_qty(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return (text or "0").replace(".", ",")
