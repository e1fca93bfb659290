"""Parser for the "Movimento Individual do Produto" stock report."""

import csv
import io
import logging
import math
import re
from datetime import date, datetime
from typing import List, Optional

from stcredit.exceptions import StockMovementParseError
from stcredit.models import StockMovementRecord, StockMovementReport

logger = logging.getLogger(__name__)

COL_DATE = 0
COL_TOTALS_LABEL = 1
COL_DOCUMENT = 5
COL_ENTRY_QTY = 10
COL_ENTRY_UNIT = 12
COL_ENTRY_TOTAL = 16
COL_EXIT_QTY = 18
COL_EXIT_UNIT = 20
COL_EXIT_TOTAL = 24
COL_BALANCE_QTY = 27
COL_AVERAGE_VALUE = 30
COL_BALANCE_VALUE = 35

COL_PERIOD_END = 10

_DATE_PATTERN = re.compile(r"^\d{2}/\d{2}/\d{4}$")
_NF_PATTERN = re.compile(r"NF\s*(\d+)", re.IGNORECASE)

OPENING_MARKER = "saldo anterior"
SKIPPED_MARKERS = ("transporte da folha anterior", "totais")


def _cell(cols: List[str], index: int) -> str:
    if index < len(cols):
        return cols[index].strip()
    return ""


def _number(cols: List[str], index: int, line: int) -> float:
    """
    Parse a Brazilian-formatted cell ("1.919,000", "127.702,48").

    Dots are thousands separators in this report; the comma is the decimal mark.
    """
    raw = _cell(cols, index)
    if not raw:
        return 0.0
    cleaned = raw.replace(".", "").replace(",", ".")
    try:
        value = float(cleaned)
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        raise StockMovementParseError(
            "INVALID_NUMBER",
            f"Invalid number {raw!r} in column {index} at line {line}",
            line=line,
        )
    return value


def _date(raw: str, line: int) -> date:
    try:
        return datetime.strptime(raw, "%d/%m/%Y").date()
    except ValueError:
        raise StockMovementParseError(
            "INVALID_DATE", f"Invalid date {raw!r} at line {line}", line=line
        ) from None


def extract_nf_number(document: str) -> Optional[str]:
    match = _NF_PATTERN.search(document)
    return match.group(1) if match else None


def detect_delimiter(text: str) -> str:
    return ";" if ";" in text else ","


def parse_stock_movement_csv(text: str) -> StockMovementReport:
    """
    Parse a stock movement report into movements and period aggregates.

    The whole report is rejected on the first bad cell; no partial result is
    returned. Line numbers in errors are 1-based.

    Raises:
        StockMovementParseError: missing header row, bad number or bad date.
    """
    delimiter = detect_delimiter(text)
    rows = list(csv.reader(io.StringIO(text), delimiter=delimiter))

    def meta(row_index: int, col_index: int) -> str:
        if row_index < len(rows):
            return _cell(rows[row_index], col_index)
        return ""

    company = meta(0, COL_DOCUMENT)
    period_start = meta(1, COL_DOCUMENT)
    period_end = meta(1, COL_PERIOD_END)
    period = f"{period_start} até {period_end}" if period_start or period_end else ""
    product = meta(2, COL_DOCUMENT)

    header_index = next(
        (i for i, cols in enumerate(rows) if _cell(cols, COL_DATE).lower() == "data"),
        None,
    )
    if header_index is None:
        raise StockMovementParseError(
            "MISSING_HEADER", "Stock movement report has no 'Data' header row"
        )

    report = StockMovementReport(company=company, product=product, period=period)
    movements: List[StockMovementRecord] = []

    for index in range(header_index + 1, len(rows)):
        cols = rows[index]
        line = index + 1
        raw_date = _cell(cols, COL_DATE)
        document = _cell(cols, COL_DOCUMENT)
        if not raw_date and not document:
            continue

        lowered = document.lower()
        if OPENING_MARKER in lowered:
            report.opening_quantity = _number(cols, COL_BALANCE_QTY, line)
            report.opening_average_value = _number(cols, COL_AVERAGE_VALUE, line)
            report.opening_total_value = _number(cols, COL_BALANCE_VALUE, line)
            continue
        if any(marker in lowered for marker in SKIPPED_MARKERS):
            continue
        if _cell(cols, COL_TOTALS_LABEL).lower() == "totais":
            continue
        if not _DATE_PATTERN.match(raw_date):
            continue

        moved_on = _date(raw_date, line)
        nf_number = extract_nf_number(document)
        running = _number(cols, COL_BALANCE_QTY, line)
        average = _number(cols, COL_AVERAGE_VALUE, line)
        balance_value = _number(cols, COL_BALANCE_VALUE, line)

        for kind, qty_col, unit_col, total_col in (
            ("entrada", COL_ENTRY_QTY, COL_ENTRY_UNIT, COL_ENTRY_TOTAL),
            ("saida", COL_EXIT_QTY, COL_EXIT_UNIT, COL_EXIT_TOTAL),
        ):
            quantity = _number(cols, qty_col, line)
            unit_value = _number(cols, unit_col, line)
            total_value = _number(cols, total_col, line)
            if quantity <= 0:
                continue
            movements.append(
                StockMovementRecord(
                    date=moved_on,
                    document=document,
                    nf_number=nf_number,
                    type=kind,
                    quantity=quantity,
                    unit_value=unit_value,
                    total_value=total_value,
                    running_balance=running,
                    average_value=average,
                    balance_value=balance_value,
                )
            )

    entries = [m for m in movements if m.type == "entrada"]
    exits = [m for m in movements if m.type == "saida"]
    report.movements = movements
    report.total_entries = sum(m.quantity for m in entries)
    report.total_exits = sum(m.quantity for m in exits)
    report.total_entry_value = sum(m.total_value for m in entries)
    report.total_exit_value = sum(m.total_value for m in exits)

    logger.info(
        "parsed stock report for %r: %d movements, %.3f entries, %.3f exits",
        product,
        len(movements),
        report.total_entries,
        report.total_exits,
    )
    return report


def parse_stock_movement_bytes(data: bytes, encoding: str = "utf-8") -> StockMovementReport:
    """Decode an uploaded report and parse it."""
    codec = "utf-8-sig" if encoding.lower().replace("_", "-") == "utf-8" else encoding
    try:
        text = data.decode(codec)
    except (UnicodeDecodeError, LookupError) as exc:
        raise StockMovementParseError(
            "INVALID_ENCODING", f"Could not decode stock report as {encoding}: {exc}"
        ) from exc
    return parse_stock_movement_csv(text)
