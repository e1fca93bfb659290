"""Note number canonicalization for cross-referencing guias and invoices."""

import math
import re
from typing import Optional

_DIGITS_PATTERN = re.compile(r"\d+")


def normalize_note_number(value: Optional[str]) -> str:
    """
    Build the join key for a note number.

    Trims whitespace and strips leading zeros so that "0000123" and "123"
    match. An all-zero number collapses to "0". The stored value keeps its
    original padding; only join keys go through here.
    """
    if value is None:
        return ""
    trimmed = str(value).strip()
    if not trimmed:
        return ""
    stripped = trimmed.lstrip("0")
    return stripped or "0"


def note_sort_key(value: Optional[str]) -> tuple[int, int, str]:
    """
    Numeric FIFO ordering key for a note number.

    Numeric notes sort by value; notes without digits sort after them by text.
    """
    normalized = normalize_note_number(value)
    if normalized.isdigit():
        return (0, int(normalized), normalized)

    match = _DIGITS_PATTERN.search(normalized)
    if match:
        return (0, int(match.group()), normalized)
    return (1, 0, normalized)


def parse_br_number(raw: object) -> float:
    """
    Parse a Brazilian-formatted number ("1.919,000", "127.702,48").

    Empty input is 0. Plain dotted decimals ("12.5") without a comma are read
    as-is. Raises ValueError for anything else.
    """
    if raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError(f"Invalid number: '{raw}'")
        return value

    text = str(raw).strip()
    if not text:
        return 0.0

    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        value = float(text)
    except ValueError:
        raise ValueError(f"Invalid number: '{raw}'") from None
    if not math.isfinite(value):
        raise ValueError(f"Invalid number: '{raw}'")
    return value
