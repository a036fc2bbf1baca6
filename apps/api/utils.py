from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser


def parse_any_date(value: Any) -> Optional[datetime]:
    """Best-effort date parser that returns naive UTC datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            try:
                dt = parser.parse(text, fuzzy=True)
            except (ValueError, OverflowError):
                return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_epoch(value: Any) -> Optional[float]:
    """Epoch seconds for numbers, datetimes and date strings; None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    dt = parse_any_date(value)
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc).timestamp()


def days_from_payment_terms(payment_terms: Optional[str]) -> Optional[int]:
    """Parse payment terms string into days.

    Supports:
    - "Net 30" / NET45 / net-60 (and NET<1..120>)
    - "30 Days" / "45" (any integer 1..120)
    - "Due on receipt" / "Immediate" -> 0
    """
    if not payment_terms:
        return None
    s = str(payment_terms).strip().lower()
    if not s:
        return None

    if "receipt" in s or "immediate" in s:
        return 0

    compact = re.sub(r"[^a-z0-9]+", "", s)
    if compact.startswith("net"):
        rest = compact[3:]
        days = int(rest) if rest.isdigit() else None
    else:
        m = re.search(r"\d+", s)
        days = int(m.group(0)) if m else None

    if days is None:
        return None
    if days < 0 or days > 120:
        raise ValueError("Invalid payment terms: must be between 0 and 120 days")
    return days


def format_invoice_number(*, when: datetime, sequence: int) -> str:
    """INV-YYYYMM-NNNNN, e.g. INV-202612-00042."""
    return f"INV-{when.year}{when.month:02d}-{int(sequence):05d}"
