from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: Any) -> Decimal:
    """Parse an amount into a 2-digit Decimal.

    Accepts Decimal, int, float and numeric strings ("53100", "53,100.50").
    Floats go through str() so 0.1 stays 0.10 instead of its binary expansion.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, int):
        d = Decimal(value)
    elif isinstance(value, float):
        d = Decimal(str(value))
    else:
        text = str(value or "").strip().replace(",", "")
        if not text:
            raise ValueError("Amount is required")
        try:
            d = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return quantize(d)


def optional_money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return to_money(value)


def is_empty(value: Optional[Decimal]) -> bool:
    return value is None or value == 0


def first_present(*values: Optional[Decimal]) -> Optional[Decimal]:
    for v in values:
        if not is_empty(v):
            return v
    return None


def percent_of(amount: Decimal, percent: Any) -> Decimal:
    return quantize(to_money(amount) * Decimal(str(percent)) / HUNDRED)


def tax_for(subtotal: Decimal, tax_percent: Any) -> Decimal:
    return percent_of(subtotal, tax_percent)


def split_tax_inclusive(total: Decimal, tax_percent: Any) -> tuple[Decimal, Decimal]:
    """Split a tax-inclusive total into (subtotal, tax).

    The tax is the remainder so subtotal + tax always equals the total exactly.
    """
    total = to_money(total)
    rate = HUNDRED + Decimal(str(tax_percent))
    subtotal = quantize(total * HUNDRED / rate)
    return subtotal, total - subtotal


def money_sum(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for v in values:
        total += to_money(v)
    return quantize(total)


def format_rupees(amount: Optional[Decimal]) -> str:
    """Format using Indian digit grouping: Rs. 1,00,000.00"""
    if amount is None:
        return "N/A"
    amount = to_money(amount)
    sign = "-" if amount < 0 else ""
    whole, frac = f"{abs(amount):.2f}".split(".")
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])
    return f"{sign}Rs. {whole}.{frac}"
