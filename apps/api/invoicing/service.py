from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..settings import settings
from .models import (
    ADMIN_ONLY_FIELDS,
    CarrierBreakdown,
    DataAnomaly,
    FinancialBreakdown,
    InvoiceRecord,
    InvoiceStatus,
    RevenueSummaryResponse,
    ShipperBreakdown,
)
from .money import ZERO, first_present, optional_money, percent_of, quantize
from .state import display_status, is_overdue


logger = logging.getLogger(__name__)


def _now() -> float:
    return float(time.time())


def _load_admin_price(load: Optional[Dict[str, Any]]) -> Optional[Decimal]:
    if not isinstance(load, dict):
        return None
    raw = load.get("admin_final_price")
    if raw is None:
        raw = load.get("adminFinalPrice")
    try:
        return optional_money(raw)
    except ValueError:
        logger.warning("Ignoring unparseable admin_final_price on load %s: %r", load.get("load_id"), raw)
        return None


def _available(
    invoice: InvoiceRecord, field: str, value: Decimal, anomalies: List[DataAnomaly]
) -> Optional[Decimal]:
    if value > 0:
        return value
    if value < 0:
        anomaly = DataAnomaly(
            field=field,
            value=value,
            message=f"{field} resolved to a negative amount; check pricing data",
        )
        anomalies.append(anomaly)
        logger.warning(
            "Data anomaly on invoice %s: %s=%s", invoice.invoice_number, field, value
        )
    return None


def advance_split(invoice: InvoiceRecord) -> tuple[Decimal, Decimal]:
    """Resolve (advance_amount, balance_due) for an invoice.

    The stored balance is only used together with a stored advance; otherwise
    the balance is whatever the resolved advance leaves of the total.
    """
    total = invoice.total_amount
    advance = first_present(invoice.advance_payment_amount)
    balance = first_present(invoice.balance_on_delivery)
    if advance is not None and balance is not None:
        return advance, balance
    if advance is None:
        advance = percent_of(total, invoice.advance_payment_percent)
    return advance, quantize(total - advance)


def compute_breakdown(invoice: InvoiceRecord, load: Optional[Dict[str, Any]] = None) -> FinancialBreakdown:
    """Derive margin, payout and the advance/balance split.

    Recomputed on every call from stored fields. For each output the first
    non-empty source wins (None and zero count as empty):

        admin_posted_price: invoice.admin_posted_price, load.admin_final_price, invoice.subtotal, 0
        winning_bid:        invoice.winning_bid_amount, invoice.estimated_carrier_payout, 0
        platform_margin:    invoice.platform_margin, admin_posted_price - winning_bid
        carrier_payout:     invoice.estimated_carrier_payout, winning_bid
        advance_amount:     invoice.advance_payment_amount, total * advance_percent / 100
        balance_due:        invoice.balance_on_delivery (only with a stored advance), total - advance_amount

    Margin and payout at or below zero are returned as None. Negative values are
    also reported in `anomalies`.
    """
    anomalies: List[DataAnomaly] = []

    admin_posted_price = first_present(
        invoice.admin_posted_price, _load_admin_price(load), invoice.subtotal
    ) or ZERO
    winning_bid = first_present(invoice.winning_bid_amount, invoice.estimated_carrier_payout) or ZERO

    margin = first_present(invoice.platform_margin)
    if margin is None:
        margin = quantize(admin_posted_price - winning_bid)
    payout = first_present(invoice.estimated_carrier_payout, winning_bid) or ZERO

    advance, balance = advance_split(invoice)

    return FinancialBreakdown(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        currency=invoice.currency,
        subtotal=invoice.subtotal,
        tax_percent=invoice.tax_percent,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
        admin_posted_price=admin_posted_price,
        winning_bid=winning_bid,
        platform_margin=_available(invoice, "platform_margin", margin, anomalies),
        carrier_payout=_available(invoice, "carrier_payout", payout, anomalies),
        advance_percent=invoice.advance_payment_percent,
        advance_amount=advance,
        balance_due=balance,
        anomalies=anomalies,
    )


def shipper_breakdown(invoice: InvoiceRecord) -> ShipperBreakdown:
    advance, balance = advance_split(invoice)
    return ShipperBreakdown(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        currency=invoice.currency,
        subtotal=invoice.subtotal,
        tax_percent=invoice.tax_percent,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
        advance_percent=invoice.advance_payment_percent,
        advance_amount=advance,
        balance_due=balance,
    )


def carrier_breakdown(invoice: InvoiceRecord, load: Optional[Dict[str, Any]] = None) -> CarrierBreakdown:
    full = compute_breakdown(invoice, load)
    return CarrierBreakdown(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        currency=invoice.currency,
        carrier_payout=full.carrier_payout,
        advance_percent=invoice.advance_payment_percent,
    )


def admin_view(invoice: InvoiceRecord, *, now: Optional[float] = None) -> Dict[str, Any]:
    now = float(_now() if now is None else now)
    out = invoice.model_dump(mode="json")
    out["display_status"] = display_status(invoice, now).value
    out["is_overdue"] = is_overdue(invoice, now)
    return out


def shipper_view(invoice: InvoiceRecord, *, now: Optional[float] = None) -> Dict[str, Any]:
    now = float(_now() if now is None else now)
    out = invoice.model_dump(mode="json", exclude=ADMIN_ONLY_FIELDS)
    out["display_status"] = display_status(invoice, now).value
    out["is_overdue"] = is_overdue(invoice, now)
    return out


_CARRIER_FIELDS = {
    "invoice_id",
    "invoice_number",
    "load_id",
    "carrier_id",
    "driver_id",
    "truck_id",
    "currency",
    "status",
    "shipper_status",
    "advance_payment_percent",
    "due_date",
    "sent_at",
    "paid_at",
    "created_at",
    "updated_at",
}


def carrier_view(invoice: InvoiceRecord, *, now: Optional[float] = None, load: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    now = float(_now() if now is None else now)
    out = invoice.model_dump(mode="json", include=_CARRIER_FIELDS)
    payout = carrier_breakdown(invoice, load).carrier_payout
    out["carrier_payout"] = str(payout) if payout is not None else None
    out["display_status"] = display_status(invoice, now).value
    return out


def view_for_role(invoice: InvoiceRecord, role: str, *, now: Optional[float] = None) -> Dict[str, Any]:
    role = str(role or "").strip().lower()
    if role in settings.back_office_roles:
        return admin_view(invoice, now=now)
    if role == "carrier":
        return carrier_view(invoice, now=now)
    return shipper_view(invoice, now=now)


def compute_summary(
    *,
    invoices: List[InvoiceRecord],
    role_scope: str,
    currency: str = "INR",
    loads: Optional[Dict[str, Dict[str, Any]]] = None,
    now: Optional[float] = None,
) -> RevenueSummaryResponse:
    """Role-scoped revenue totals. `loads` maps load_id to the linked load so
    margin totals resolve the same way as each invoice breakdown."""
    now = float(_now() if now is None else now)
    admin_scope = str(role_scope or "").strip().lower() in settings.back_office_roles

    invoiced = ZERO
    collected = ZERO
    outstanding = ZERO
    overdue_amount = ZERO
    margin_total = ZERO
    payout_total = ZERO

    invoice_count = 0
    paid_count = 0
    overdue_count = 0
    pending_counters = 0

    for inv in invoices:
        # Drafts have not been billed yet.
        if inv.status == InvoiceStatus.DRAFT:
            continue
        invoice_count += 1
        invoiced += inv.total_amount

        if inv.pending_counter is not None:
            pending_counters += 1

        if inv.status == InvoiceStatus.PAID:
            paid_count += 1
            collected += inv.paid_amount if inv.paid_amount is not None else inv.total_amount
            if admin_scope:
                b = compute_breakdown(inv, (loads or {}).get(inv.load_id))
                margin_total += b.platform_margin or ZERO
                payout_total += b.carrier_payout or ZERO
            continue

        outstanding += inv.total_amount
        if is_overdue(inv, now):
            overdue_count += 1
            overdue_amount += inv.total_amount

    return RevenueSummaryResponse(
        role_scope=role_scope,
        currency=currency,
        invoiced_amount=quantize(invoiced),
        collected_amount=quantize(collected),
        outstanding_amount=quantize(outstanding),
        overdue_amount=quantize(overdue_amount),
        invoice_count=invoice_count,
        paid_invoice_count=paid_count,
        overdue_invoice_count=overdue_count,
        pending_counter_count=pending_counters,
        platform_margin_total=quantize(margin_total) if admin_scope else None,
        carrier_payout_total=quantize(payout_total) if admin_scope else None,
    )
