from decimal import Decimal

import pytest

from apps.api.invoicing import counter as counter_flow
from apps.api.invoicing.models import CounterDecision, CounterParty, InvoiceStatus, ShipperStatus
from apps.api.invoicing.service import (
    advance_split,
    carrier_view,
    compute_breakdown,
    compute_summary,
    shipper_breakdown,
    shipper_view,
    view_for_role,
)
from apps.api.settings import settings
from apps.api.invoicing.tests.conftest import NOW, make_invoice


def test_advance_split_from_percent():
    inv = make_invoice(subtotal="84745.76", tax_amount="15254.24", advance_payment_percent=30)
    assert inv.total_amount == Decimal("100000.00")
    advance, balance = advance_split(inv)
    assert advance == Decimal("30000.00")
    assert balance == Decimal("70000.00")


def test_explicit_advance_wins_over_percent():
    inv = make_invoice(advance_payment_percent=30, advance_payment_amount="20000", balance_on_delivery="33100")
    assert advance_split(inv) == (Decimal("20000.00"), Decimal("33100.00"))


def test_margin_and_payout_from_posted_price_and_winning_bid():
    inv = make_invoice(admin_posted_price="50000", winning_bid_amount="42000")
    b = compute_breakdown(inv)
    assert b.admin_posted_price == Decimal("50000.00")
    assert b.winning_bid == Decimal("42000.00")
    assert b.platform_margin == Decimal("8000.00")
    assert b.carrier_payout == Decimal("42000.00")
    assert b.anomalies == []


def test_zero_values_fall_through_to_next_source():
    inv = make_invoice(
        admin_posted_price="0",
        winning_bid_amount="0",
        estimated_carrier_payout="40000",
        platform_margin="0",
    )
    b = compute_breakdown(inv, {"load_id": "LD-1", "admin_final_price": "48000"})
    assert b.admin_posted_price == Decimal("48000.00")
    assert b.winning_bid == Decimal("40000.00")
    assert b.platform_margin == Decimal("8000.00")
    assert b.carrier_payout == Decimal("40000.00")


def test_posted_price_falls_back_to_subtotal():
    b = compute_breakdown(make_invoice(), None)
    assert b.admin_posted_price == Decimal("45000.00")
    assert b.winning_bid == Decimal("0")
    assert b.platform_margin == Decimal("45000.00")
    assert b.carrier_payout is None


def test_negative_margin_is_not_available_and_reported():
    inv = make_invoice(admin_posted_price="40000", winning_bid_amount="42000")
    b = compute_breakdown(inv)
    assert b.platform_margin is None
    assert b.carrier_payout == Decimal("42000.00")
    assert [a.field for a in b.anomalies] == ["platform_margin"]
    assert b.anomalies[0].value == Decimal("-2000.00")


def test_shipper_outputs_hide_admin_pricing():
    inv = make_invoice(admin_posted_price="50000", winning_bid_amount="42000", platform_margin="8000")
    view = shipper_view(inv, now=NOW)
    for field in ("admin_posted_price", "winning_bid_amount", "platform_margin", "estimated_carrier_payout", "admin_id"):
        assert field not in view
    assert view["total_amount"] == "53100.00"

    dumped = shipper_breakdown(inv).model_dump()
    assert "platform_margin" not in dumped
    assert "winning_bid" not in dumped


def test_carrier_view_shows_payout_only():
    inv = make_invoice(admin_posted_price="50000", winning_bid_amount="42000")
    view = carrier_view(inv, now=NOW)
    assert view["carrier_payout"] == "42000.00"
    assert "total_amount" not in view
    assert "admin_posted_price" not in view


def test_view_for_role_marks_overdue_for_display_only():
    inv = make_invoice(due_date=NOW - 60)
    view = view_for_role(inv, "admin", now=NOW)
    assert view["status"] == "sent"
    assert view["display_status"] == "overdue"
    assert view["is_overdue"] is True
    assert "platform_margin" in view


def test_compute_summary_admin_scope():
    invoices = [
        make_invoice("d1", status=InvoiceStatus.DRAFT),
        make_invoice("s1", due_date=NOW + 10),
        make_invoice("s2", due_date=NOW - 10),
        make_invoice(
            "p1",
            status=InvoiceStatus.PAID,
            shipper_status=ShipperStatus.PAID,
            admin_posted_price="50000",
            winning_bid_amount="42000",
            paid_amount="53100",
        ),
    ]
    s = compute_summary(invoices=invoices, role_scope="admin", now=NOW)
    assert s.invoice_count == 3
    assert s.paid_invoice_count == 1
    assert s.invoiced_amount == Decimal("159300.00")
    assert s.collected_amount == Decimal("53100.00")
    assert s.outstanding_amount == Decimal("106200.00")
    assert s.overdue_invoice_count == 1
    assert s.overdue_amount == Decimal("53100.00")
    assert s.platform_margin_total == Decimal("8000.00")
    assert s.carrier_payout_total == Decimal("42000.00")


def test_compute_summary_shipper_scope_hides_margin():
    s = compute_summary(invoices=[make_invoice("s1")], role_scope="shipper", now=NOW)
    assert s.invoice_count == 1
    assert s.platform_margin_total is None
    assert s.carrier_payout_total is None


@pytest.mark.parametrize(
    "percent, advance, balance, expected",
    [
        (30, None, None, ("15930.00", "37170.00")),
        (30, "0", "53100", ("15930.00", "37170.00")),
        (30, None, "40000", ("15930.00", "37170.00")),
        (0, "20000", "33100", ("20000.00", "33100.00")),
        (25, "20000", None, ("20000.00", "33100.00")),
        (0, "0", "0", ("0.00", "53100.00")),
    ],
)
def test_advance_and_balance_always_sum_to_total(percent, advance, balance, expected):
    inv = make_invoice(advance_payment_percent=percent, advance_payment_amount=advance, balance_on_delivery=balance)
    resolved = advance_split(inv)
    assert resolved == (Decimal(expected[0]), Decimal(expected[1]))
    assert sum(resolved) == inv.total_amount

    b = compute_breakdown(inv)
    assert b.advance_amount + b.balance_due == b.total_amount
    s = shipper_breakdown(inv)
    assert (s.advance_amount, s.balance_due) == (b.advance_amount, b.balance_due)


@pytest.mark.parametrize(
    "percent, advance, balance",
    [
        (30, "15930", "37170"),
        (0, "20000", "33100"),
        (30, "0", "53100"),
        (30, None, "37170"),
        (30, None, None),
    ],
)
def test_split_still_sums_after_accepted_counter(percent, advance, balance):
    inv = make_invoice(advance_payment_percent=percent, advance_payment_amount=advance, balance_on_delivery=balance)
    inv, _ = counter_flow.propose(
        inv,
        counter_id="c1",
        amount="38000",
        reason="",
        proposed_by=CounterParty.SHIPPER,
        proposed_by_uid="shipper1",
        now=NOW,
    )
    inv, _ = counter_flow.resolve(
        inv, counter_id="c1", decision=CounterDecision.ACCEPTED, response_note=None, responder_uid="admin1", now=NOW + 1
    )
    advance_amount, balance_due = advance_split(inv)
    assert inv.total_amount == Decimal("38000.00")
    assert advance_amount + balance_due == inv.total_amount


def test_summary_margin_uses_linked_load_like_breakdown():
    inv = make_invoice(
        "p1",
        status=InvoiceStatus.PAID,
        shipper_status=ShipperStatus.PAID,
        winning_bid_amount="42000",
        paid_amount="53100",
    )
    load = {"load_id": "LD-1", "admin_final_price": "50000"}

    breakdown = compute_breakdown(inv, load)
    summary = compute_summary(invoices=[inv], role_scope="admin", loads={"LD-1": load}, now=NOW)
    assert breakdown.platform_margin == Decimal("8000.00")
    assert summary.platform_margin_total == breakdown.platform_margin
    assert summary.carrier_payout_total == breakdown.carrier_payout


def test_configured_accounting_role_gets_back_office_view(monkeypatch):
    monkeypatch.setattr(settings, "ACCOUNTING_ROLES", "finance")
    inv = make_invoice(admin_posted_price="50000", winning_bid_amount="42000")

    view = view_for_role(inv, "finance", now=NOW)
    assert view["admin_posted_price"] == "50000.00"
    assert "is_overdue" in view
    assert "admin_posted_price" in view_for_role(inv, "admin", now=NOW)

    s = compute_summary(invoices=[inv], role_scope="finance", now=NOW)
    assert s.platform_margin_total is not None
