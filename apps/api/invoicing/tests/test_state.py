from decimal import Decimal

import pytest

from apps.api.invoicing import state
from apps.api.invoicing.models import InvoiceStatus, ShipperStatus
from apps.api.invoicing.state import (
    InvalidTransition,
    InvariantViolation,
    NotAcknowledged,
    Unauthorized,
    assert_transition,
    can_transition,
    check_invariants,
)
from apps.api.invoicing.tests.conftest import NOW, make_invoice


ACCOUNTANT = {"uid": "acct1", "role": "accounting"}


def test_status_transitions_follow_the_billing_lifecycle():
    assert can_transition(InvoiceStatus.DRAFT, InvoiceStatus.SENT)
    assert can_transition(InvoiceStatus.SENT, InvoiceStatus.APPROVED)
    assert can_transition(InvoiceStatus.SENT, InvoiceStatus.PAID)
    assert can_transition(InvoiceStatus.APPROVED, InvoiceStatus.PAID)

    assert not can_transition(InvoiceStatus.DRAFT, InvoiceStatus.PAID)
    assert not can_transition(InvoiceStatus.PAID, InvoiceStatus.SENT)
    assert not can_transition(InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


def test_assert_transition_raises_invalid_transition():
    with pytest.raises(InvalidTransition):
        assert_transition(make_invoice(status=InvoiceStatus.DRAFT), InvoiceStatus.PAID)


def test_send_only_from_draft():
    draft = make_invoice(status=InvoiceStatus.DRAFT)
    sent = state.send(draft, now=NOW + 5)
    assert sent.status == InvoiceStatus.SENT
    assert sent.sent_at == NOW + 5
    assert draft.status == InvoiceStatus.DRAFT

    with pytest.raises(InvalidTransition):
        state.send(sent, now=NOW + 6)


def test_resend_keeps_status_and_refreshes_sent_at():
    inv = make_invoice(status=InvoiceStatus.APPROVED)
    resent = state.resend(inv, now=NOW + 100)
    assert resent.status == InvoiceStatus.APPROVED
    assert resent.sent_at == NOW + 100

    with pytest.raises(InvalidTransition):
        state.resend(make_invoice(status=InvoiceStatus.DRAFT), now=NOW)


def test_view_is_idempotent():
    inv = make_invoice()
    viewed, changed = state.mark_viewed(inv, now=NOW + 1)
    assert changed is True
    assert viewed.shipper_status == ShipperStatus.VIEWED
    assert viewed.viewed_at == NOW + 1

    again, changed = state.mark_viewed(viewed, now=NOW + 2)
    assert changed is False
    assert again is viewed
    assert again.viewed_at == NOW + 1


def test_shipper_cannot_respond_to_draft():
    draft = make_invoice(status=InvoiceStatus.DRAFT)
    with pytest.raises(InvalidTransition):
        state.mark_viewed(draft, now=NOW)
    with pytest.raises(InvalidTransition):
        state.acknowledge(draft, now=NOW)


def test_acknowledge_from_pending_stamps_viewed_at():
    acked = state.acknowledge(make_invoice(), now=NOW + 3)
    assert acked.shipper_status == ShipperStatus.ACKNOWLEDGED
    assert acked.acknowledged_at == NOW + 3
    assert acked.viewed_at == NOW + 3

    with pytest.raises(InvalidTransition):
        state.acknowledge(acked, now=NOW + 4)


def test_mark_paid_requires_acknowledgement():
    with pytest.raises(NotAcknowledged):
        state.mark_paid(make_invoice(shipper_status=ShipperStatus.VIEWED), now=NOW, confirmed_by="acct1")


def test_mark_paid_sets_both_axes():
    inv = make_invoice(shipper_status=ShipperStatus.ACKNOWLEDGED, acknowledged_at=NOW)
    paid = state.mark_paid(inv, now=NOW + 10, confirmed_by="acct1", payment_method="NEFT")
    assert paid.status == InvoiceStatus.PAID
    assert paid.shipper_status == ShipperStatus.PAID
    assert paid.paid_at == NOW + 10
    assert paid.paid_amount == Decimal("53100.00")
    assert paid.paid_confirmed_by == "acct1"

    with pytest.raises(InvalidTransition):
        state.mark_paid(paid, now=NOW + 11, confirmed_by="acct1")


def test_mark_paid_from_draft_is_invalid():
    with pytest.raises(InvalidTransition):
        state.mark_paid(make_invoice(status=InvoiceStatus.DRAFT), now=NOW, confirmed_by="acct1")


def test_payment_authorization_requires_explicit_confirmation():
    inv = make_invoice()
    with pytest.raises(Unauthorized):
        state.assert_payment_authorized(inv, actor=ACCOUNTANT, confirm=False, confirmed_by="acct1")
    with pytest.raises(Unauthorized):
        state.assert_payment_authorized(inv, actor=ACCOUNTANT, confirm=True, confirmed_by="someone-else")
    with pytest.raises(Unauthorized):
        state.assert_payment_authorized(
            inv, actor={"uid": "shipper1", "role": "shipper"}, confirm=True, confirmed_by="shipper1"
        )
    state.assert_payment_authorized(inv, actor=ACCOUNTANT, confirm=True, confirmed_by="acct1")


def test_overdue_is_derived_from_sent_and_due_date():
    past_due = make_invoice(due_date=NOW - 1)
    assert state.is_overdue(past_due, NOW)
    assert state.display_status(past_due, NOW) == InvoiceStatus.OVERDUE
    assert past_due.status == InvoiceStatus.SENT

    approved = make_invoice(status=InvoiceStatus.APPROVED, due_date=NOW - 1)
    assert not state.is_overdue(approved, NOW)
    assert not state.is_overdue(make_invoice(due_date=None), NOW)


def test_status_filter_matches_either_axis_and_overdue():
    inv = make_invoice(shipper_status=ShipperStatus.VIEWED, due_date=NOW - 1)
    assert state.matches_status_filter(inv, None, NOW)
    assert state.matches_status_filter(inv, "sent", NOW)
    assert state.matches_status_filter(inv, "viewed", NOW)
    assert state.matches_status_filter(inv, "overdue", NOW)
    assert not state.matches_status_filter(inv, "paid", NOW)


def test_invariants_reject_inconsistent_records():
    with pytest.raises(InvariantViolation):
        check_invariants(make_invoice(status=InvoiceStatus.PAID, shipper_status=ShipperStatus.ACKNOWLEDGED))
    with pytest.raises(InvariantViolation):
        check_invariants(make_invoice(shipper_status=ShipperStatus.COUNTERED))
    with pytest.raises(InvariantViolation):
        check_invariants(make_invoice(status=InvoiceStatus.DRAFT, shipper_status=ShipperStatus.VIEWED))
    with pytest.raises(InvariantViolation):
        check_invariants(make_invoice(total_amount=Decimal("53000")))
    with pytest.raises(InvariantViolation):
        check_invariants(make_invoice(status=InvoiceStatus.OVERDUE))
