from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from ..settings import settings
from .models import (
    CounterOffer,
    CounterOfferStatus,
    InvoiceRecord,
    InvoiceStatus,
    ShipperStatus,
)
from .money import to_money


class InvoiceStateError(ValueError):
    code = "invoice_state_error"

    def __init__(self, message: str, invoice: Optional[InvoiceRecord] = None):
        super().__init__(message)
        self.invoice = invoice

    def detail(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "message": str(self)}
        if self.invoice is not None:
            out["invoice_id"] = self.invoice.invoice_id
            out["status"] = self.invoice.status.value
            out["shipper_status"] = self.invoice.shipper_status.value
        return out


class InvalidTransition(InvoiceStateError):
    code = "invalid_transition"


class CounterAlreadyPending(InvoiceStateError):
    code = "counter_already_pending"

    def __init__(self, message: str, invoice: InvoiceRecord, pending: CounterOffer):
        super().__init__(message, invoice)
        self.pending = pending

    def detail(self) -> Dict[str, Any]:
        out = super().detail()
        out["pending_counter"] = self.pending.model_dump(mode="json")
        return out


class NotAcknowledged(InvoiceStateError):
    code = "not_acknowledged"


class Unauthorized(InvoiceStateError):
    code = "unauthorized"


class InvoiceNotFound(InvoiceStateError):
    code = "invoice_not_found"


class InvariantViolation(InvoiceStateError):
    code = "invariant_violation"


# Stored status transitions. OVERDUE is derived at read time and never a target.
_ALLOWED: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT},
    InvoiceStatus.SENT: {InvoiceStatus.APPROVED, InvoiceStatus.PAID},
    InvoiceStatus.APPROVED: {InvoiceStatus.PAID},
    InvoiceStatus.PAID: set(),
}

RESENDABLE = {InvoiceStatus.SENT, InvoiceStatus.APPROVED}
COUNTERABLE = {InvoiceStatus.SENT, InvoiceStatus.APPROVED}


def can_transition(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    return new in _ALLOWED.get(current, set())


def assert_transition(invoice: InvoiceRecord, new: InvoiceStatus) -> None:
    if not can_transition(invoice.status, new):
        raise InvalidTransition(
            f"Invalid invoice transition: {invoice.status.value} -> {new.value}", invoice
        )


def is_overdue(invoice: InvoiceRecord, now: float) -> bool:
    return (
        invoice.status == InvoiceStatus.SENT
        and invoice.due_date is not None
        and float(invoice.due_date) < float(now)
    )


def display_status(invoice: InvoiceRecord, now: float) -> InvoiceStatus:
    if is_overdue(invoice, now):
        return InvoiceStatus.OVERDUE
    return invoice.status


def matches_status_filter(invoice: InvoiceRecord, status: Optional[str], now: float) -> bool:
    if not status:
        return True
    wanted = str(status).strip().lower()
    if wanted == InvoiceStatus.OVERDUE.value:
        return is_overdue(invoice, now)
    return invoice.status.value == wanted or invoice.shipper_status.value == wanted


def check_invariants(invoice: InvoiceRecord) -> None:
    """Raise InvariantViolation if the record breaks a cross-field rule."""
    if invoice.status == InvoiceStatus.OVERDUE:
        raise InvariantViolation("overdue is a derived status and cannot be stored", invoice)

    if (invoice.status == InvoiceStatus.PAID) != (invoice.shipper_status == ShipperStatus.PAID):
        raise InvariantViolation("status and shipper_status must agree on paid", invoice)

    pending = [c for c in invoice.counter_offers if c.status == CounterOfferStatus.PENDING]
    if len(pending) > 1:
        raise InvariantViolation("more than one pending counter-offer", invoice)
    if bool(pending) != (invoice.shipper_status == ShipperStatus.COUNTERED):
        raise InvariantViolation("countered requires exactly one pending counter-offer", invoice)

    if invoice.status == InvoiceStatus.DRAFT and invoice.shipper_status != ShipperStatus.PENDING:
        raise InvariantViolation("draft invoices cannot carry a shipper response", invoice)

    if invoice.subtotal + invoice.tax_amount != invoice.total_amount:
        raise InvariantViolation("subtotal + tax_amount must equal total_amount", invoice)

    if invoice.line_items:
        items_total = sum((i.amount for i in invoice.line_items), to_money(0))
        if items_total != invoice.subtotal:
            raise InvariantViolation("line items must sum to subtotal", invoice)

    if invoice.advance_payment_amount is not None and invoice.balance_on_delivery is not None:
        if invoice.advance_payment_amount + invoice.balance_on_delivery != invoice.total_amount:
            raise InvariantViolation("advance + balance must equal total_amount", invoice)


def _touch(invoice: InvoiceRecord, now: float, **updates: Any) -> InvoiceRecord:
    updated = invoice.model_copy(update={**updates, "updated_at": now}, deep=True)
    check_invariants(updated)
    return updated


def send(invoice: InvoiceRecord, *, now: float) -> InvoiceRecord:
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvalidTransition(f"Only draft invoices can be sent (current: {invoice.status.value})", invoice)
    return _touch(invoice, now, status=InvoiceStatus.SENT, sent_at=now)


def resend(invoice: InvoiceRecord, *, now: float) -> InvoiceRecord:
    if invoice.status not in RESENDABLE:
        raise InvalidTransition(f"Cannot resend an invoice in status {invoice.status.value}", invoice)
    return _touch(invoice, now, sent_at=now)


def approve(invoice: InvoiceRecord, *, now: float) -> InvoiceRecord:
    if invoice.status != InvoiceStatus.SENT:
        raise InvalidTransition(f"Only sent invoices can be approved (current: {invoice.status.value})", invoice)
    return _touch(invoice, now, status=InvoiceStatus.APPROVED)


def _assert_visible_to_shipper(invoice: InvoiceRecord) -> None:
    if invoice.status == InvoiceStatus.DRAFT:
        raise InvalidTransition("Invoice has not been sent to the shipper yet", invoice)


def mark_viewed(invoice: InvoiceRecord, *, now: float) -> tuple[InvoiceRecord, bool]:
    """Return (invoice, changed). Viewing twice is a no-op."""
    _assert_visible_to_shipper(invoice)
    if invoice.shipper_status != ShipperStatus.PENDING:
        return invoice, False
    return _touch(invoice, now, shipper_status=ShipperStatus.VIEWED, viewed_at=now), True


def acknowledge(invoice: InvoiceRecord, *, now: float) -> InvoiceRecord:
    _assert_visible_to_shipper(invoice)
    if invoice.shipper_status not in {ShipperStatus.PENDING, ShipperStatus.VIEWED}:
        raise InvalidTransition(
            f"Cannot acknowledge an invoice whose shipper status is {invoice.shipper_status.value}",
            invoice,
        )
    return _touch(
        invoice,
        now,
        shipper_status=ShipperStatus.ACKNOWLEDGED,
        acknowledged_at=now,
        viewed_at=invoice.viewed_at or now,
    )


def assert_payment_authorized(
    invoice: InvoiceRecord,
    *,
    actor: Dict[str, Any],
    confirm: bool,
    confirmed_by: Optional[str],
    payment_roles: Optional[Iterable[str]] = None,
) -> None:
    if payment_roles is None:
        payment_roles = settings.accounting_roles
    uid = str(actor.get("uid") or "").strip()
    role = str(actor.get("role") or "").strip().lower()
    if role not in set(payment_roles):
        raise Unauthorized("Only accounting personnel can mark invoices as paid", invoice)
    if not confirm or not confirmed_by:
        raise Unauthorized("Payment must be explicitly confirmed before marking the invoice paid", invoice)
    if str(confirmed_by).strip() != uid:
        raise Unauthorized("Payment confirmation must be given by the signed-in operator", invoice)


def mark_paid(
    invoice: InvoiceRecord,
    *,
    now: float,
    confirmed_by: str,
    paid_amount: Optional[Any] = None,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> InvoiceRecord:
    if invoice.status == InvoiceStatus.PAID:
        raise InvalidTransition("Invoice is already paid", invoice)
    assert_transition(invoice, InvoiceStatus.PAID)
    if invoice.pending_counter is not None:
        raise InvalidTransition("Cannot mark paid while a counter-offer is pending", invoice)
    if invoice.shipper_status != ShipperStatus.ACKNOWLEDGED and invoice.acknowledged_at is None:
        raise NotAcknowledged("Cannot mark paid until shipper acknowledges the invoice", invoice)

    return _touch(
        invoice,
        now,
        status=InvoiceStatus.PAID,
        shipper_status=ShipperStatus.PAID,
        paid_at=now,
        paid_amount=to_money(paid_amount) if paid_amount is not None else invoice.total_amount,
        payment_method=payment_method,
        payment_reference=payment_reference,
        paid_confirmed_by=confirmed_by,
    )
