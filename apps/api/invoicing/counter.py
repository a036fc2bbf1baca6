from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from .models import (
    CounterDecision,
    CounterOffer,
    CounterOfferStatus,
    CounterParty,
    InvoiceRecord,
    InvoiceStatus,
    LineItem,
    ShipperStatus,
)
from .money import money_sum, percent_of, quantize, split_tax_inclusive, to_money
from .state import COUNTERABLE, CounterAlreadyPending, InvalidTransition, check_invariants


ADJUSTMENT_CODE = "COUNTER_ADJUSTMENT"


def find_counter(invoice: InvoiceRecord, counter_id: str) -> Optional[CounterOffer]:
    for c in invoice.counter_offers:
        if c.counter_id == counter_id:
            return c
    return None


def propose(
    invoice: InvoiceRecord,
    *,
    counter_id: str,
    amount: Any,
    reason: str,
    proposed_by: CounterParty,
    proposed_by_uid: Optional[str],
    now: float,
) -> tuple[InvoiceRecord, CounterOffer]:
    pending = invoice.pending_counter
    if pending is not None:
        raise CounterAlreadyPending(
            f"Counter-offer #{pending.ordinal} is still pending on this invoice", invoice, pending
        )
    if invoice.status not in COUNTERABLE:
        raise InvalidTransition(
            f"Counter-offers are only allowed on sent or approved invoices (current: {invoice.status.value})",
            invoice,
        )

    proposed = to_money(amount)
    if proposed <= 0:
        raise ValueError("Counter-offer amount must be greater than zero")

    counter = CounterOffer(
        counter_id=counter_id,
        ordinal=len(invoice.counter_offers) + 1,
        proposed_amount=proposed,
        reason=(reason or "").strip(),
        proposed_by=proposed_by,
        proposed_by_uid=proposed_by_uid,
        status=CounterOfferStatus.PENDING,
        created_at=now,
    )
    updated = invoice.model_copy(
        update={
            "counter_offers": [*invoice.counter_offers, counter],
            "shipper_status": ShipperStatus.COUNTERED,
            "countered_at": now,
            "updated_at": now,
        },
        deep=True,
    )
    check_invariants(updated)
    return updated, counter


def _retotal(invoice: InvoiceRecord, new_total: Decimal) -> dict:
    """Field updates that move the invoice to a new tax-inclusive total.

    A stored advance that matches the advance percent is re-derived from the
    percent; an explicit advance that does not keeps its ratio to the total.
    """
    subtotal, tax = split_tax_inclusive(new_total, invoice.tax_percent)
    updates: dict = {"subtotal": subtotal, "tax_amount": tax, "total_amount": subtotal + tax}

    if invoice.line_items:
        items = list(invoice.line_items)
        delta = subtotal - money_sum(i.amount for i in items)
        if delta != 0:
            items.append(
                LineItem(
                    code=ADJUSTMENT_CODE,
                    description="Adjustment for accepted counter-offer",
                    quantity=1,
                    unit_price=delta,
                    amount=delta,
                )
            )
        updates["line_items"] = items

    if invoice.advance_payment_amount is not None or invoice.balance_on_delivery is not None:
        new_total = to_money(new_total)
        advance = percent_of(new_total, invoice.advance_payment_percent)
        stored = invoice.advance_payment_amount
        old_total = invoice.total_amount
        if stored and old_total > 0 and stored != percent_of(old_total, invoice.advance_payment_percent):
            advance = quantize(new_total * stored / old_total)
        updates["advance_payment_amount"] = advance
        updates["balance_on_delivery"] = new_total - advance

    return updates


def resolve(
    invoice: InvoiceRecord,
    *,
    counter_id: str,
    decision: CounterDecision,
    response_note: Optional[str],
    responder_uid: Optional[str],
    now: float,
) -> tuple[InvoiceRecord, CounterOffer]:
    counter = find_counter(invoice, counter_id)
    if counter is None:
        raise ValueError(f"Counter-offer {counter_id} not found on invoice {invoice.invoice_number}")
    if counter.status != CounterOfferStatus.PENDING:
        raise InvalidTransition(f"Counter-offer is already {counter.status.value}", invoice)
    if invoice.status == InvoiceStatus.PAID:
        raise InvalidTransition("Invoice is already paid; its total can no longer change", invoice)

    resolved = counter.model_copy(
        update={
            "status": CounterOfferStatus(decision.value),
            "responded_at": now,
            "responded_by_uid": responder_uid,
            "response_note": response_note,
        }
    )
    history = [resolved if c.counter_id == counter_id else c for c in invoice.counter_offers]
    updates: dict = {"counter_offers": history, "updated_at": now}

    if decision == CounterDecision.ACCEPTED:
        updates.update(_retotal(invoice, resolved.proposed_amount))
        updates["shipper_status"] = ShipperStatus.ACKNOWLEDGED
        updates["acknowledged_at"] = invoice.acknowledged_at or now
    elif invoice.acknowledged_at is not None:
        updates["shipper_status"] = ShipperStatus.ACKNOWLEDGED
    else:
        # Shipper has to acknowledge or counter again.
        updates["shipper_status"] = ShipperStatus.VIEWED

    updated = invoice.model_copy(update=updates, deep=True)
    check_invariants(updated)
    return updated, resolved
