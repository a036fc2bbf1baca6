from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from firebase_admin import firestore

from ..database import db
from ..models import ADMIN_ROLES
from ..settings import settings
from ..utils import days_from_payment_terms, format_invoice_number, to_epoch
from . import counter as counter_flow
from . import state
from .models import (
    COMPUTED_FIELDS,
    CounterDecision,
    CounterOffer,
    CounterParty,
    InvoiceCreateRequest,
    InvoiceHistoryEntry,
    InvoiceRecord,
    InvoiceStatus,
    MarkPaidRequest,
)
from .money import format_rupees, money_sum, tax_for, to_money
from .state import InvoiceNotFound, Unauthorized


logger = logging.getLogger(__name__)

_Mutation = Callable[[InvoiceRecord], Tuple[InvoiceRecord, Any]]


def _now() -> float:
    return float(time.time())


def _db():
    if db is None:
        raise RuntimeError("Firestore is not configured")
    return db


def _invoice_doc_ref(invoice_id: str):
    return _db().collection("invoices").document(invoice_id)


def _history_col(invoice_id: str):
    return _invoice_doc_ref(invoice_id).collection("history")


def _counter_index_ref(counter_id: str):
    return _db().collection("counter_offer_index").document(counter_id)


def _invoice_number_counter_ref():
    return _db().collection("counters").document("invoice_number")


def _invoice_number_index_ref(invoice_number: str):
    return _db().collection("invoice_number_index").document(str(invoice_number))


def _to_doc(invoice: InvoiceRecord) -> Dict[str, Any]:
    return invoice.model_dump(mode="json", exclude=COMPUTED_FIELDS)


def _record_from_snap(snap, invoice_id: str) -> InvoiceRecord:
    if not snap.exists:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    d = snap.to_dict() or {}
    d.setdefault("invoice_id", snap.id)
    return InvoiceRecord(**d)


def _role(user: Dict[str, Any]) -> str:
    return str(user.get("role") or "").strip().lower()


def _uid(user: Dict[str, Any]) -> str:
    return str(user.get("uid") or "").strip()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_invoice(*, invoice_id: str) -> InvoiceRecord:
    return _record_from_snap(_invoice_doc_ref(invoice_id).get(), invoice_id)


def get_load(load_id: str) -> Optional[Dict[str, Any]]:
    """Return the linked load (owned by the load service), or None."""
    if not load_id:
        return None
    snap = _db().collection("loads").document(str(load_id)).get()
    if not snap.exists:
        return None
    d = snap.to_dict() or {}
    d.setdefault("load_id", snap.id)
    return d


def assert_can_read(invoice: InvoiceRecord, user: Dict[str, Any]) -> None:
    role = _role(user)
    uid = _uid(user)
    if role in settings.back_office_roles:
        return
    if role == "shipper" and uid == invoice.shipper_id:
        return
    if role == "carrier" and invoice.carrier_id and uid == invoice.carrier_id:
        return
    raise Unauthorized("Not authorized for this invoice", invoice)


def list_invoices_for_user(
    *,
    user: Dict[str, Any],
    limit: int = 200,
    status: Optional[str] = None,
    now: Optional[float] = None,
) -> List[InvoiceRecord]:
    role = _role(user)
    uid = _uid(user)
    now = float(_now() if now is None else now)
    col = _db().collection("invoices")

    if role in settings.back_office_roles:
        query = col
    elif role == "shipper":
        query = col.where("shipper_id", "==", uid)
    elif role == "carrier":
        query = col.where("carrier_id", "==", uid)
    else:
        raise ValueError("Invoices are not available for this role")

    out: List[InvoiceRecord] = []
    for snap in query.limit(max(1, min(int(limit), 1000))).stream():
        inv = _record_from_snap(snap, snap.id)
        # Shippers never see drafts.
        if role == "shipper" and inv.status == InvoiceStatus.DRAFT:
            continue
        if state.matches_status_filter(inv, status, now):
            out.append(inv)

    out.sort(key=lambda i: float(i.created_at or 0.0), reverse=True)
    return out


def list_invoice_history(*, invoice_id: str) -> List[InvoiceHistoryEntry]:
    get_invoice(invoice_id=invoice_id)
    entries = [InvoiceHistoryEntry(**(s.to_dict() or {})) for s in _history_col(invoice_id).stream()]
    # newest first
    entries.sort(key=lambda e: e.created_at, reverse=True)
    return entries


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def _next_invoice_sequence() -> Optional[int]:
    """Return the next invoice sequence integer, or None without transactions."""
    database = _db()
    if not hasattr(database, "transaction"):
        return None

    ref = _invoice_number_counter_ref()
    now = _now()

    @firestore.transactional
    def txn_next(txn: firestore.Transaction) -> int:
        snap = ref.get(transaction=txn)
        cur = int((snap.to_dict() or {}).get("value") or 0) if snap.exists else 0
        nxt = cur + 1
        txn.set(ref, {"value": nxt, "updated_at": now}, merge=True)
        return nxt

    return int(txn_next(database.transaction()))


def _generate_invoice_number(now: float) -> str:
    when = datetime.fromtimestamp(now, tz=timezone.utc)
    seq = _next_invoice_sequence()
    if seq is not None:
        number = format_invoice_number(when=when, sequence=seq)
        if not _invoice_number_index_ref(number).get().exists:
            return number
        logger.warning("Invoice number %s already taken; falling back to random suffix", number)
    # No counter available (e.g. unit tests with fake db) or a collision.
    return f"INV-{when.year}{when.month:02d}-{uuid.uuid4().hex[:6].upper()}"


def _find_by_idempotency_key(key: str) -> Optional[InvoiceRecord]:
    snaps = list(_db().collection("invoices").where("idempotency_key", "==", key).limit(1).stream())
    return _record_from_snap(snaps[0], snaps[0].id) if snaps else None


def _invoice_exists_for_load(load_id: str) -> bool:
    snaps = list(_db().collection("invoices").where("load_id", "==", load_id).limit(1).stream())
    return bool(snaps)


def _resolve_amounts(request: InvoiceCreateRequest) -> Dict[str, Any]:
    if request.line_items:
        subtotal = money_sum(i.amount for i in request.line_items)
        if request.subtotal is not None and request.subtotal != subtotal:
            raise ValueError(
                f"Line items sum to {subtotal} but subtotal is {request.subtotal}"
            )
    elif request.subtotal is not None:
        subtotal = request.subtotal
    else:
        raise ValueError("Either subtotal or line_items is required")
    if subtotal <= 0:
        raise ValueError("Subtotal must be greater than zero")

    tax_percent = request.tax_percent
    if tax_percent is None:
        tax_percent = Decimal(settings.DEFAULT_TAX_PERCENT)
    if tax_percent < 0 or tax_percent > 100:
        raise ValueError("tax_percent must be between 0 and 100")

    tax_amount = request.tax_amount if request.tax_amount is not None else tax_for(subtotal, tax_percent)
    if tax_amount < 0:
        raise ValueError("tax_amount cannot be negative")
    total = subtotal + tax_amount

    advance = request.advance_payment_amount
    balance = request.balance_on_delivery
    if advance is not None and balance is None:
        balance = total - advance
    elif balance is not None and advance is None:
        advance = total - balance
    if advance is not None and (advance < 0 or balance < 0):
        raise ValueError("Advance and balance amounts must be within the invoice total")
    if advance is not None and advance == 0 and request.advance_payment_percent > 0:
        raise ValueError(
            f"advance_payment_amount is 0 but advance_payment_percent is {request.advance_payment_percent}"
        )

    return {
        "subtotal": subtotal,
        "tax_percent": tax_percent,
        "tax_amount": tax_amount,
        "total_amount": total,
        "advance_payment_amount": advance,
        "balance_on_delivery": balance,
    }


def create_invoice(*, request: InvoiceCreateRequest, user: Dict[str, Any]) -> InvoiceRecord:
    """Create a draft invoice for a finalized load."""
    if _role(user) not in ADMIN_ROLES:
        raise Unauthorized("Only admins can create invoices")

    key = (request.idempotency_key or "").strip() or None
    if key:
        existing = _find_by_idempotency_key(key)
        if existing is not None:
            return existing

    load_id = str(request.load_id or "").strip()
    load = get_load(load_id)
    if load is None:
        raise ValueError(f"Load {load_id} not found")
    if _invoice_exists_for_load(load_id):
        raise ValueError("An invoice already exists for this load")

    amounts = _resolve_amounts(request)

    now = _now()
    payment_terms = request.payment_terms or settings.DEFAULT_PAYMENT_TERMS
    due_date = to_epoch(request.due_date)
    if request.due_date not in (None, "") and due_date is None:
        raise ValueError(f"Invalid due_date: {request.due_date!r}")
    if due_date is None:
        days = days_from_payment_terms(payment_terms)
        if days is not None:
            due_date = now + float(days) * 86400.0

    invoice_id = uuid.uuid4().hex
    invoice_number = _generate_invoice_number(now)

    invoice = InvoiceRecord(
        invoice_id=invoice_id,
        invoice_number=invoice_number,
        load_id=load_id,
        shipper_id=request.shipper_id,
        admin_id=_uid(user),
        carrier_id=request.carrier_id or load.get("assigned_carrier") or None,
        driver_id=request.driver_id or load.get("assigned_driver") or None,
        truck_id=request.truck_id,
        currency=(request.currency or settings.DEFAULT_CURRENCY).upper(),
        line_items=request.line_items,
        admin_posted_price=request.admin_posted_price,
        winning_bid_amount=request.winning_bid_amount,
        platform_margin=request.platform_margin,
        estimated_carrier_payout=request.estimated_carrier_payout,
        advance_payment_percent=request.advance_payment_percent,
        status=InvoiceStatus.DRAFT,
        payment_terms=payment_terms,
        due_date=due_date,
        notes=request.notes,
        idempotency_key=key,
        created_at=now,
        updated_at=now,
        metadata=dict(request.metadata or {}),
        **amounts,
    )
    state.check_invariants(invoice)

    _invoice_doc_ref(invoice_id).set(_to_doc(invoice))
    _invoice_number_index_ref(invoice_number).set({"invoice_id": invoice_id, "created_at": now})
    _record_history(invoice_id, action="created", user=user, before=None, after=invoice)
    logger.info("Created invoice %s for load %s", invoice_number, load_id)
    return invoice


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def _apply(
    invoice_id: str,
    mutate: _Mutation,
    side_writes: Optional[List[Tuple[Any, Dict[str, Any]]]] = None,
) -> Tuple[InvoiceRecord, InvoiceRecord, Any]:
    """Re-read the invoice, run the transition and write it back.

    Inside a Firestore transaction the read, the precondition checks in
    `mutate` and the write are atomic; a conflicting commit makes Firestore
    re-run `mutate` against the new state, so the loser sees the advanced
    status and fails its precondition.
    """
    database = _db()
    ref = _invoice_doc_ref(invoice_id)

    def run(read, write):
        before = _record_from_snap(read(), invoice_id)
        after, payload = mutate(before)
        if after is not before:
            write(ref, _to_doc(after))
            for side_ref, data in side_writes or []:
                write(side_ref, data)
        return before, after, payload

    if hasattr(database, "transaction"):
        @firestore.transactional
        def txn_apply(txn: firestore.Transaction):
            return run(lambda: ref.get(transaction=txn), txn.set)

        return txn_apply(database.transaction())

    return run(ref.get, lambda r, data: r.set(data))


def _record_history(
    invoice_id: str,
    *,
    action: str,
    user: Dict[str, Any],
    before: Optional[InvoiceRecord],
    after: InvoiceRecord,
    note: Optional[str] = None,
) -> None:
    entry = InvoiceHistoryEntry(
        action=action,
        actor_uid=_uid(user) or None,
        actor_role=_role(user) or None,
        from_status=before.status if before else None,
        to_status=after.status,
        from_shipper_status=before.shipper_status if before else None,
        to_shipper_status=after.shipper_status,
        note=note,
        created_at=_now(),
    )
    try:
        _history_col(invoice_id).add(entry.model_dump(mode="json"))
    except Exception:
        # Audit trail is best-effort; the transition itself is already committed.
        logger.exception("Failed to record history for invoice %s (%s)", invoice_id, action)


def _assert_admin(user: Dict[str, Any], invoice: InvoiceRecord) -> None:
    if _role(user) not in ADMIN_ROLES:
        raise Unauthorized("Admin access required", invoice)


def _assert_shipper(user: Dict[str, Any], invoice: InvoiceRecord) -> None:
    if _role(user) != "shipper" or _uid(user) != invoice.shipper_id:
        raise Unauthorized("Only the billed shipper can respond to this invoice", invoice)


def send_invoice(*, invoice_id: str, user: Dict[str, Any]) -> InvoiceRecord:
    def mutate(inv: InvoiceRecord):
        _assert_admin(user, inv)
        return state.send(inv, now=_now()), None

    before, after, _ = _apply(invoice_id, mutate)
    _record_history(invoice_id, action="sent", user=user, before=before, after=after)
    return after


def resend_invoice(*, invoice_id: str, user: Dict[str, Any]) -> InvoiceRecord:
    def mutate(inv: InvoiceRecord):
        _assert_admin(user, inv)
        return state.resend(inv, now=_now()), None

    before, after, _ = _apply(invoice_id, mutate)
    _record_history(invoice_id, action="resent", user=user, before=before, after=after)
    return after


def approve_invoice(*, invoice_id: str, user: Dict[str, Any]) -> InvoiceRecord:
    def mutate(inv: InvoiceRecord):
        _assert_admin(user, inv)
        return state.approve(inv, now=_now()), None

    before, after, _ = _apply(invoice_id, mutate)
    _record_history(invoice_id, action="approved", user=user, before=before, after=after)
    return after


def record_shipper_view(*, invoice_id: str, user: Dict[str, Any]) -> Tuple[InvoiceRecord, bool]:
    """Mark the invoice viewed by its shipper. Returns (invoice, changed)."""
    def mutate(inv: InvoiceRecord):
        _assert_shipper(user, inv)
        return state.mark_viewed(inv, now=_now())

    before, after, changed = _apply(invoice_id, mutate)
    if changed:
        _record_history(invoice_id, action="viewed", user=user, before=before, after=after)
    return after, bool(changed)


def acknowledge_invoice(*, invoice_id: str, user: Dict[str, Any]) -> InvoiceRecord:
    def mutate(inv: InvoiceRecord):
        _assert_shipper(user, inv)
        return state.acknowledge(inv, now=_now()), None

    before, after, _ = _apply(invoice_id, mutate)
    _record_history(invoice_id, action="acknowledged", user=user, before=before, after=after)
    return after


def mark_invoice_paid(*, invoice_id: str, request: MarkPaidRequest, user: Dict[str, Any]) -> InvoiceRecord:
    def mutate(inv: InvoiceRecord):
        state.assert_payment_authorized(
            inv,
            actor=user,
            confirm=request.confirm,
            confirmed_by=request.confirmed_by,
            payment_roles=settings.accounting_roles,
        )
        paid = state.mark_paid(
            inv,
            now=_now(),
            confirmed_by=str(request.confirmed_by),
            paid_amount=request.paid_amount,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
        )
        return paid, None

    before, after, _ = _apply(invoice_id, mutate)
    _record_history(
        invoice_id,
        action="paid",
        user=user,
        before=before,
        after=after,
        note=f"{format_rupees(after.paid_amount)} {after.payment_method or 'unspecified'} {after.payment_reference or ''}".strip(),
    )
    logger.info("Invoice %s marked paid by %s", after.invoice_number, request.confirmed_by)
    return after


def propose_counter(
    *,
    invoice_id: str,
    amount: Any,
    reason: str,
    user: Dict[str, Any],
) -> Tuple[InvoiceRecord, CounterOffer]:
    counter_id = uuid.uuid4().hex
    now = _now()

    def mutate(inv: InvoiceRecord):
        if _role(user) in ADMIN_ROLES:
            party = CounterParty.ADMIN
        else:
            _assert_shipper(user, inv)
            party = CounterParty.SHIPPER
        return counter_flow.propose(
            inv,
            counter_id=counter_id,
            amount=to_money(amount),
            reason=reason,
            proposed_by=party,
            proposed_by_uid=_uid(user) or None,
            now=now,
        )

    index = (_counter_index_ref(counter_id), {"invoice_id": invoice_id, "created_at": now})
    before, after, counter = _apply(invoice_id, mutate, side_writes=[index])
    _record_history(
        invoice_id,
        action="countered",
        user=user,
        before=before,
        after=after,
        note=f"{format_rupees(counter.proposed_amount)}: {counter.reason}",
    )
    return after, counter


def invoice_id_for_counter(counter_id: str) -> str:
    snap = _counter_index_ref(counter_id).get()
    if not snap.exists:
        raise ValueError(f"Counter-offer {counter_id} not found")
    invoice_id = str((snap.to_dict() or {}).get("invoice_id") or "")
    if not invoice_id:
        raise ValueError(f"Counter-offer {counter_id} is not linked to an invoice")
    return invoice_id


def resolve_counter(
    *,
    counter_id: str,
    decision: CounterDecision,
    response_note: Optional[str],
    user: Dict[str, Any],
) -> Tuple[InvoiceRecord, CounterOffer]:
    invoice_id = invoice_id_for_counter(counter_id)

    def mutate(inv: InvoiceRecord):
        _assert_admin(user, inv)
        return counter_flow.resolve(
            inv,
            counter_id=counter_id,
            decision=decision,
            response_note=response_note,
            responder_uid=_uid(user) or None,
            now=_now(),
        )

    before, after, resolved = _apply(invoice_id, mutate)
    _record_history(
        invoice_id,
        action=f"counter_{decision.value}",
        user=user,
        before=before,
        after=after,
        note=response_note,
    )
    return after, resolved
