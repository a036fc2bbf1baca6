from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import StreamingResponse

from typing import Any, Dict, Optional

from ..auth import get_current_user, require_admin, require_role, user_from_token
from ..models import Role
from ..notify import send_webhook
from ..settings import settings

from .events import build_event, channel_for_user, channels_for_invoice, get_relay
from .models import (
    CounterActionResponse,
    CounterOffer,
    CounterProposeRequest,
    CounterResolveRequest,
    InvoiceActionResponse,
    InvoiceCreateRequest,
    InvoiceEventType,
    InvoiceHistoryResponse,
    InvoiceListResponse,
    InvoiceRecord,
    InvoiceStatus,
    MarkPaidRequest,
    RevenueSummaryResponse,
)
from .repo import (
    acknowledge_invoice,
    approve_invoice,
    assert_can_read,
    create_invoice,
    get_invoice,
    get_load,
    list_invoice_history,
    list_invoices_for_user,
    mark_invoice_paid,
    propose_counter,
    record_shipper_view,
    resend_invoice,
    resolve_counter,
    send_invoice,
)
from .service import carrier_breakdown, compute_breakdown, compute_summary, shipper_breakdown, view_for_role
from .state import InvoiceNotFound, InvoiceStateError, Unauthorized


router = APIRouter(prefix="", tags=["Invoicing"])


def _http_error(e: ValueError) -> HTTPException:
    if isinstance(e, InvoiceNotFound):
        return HTTPException(status_code=404, detail=e.detail())
    if isinstance(e, Unauthorized):
        return HTTPException(status_code=403, detail=e.detail())
    if isinstance(e, InvoiceStateError):
        return HTTPException(status_code=409, detail=e.detail())
    return HTTPException(status_code=400, detail=str(e))


def _publish(event_type: InvoiceEventType, inv: InvoiceRecord, background_tasks: BackgroundTasks) -> None:
    event = build_event(event_type, inv)
    get_relay().publish(event, channels_for_invoice(inv))
    if settings.INVOICE_EVENTS_WEBHOOK_URL:
        background_tasks.add_task(send_webhook, settings.INVOICE_EVENTS_WEBHOOK_URL, event.model_dump(mode="json"))


def _action(inv: InvoiceRecord, message: str) -> InvoiceActionResponse:
    return InvoiceActionResponse(
        invoice_id=inv.invoice_id,
        invoice_number=inv.invoice_number,
        status=inv.status,
        shipper_status=inv.shipper_status,
        message=message,
    )


def _counter_action(inv: InvoiceRecord, counter: CounterOffer, message: str) -> CounterActionResponse:
    return CounterActionResponse(
        invoice_id=inv.invoice_id,
        invoice_number=inv.invoice_number,
        status=inv.status,
        shipper_status=inv.shipper_status,
        message=message,
        counter=counter,
    )


@router.get("/invoices/events/stream")
async def invoices_event_stream(token: str):
    """SSE stream of invoice events for the caller's portal channel.

    Note: EventSource cannot send Authorization headers, so we accept an ID token
    as a query param. Use only over HTTPS in production.
    """
    user = await user_from_token(token)
    try:
        channel = channel_for_user(user)
    except ValueError as e:
        raise HTTPException(status_code=403, detail=str(e))

    return StreamingResponse(
        get_relay().stream(channel, heartbeat_s=settings.EVENT_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
    )


@router.get("/invoices", response_model=InvoiceListResponse)
async def invoices_list(
    limit: int = 200,
    status: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
):
    try:
        items = list_invoices_for_user(user=user, limit=limit, status=status)
    except ValueError as e:
        raise _http_error(e)
    role = str(user.get("role") or "")
    views = [view_for_role(inv, role) for inv in items]
    return InvoiceListResponse(invoices=views, total=len(views))


@router.post("/invoices")
async def invoices_create(
    req: InvoiceCreateRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_admin),
):
    try:
        inv = create_invoice(request=req, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.CREATED, inv, background_tasks)
    return view_for_role(inv, str(user.get("role") or ""))


@router.get("/invoices/{invoice_id}")
async def invoices_get(invoice_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv = get_invoice(invoice_id=invoice_id)
        assert_can_read(inv, user)
    except ValueError as e:
        raise _http_error(e)
    role = str(user.get("role") or "")
    if role == "shipper" and inv.status.value == "draft":
        raise HTTPException(status_code=404, detail="Invoice not found")
    return view_for_role(inv, role)


@router.get("/invoices/{invoice_id}/breakdown")
async def invoices_breakdown(invoice_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv = get_invoice(invoice_id=invoice_id)
        assert_can_read(inv, user)
    except ValueError as e:
        raise _http_error(e)

    role = str(user.get("role") or "").strip().lower()
    if role == "shipper":
        return shipper_breakdown(inv).model_dump(mode="json")
    load = get_load(inv.load_id)
    if role == "carrier":
        return carrier_breakdown(inv, load).model_dump(mode="json")
    return compute_breakdown(inv, load).model_dump(mode="json")


@router.get("/invoices/{invoice_id}/history", response_model=InvoiceHistoryResponse)
async def invoices_history(
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_role(Role.ADMIN, Role.SUPER_ADMIN, Role.ACCOUNTING)),
):
    try:
        entries = list_invoice_history(invoice_id=invoice_id)
    except ValueError as e:
        raise _http_error(e)
    return InvoiceHistoryResponse(entries=entries, total=len(entries))


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceActionResponse)
async def invoices_send(invoice_id: str, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_admin)):
    try:
        inv = send_invoice(invoice_id=invoice_id, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.SENT, inv, background_tasks)
    return _action(inv, "Invoice sent")


@router.post("/invoices/{invoice_id}/resend", response_model=InvoiceActionResponse)
async def invoices_resend(invoice_id: str, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_admin)):
    try:
        inv = resend_invoice(invoice_id=invoice_id, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.SENT, inv, background_tasks)
    return _action(inv, "Invoice resent")


@router.post("/invoices/{invoice_id}/approve", response_model=InvoiceActionResponse)
async def invoices_approve(invoice_id: str, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(require_admin)):
    try:
        inv = approve_invoice(invoice_id=invoice_id, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.APPROVED, inv, background_tasks)
    return _action(inv, "Invoice approved")


@router.post("/invoices/{invoice_id}/view", response_model=InvoiceActionResponse)
async def invoices_view(invoice_id: str, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv, changed = record_shipper_view(invoice_id=invoice_id, user=user)
    except ValueError as e:
        raise _http_error(e)
    if changed:
        _publish(InvoiceEventType.VIEWED, inv, background_tasks)
    return _action(inv, "Invoice viewed" if changed else "Invoice already viewed")


@router.post("/invoices/{invoice_id}/acknowledge", response_model=InvoiceActionResponse)
async def invoices_acknowledge(invoice_id: str, background_tasks: BackgroundTasks, user: Dict[str, Any] = Depends(get_current_user)):
    try:
        inv = acknowledge_invoice(invoice_id=invoice_id, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.ACKNOWLEDGED, inv, background_tasks)
    return _action(inv, "Invoice acknowledged")


@router.post("/invoices/{invoice_id}/mark-paid", response_model=InvoiceActionResponse)
async def invoices_mark_paid(
    invoice_id: str,
    req: MarkPaidRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(get_current_user),
):
    try:
        inv = mark_invoice_paid(invoice_id=invoice_id, request=req, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.PAID, inv, background_tasks)
    return _action(inv, "Invoice marked as paid")


@router.post("/invoices/{invoice_id}/counter-offers", response_model=CounterActionResponse)
async def invoices_propose_counter(
    invoice_id: str,
    req: CounterProposeRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(get_current_user),
):
    try:
        inv, counter = propose_counter(invoice_id=invoice_id, amount=req.amount, reason=req.reason, user=user)
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.COUNTERED, inv, background_tasks)
    return _counter_action(inv, counter, "Counter-offer submitted")


@router.post("/counter-offers/{counter_id}/resolve", response_model=CounterActionResponse)
async def counter_offers_resolve(
    counter_id: str,
    req: CounterResolveRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_admin),
):
    try:
        inv, counter = resolve_counter(
            counter_id=counter_id,
            decision=req.decision,
            response_note=req.response_note,
            user=user,
        )
    except ValueError as e:
        raise _http_error(e)
    _publish(InvoiceEventType.COUNTER_RESOLVED, inv, background_tasks)
    return _counter_action(inv, counter, f"Counter-offer {counter.status.value}")


@router.get("/finance/summary", response_model=RevenueSummaryResponse)
async def finance_summary(user: Dict[str, Any] = Depends(get_current_user)):
    try:
        invoices = list_invoices_for_user(user=user, limit=1000)
    except ValueError as e:
        raise _http_error(e)
    role_scope = str(user.get("role") or "")
    loads: Dict[str, Dict[str, Any]] = {}
    if role_scope.strip().lower() in settings.back_office_roles:
        for inv in invoices:
            if inv.status == InvoiceStatus.PAID and inv.load_id not in loads:
                load = get_load(inv.load_id)
                if load is not None:
                    loads[inv.load_id] = load
    return compute_summary(
        invoices=invoices,
        role_scope=role_scope,
        currency=settings.DEFAULT_CURRENCY,
        loads=loads,
    )
