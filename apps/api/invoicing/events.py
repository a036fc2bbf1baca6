from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import AsyncIterator, Dict, List, Optional, Set

from ..settings import settings
from .models import InvoiceEvent, InvoiceEventType, InvoiceRecord


logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "admin"


def channels_for_invoice(invoice: InvoiceRecord) -> List[str]:
    channels = [ADMIN_CHANNEL, f"shipper:{invoice.shipper_id}"]
    if invoice.carrier_id:
        channels.append(f"carrier:{invoice.carrier_id}")
    return channels


def channel_for_user(user: Dict) -> str:
    role = str(user.get("role") or "").strip().lower()
    uid = str(user.get("uid") or "").strip()
    if role in settings.back_office_roles:
        return ADMIN_CHANNEL
    if role in {"shipper", "carrier"} and uid:
        return f"{role}:{uid}"
    raise ValueError("Invoice events are not available for this role")


def build_event(event: InvoiceEventType, invoice: InvoiceRecord, *, now: Optional[float] = None) -> InvoiceEvent:
    return InvoiceEvent(
        event=event,
        event_id=uuid.uuid4().hex,
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        shipper_status=invoice.shipper_status,
        occurred_at=float(time.time() if now is None else now),
    )


class EventRelay:
    """In-process pub/sub of committed invoice events, keyed by portal channel.

    Delivery is best-effort: a subscriber whose queue is full misses the event.
    Events only tell a portal to re-fetch; they never carry authoritative state.
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = max(1, int(queue_size))
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(channel, set()).add(q)
        return q

    def unsubscribe(self, channel: str, q: asyncio.Queue) -> None:
        subs = self._subscribers.get(channel)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            self._subscribers.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    def publish(self, event: InvoiceEvent, channels: List[str]) -> int:
        """Fan the event out to every subscriber of the channels. Returns deliveries."""
        delivered = 0
        for channel in channels:
            for q in list(self._subscribers.get(channel, ())):
                try:
                    q.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(
                        "Dropping %s for %s on channel %s: subscriber queue full",
                        event.event.value,
                        event.invoice_number,
                        channel,
                    )
        logger.debug("Published %s for %s to %d subscriber(s)", event.event.value, event.invoice_number, delivered)
        return delivered

    async def stream(self, channel: str, *, heartbeat_s: float = 15.0) -> AsyncIterator[str]:
        """Yield SSE frames for a channel until the client disconnects."""
        q = self.subscribe(channel)
        try:
            yield f"event: ready\ndata: {json.dumps({'channel': channel})}\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=heartbeat_s)
                except asyncio.TimeoutError:
                    # Heartbeat to keep connections alive.
                    yield "event: ping\ndata: {}\n\n"
                    continue
                yield f"event: {event.event.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            self.unsubscribe(channel, q)


_RELAY = EventRelay(queue_size=settings.EVENT_QUEUE_SIZE)


def get_relay() -> EventRelay:
    return _RELAY
