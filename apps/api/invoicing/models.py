from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .money import optional_money, to_money


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    PAID = "paid"
    # Display/filter value only; never stored.
    OVERDUE = "overdue"


class ShipperStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    ACKNOWLEDGED = "acknowledged"
    COUNTERED = "countered"
    PAID = "paid"


class CounterOfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CounterDecision(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CounterParty(str, Enum):
    SHIPPER = "shipper"
    ADMIN = "admin"


class InvoiceEventType(str, Enum):
    CREATED = "invoice_created"
    SENT = "invoice_sent"
    APPROVED = "invoice_approved"
    VIEWED = "invoice_viewed"
    ACKNOWLEDGED = "invoice_acknowledged"
    COUNTERED = "invoice_countered"
    COUNTER_RESOLVED = "invoice_counter_resolved"
    PAID = "invoice_paid"


class LineItem(BaseModel):
    code: str = ""  # e.g. FREIGHT, TOLL, HANDLING
    description: str = ""
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Decimal:
        return to_money(value)

    @field_validator("unit_price", mode="before")
    @classmethod
    def _optional_money(cls, value: Any) -> Optional[Decimal]:
        return optional_money(value)


class CounterOffer(BaseModel):
    counter_id: str
    ordinal: int

    proposed_amount: Decimal
    reason: str = ""
    proposed_by: CounterParty
    proposed_by_uid: Optional[str] = None

    status: CounterOfferStatus = CounterOfferStatus.PENDING

    created_at: float
    responded_at: Optional[float] = None
    responded_by_uid: Optional[str] = None
    response_note: Optional[str] = None

    @field_validator("proposed_amount", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Decimal:
        return to_money(value)


_MONEY_FIELDS = (
    "subtotal",
    "tax_amount",
    "total_amount",
    "admin_posted_price",
    "winning_bid_amount",
    "platform_margin",
    "estimated_carrier_payout",
    "advance_payment_amount",
    "balance_on_delivery",
    "paid_amount",
)

# Admin-only pricing data; never leaves the service in a shipper-facing payload.
ADMIN_ONLY_FIELDS = {
    "admin_posted_price",
    "winning_bid_amount",
    "platform_margin",
    "estimated_carrier_payout",
    "admin_id",
}


class InvoiceRecord(BaseModel):
    invoice_id: str
    invoice_number: str

    load_id: str
    shipper_id: str
    admin_id: Optional[str] = None
    carrier_id: Optional[str] = None
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None

    currency: str = "INR"
    line_items: List[LineItem] = Field(default_factory=list)
    subtotal: Decimal
    tax_percent: Decimal = Decimal("18")
    tax_amount: Decimal
    total_amount: Decimal

    admin_posted_price: Optional[Decimal] = None
    winning_bid_amount: Optional[Decimal] = None
    platform_margin: Optional[Decimal] = None
    estimated_carrier_payout: Optional[Decimal] = None

    advance_payment_percent: int = Field(default=0, ge=0, le=100)
    advance_payment_amount: Optional[Decimal] = None
    balance_on_delivery: Optional[Decimal] = None

    status: InvoiceStatus = InvoiceStatus.DRAFT
    shipper_status: ShipperStatus = ShipperStatus.PENDING

    payment_terms: Optional[str] = None
    due_date: Optional[float] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None

    created_at: float
    updated_at: float
    sent_at: Optional[float] = None
    viewed_at: Optional[float] = None
    acknowledged_at: Optional[float] = None
    countered_at: Optional[float] = None
    paid_at: Optional[float] = None

    paid_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_confirmed_by: Optional[str] = None

    counter_offers: List[CounterOffer] = Field(default_factory=list)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(*_MONEY_FIELDS, mode="before")
    @classmethod
    def _money(cls, value: Any) -> Optional[Decimal]:
        return optional_money(value)

    @computed_field
    @property
    def pending_counter(self) -> Optional[CounterOffer]:
        for c in self.counter_offers:
            if c.status == CounterOfferStatus.PENDING:
                return c
        return None

    @computed_field
    @property
    def latest_counter(self) -> Optional[CounterOffer]:
        if not self.counter_offers:
            return None
        return max(self.counter_offers, key=lambda c: c.ordinal)

    @computed_field
    @property
    def counter_amount(self) -> Optional[Decimal]:
        latest = self.latest_counter
        return latest.proposed_amount if latest else None

    @computed_field
    @property
    def counter_reason(self) -> Optional[str]:
        latest = self.latest_counter
        return latest.reason if latest else None


COMPUTED_FIELDS = {"pending_counter", "latest_counter", "counter_amount", "counter_reason"}


class InvoiceCreateRequest(BaseModel):
    load_id: str
    shipper_id: str
    carrier_id: Optional[str] = None
    driver_id: Optional[str] = None
    truck_id: Optional[str] = None

    # Either line items or a subtotal; when both are given they must agree.
    line_items: List[LineItem] = Field(default_factory=list)
    subtotal: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = None
    # If omitted, derived from subtotal and tax_percent.
    tax_amount: Optional[Decimal] = None
    currency: Optional[str] = None

    admin_posted_price: Optional[Decimal] = None
    winning_bid_amount: Optional[Decimal] = None
    platform_margin: Optional[Decimal] = None
    estimated_carrier_payout: Optional[Decimal] = None

    advance_payment_percent: int = Field(default=0, ge=0, le=100)
    advance_payment_amount: Optional[Decimal] = None
    balance_on_delivery: Optional[Decimal] = None

    payment_terms: Optional[str] = None
    # Epoch seconds or any parseable date string.
    due_date: Optional[Any] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "subtotal",
        "tax_amount",
        "admin_posted_price",
        "winning_bid_amount",
        "platform_margin",
        "estimated_carrier_payout",
        "advance_payment_amount",
        "balance_on_delivery",
        mode="before",
    )
    @classmethod
    def _money(cls, value: Any) -> Optional[Decimal]:
        return optional_money(value)


class MarkPaidRequest(BaseModel):
    # Explicit operator confirmation; the server never assumes it.
    confirm: bool = False
    confirmed_by: Optional[str] = None

    paid_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None

    @field_validator("paid_amount", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Optional[Decimal]:
        return optional_money(value)


class CounterProposeRequest(BaseModel):
    amount: Decimal
    reason: str = ""

    @field_validator("amount", mode="before")
    @classmethod
    def _money(cls, value: Any) -> Decimal:
        return to_money(value)


class CounterResolveRequest(BaseModel):
    decision: CounterDecision
    response_note: Optional[str] = None


class InvoiceActionResponse(BaseModel):
    ok: bool = True
    invoice_id: str
    invoice_number: str
    status: InvoiceStatus
    shipper_status: ShipperStatus
    message: str


class CounterActionResponse(InvoiceActionResponse):
    counter: CounterOffer


class InvoiceListResponse(BaseModel):
    invoices: List[Dict[str, Any]]
    total: int


class DataAnomaly(BaseModel):
    field: str
    value: Decimal
    message: str


class FinancialBreakdown(BaseModel):
    invoice_id: str
    invoice_number: str
    currency: str

    subtotal: Decimal
    tax_percent: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    admin_posted_price: Decimal
    winning_bid: Decimal
    # None when the value resolves to zero or below ("not available").
    platform_margin: Optional[Decimal] = None
    carrier_payout: Optional[Decimal] = None

    advance_percent: int
    advance_amount: Decimal
    balance_due: Decimal

    anomalies: List[DataAnomaly] = Field(default_factory=list)


class ShipperBreakdown(BaseModel):
    invoice_id: str
    invoice_number: str
    currency: str

    subtotal: Decimal
    tax_percent: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    advance_percent: int
    advance_amount: Decimal
    balance_due: Decimal


class CarrierBreakdown(BaseModel):
    invoice_id: str
    invoice_number: str
    currency: str
    carrier_payout: Optional[Decimal] = None
    advance_percent: int


class InvoiceHistoryEntry(BaseModel):
    action: str
    actor_uid: Optional[str] = None
    actor_role: Optional[str] = None

    from_status: Optional[InvoiceStatus] = None
    to_status: Optional[InvoiceStatus] = None
    from_shipper_status: Optional[ShipperStatus] = None
    to_shipper_status: Optional[ShipperStatus] = None

    note: Optional[str] = None
    created_at: float


class InvoiceHistoryResponse(BaseModel):
    entries: List[InvoiceHistoryEntry]
    total: int


class InvoiceEvent(BaseModel):
    event: InvoiceEventType
    event_id: str
    invoice_id: str
    invoice_number: str
    status: InvoiceStatus
    shipper_status: ShipperStatus
    occurred_at: float


class RevenueSummaryResponse(BaseModel):
    role_scope: str
    currency: str

    invoiced_amount: Decimal
    collected_amount: Decimal
    outstanding_amount: Decimal
    overdue_amount: Decimal

    invoice_count: int
    paid_invoice_count: int
    overdue_invoice_count: int
    pending_counter_count: int

    # Admin scope only.
    platform_margin_total: Optional[Decimal] = None
    carrier_payout_total: Optional[Decimal] = None
