from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid

import pytest

from apps.api.invoicing import repo
from apps.api.invoicing.models import InvoiceRecord, InvoiceStatus, ShipperStatus


NOW = 1_700_000_000.0


@dataclass
class _Snap:
    id: str
    _data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data or {})


class _DocRef:
    def __init__(self, col: "_Collection", doc_id: str):
        self._col = col
        self.id = doc_id

    def get(self, transaction=None):
        _ = transaction
        return _Snap(self.id, self._col._docs.get(self.id))

    def set(self, data: Dict[str, Any], merge: bool = False):
        if not merge or self.id not in self._col._docs:
            self._col._docs[self.id] = dict(data)
            return
        merged = dict(self._col._docs[self.id])
        merged.update(dict(data))
        self._col._docs[self.id] = merged

    def collection(self, name: str) -> "_Collection":
        return self._col._db.collection(f"{self._col._name}/{self.id}/{name}")


class _Query:
    def __init__(self, col: "_Collection", filters: List[Tuple[str, str, Any]]):
        self._col = col
        self._filters = filters
        self._limit: Optional[int] = None

    def where(self, field: str, op: str, value: Any):
        return _Query(self._col, [*self._filters, (field, op, value)])

    def limit(self, n: int):
        self._limit = int(n)
        return self

    def stream(self) -> Iterable[_Snap]:
        out: List[_Snap] = []
        for doc_id, data in self._col._docs.items():
            if self._matches(data):
                out.append(_Snap(doc_id, data))
        if self._limit is not None:
            out = out[: self._limit]
        return out

    def _matches(self, data: Dict[str, Any]) -> bool:
        for field, op, value in self._filters:
            if op != "==":
                raise AssertionError(f"Unsupported op in fake db: {op}")
            if data.get(field) != value:
                return False
        return True


class _Collection(_Query):
    def __init__(self, db: "FakeDB", name: str, docs: Dict[str, Dict[str, Any]]):
        self._db = db
        self._name = name
        self._docs = docs
        super().__init__(self, [])

    def document(self, doc_id: str) -> _DocRef:
        return _DocRef(self, doc_id)

    def add(self, data: Dict[str, Any]):
        ref = _DocRef(self, uuid.uuid4().hex)
        ref.set(data)
        return None, ref


class FakeDB:
    """Dict-backed stand-in for the Firestore client. Has no transaction support."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def collection(self, name: str) -> _Collection:
        docs = self._collections.setdefault(name, {})
        return _Collection(self, name, docs)

    def docs(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.get(name, {})


@pytest.fixture()
def fake_db(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(repo, "db", db)
    return db


def make_invoice(
    invoice_id: str = "inv1",
    *,
    status: InvoiceStatus = InvoiceStatus.SENT,
    shipper_status: ShipperStatus = ShipperStatus.PENDING,
    subtotal: Any = "45000",
    tax_amount: Any = "8100",
    **overrides: Any,
) -> InvoiceRecord:
    subtotal = Decimal(str(subtotal))
    tax_amount = Decimal(str(tax_amount))
    data: Dict[str, Any] = dict(
        invoice_id=invoice_id,
        invoice_number=f"INV-202611-{invoice_id}",
        load_id="LD-1",
        shipper_id="shipper1",
        admin_id="admin1",
        carrier_id="carrier1",
        currency="INR",
        subtotal=subtotal,
        tax_percent=Decimal("18"),
        tax_amount=tax_amount,
        total_amount=subtotal + tax_amount,
        status=status,
        shipper_status=shipper_status,
        payment_terms="Net 30",
        due_date=NOW + 30 * 86400.0,
        created_at=NOW,
        updated_at=NOW,
        sent_at=NOW if status != InvoiceStatus.DRAFT else None,
    )
    data.update(overrides)
    return InvoiceRecord(**data)


def store_invoice(db: FakeDB, invoice: InvoiceRecord) -> None:
    db.collection("invoices").document(invoice.invoice_id).set(repo._to_doc(invoice))
