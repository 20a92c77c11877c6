from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple

from autoquote.core.clock import parse_timestamp, to_iso


DEFAULT_CATEGORY = "Outros"
DEFAULT_UNIT = "un"

# Statuses that count as "work already in progress" when deduplicating
# automatic reorders. The legacy aliases are kept so records imported from
# the old status vocabulary are still recognised.
OPEN_QUOTATION_STATUSES = frozenset(
    {
        "draft",
        "sent",
        "replied",
        "quoted",
        "confirmed",
        "pending",
        "awaiting",
        "ordered",
    }
)

TIMESTAMP_FIELDS = (
    "sent_at",
    "replied_at",
    "analyzed_at",
    "confirmed_at",
    "delivered_at",
    "cancelled_at",
)


def new_quotation_id() -> str:
    return f"quot_{uuid.uuid4().hex[:16]}"


def _first(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


_FALSE_FLAGS = {"0", "false", "no", "off", ""}


def as_optional_flag(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_FLAGS
    return bool(value)


@dataclass(frozen=True)
class QuotationItem:
    product_id: str
    name: str
    category: str = DEFAULT_CATEGORY
    quantity: float = 0.0
    unit: str = DEFAULT_UNIT
    price: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuotationItem":
        return cls(
            product_id=str(_first(data, "product_id", "productId", "id", default="")).strip(),
            name=str(_first(data, "name", "product_name", "productName", default="")).strip(),
            category=_as_text(data.get("category")) or DEFAULT_CATEGORY,
            quantity=_as_float(_first(data, "quantity", "quantity_to_order", "quantityToOrder", "neededQuantity")),
            unit=_as_text(data.get("unit")) or DEFAULT_UNIT,
            price=_as_optional_float(_first(data, "price", "current_price", "currentPrice", "estimatedUnitPrice")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QuotedItem:
    name: str
    quantity: float
    unit_price: float
    product_id: str | None = None
    unit: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuotedItem":
        return cls(
            name=str(_first(data, "name", "product_name", "productName", default="")).strip(),
            quantity=_as_float(data.get("quantity")),
            unit_price=_as_float(_first(data, "unit_price", "unitPrice", "price")),
            product_id=_as_text(_first(data, "product_id", "productId")),
            unit=_as_text(data.get("unit")),
        )

    @property
    def total(self) -> float:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HistoryEntry:
    state: str
    event: str
    timestamp: str
    previous_state: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        return cls(
            state=str(data.get("state") or ""),
            event=str(data.get("event") or ""),
            timestamp=str(data.get("timestamp") or ""),
            previous_state=_as_text(_first(data, "previous_state", "previousState")),
            payload=dict(data.get("payload") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_state": self.previous_state,
            "state": self.state,
            "event": self.event,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class QuotationContext:
    """Everything the machine knows about a quotation besides its state."""

    id: str
    tenant_id: str
    supplier_id: str
    supplier_name: str | None = None
    supplier_email: str | None = None
    category: str | None = None
    items: Tuple[QuotationItem, ...] = ()
    quoted_items: Tuple[QuotedItem, ...] = ()
    quoted_total: float | None = None
    sent_at: datetime | None = None
    replied_at: datetime | None = None
    analyzed_at: datetime | None = None
    confirmed_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QuotationContext":
        timestamps = {name: parse_timestamp(record.get(name)) for name in TIMESTAMP_FIELDS}
        return cls(
            id=str(record.get("id") or new_quotation_id()),
            tenant_id=str(record.get("tenant_id") or ""),
            supplier_id=str(record.get("supplier_id") or ""),
            supplier_name=_as_text(record.get("supplier_name")),
            supplier_email=_as_text(record.get("supplier_email")),
            category=_as_text(record.get("category")),
            items=tuple(
                item if isinstance(item, QuotationItem) else QuotationItem.from_dict(item)
                for item in (record.get("items") or [])
            ),
            quoted_items=tuple(
                item if isinstance(item, QuotedItem) else QuotedItem.from_dict(item)
                for item in (record.get("quoted_items") or [])
            ),
            quoted_total=_as_optional_float(record.get("quoted_total")),
            details=dict(record.get("details") or {}),
            created_by=_as_text(record.get("created_by")),
            created_at=parse_timestamp(record.get("created_at")),
            updated_at=parse_timestamp(record.get("updated_at")),
            **timestamps,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "supplier_email": self.supplier_email,
            "category": self.category,
            "items": [item.to_dict() for item in self.items],
            "quoted_items": [item.to_dict() for item in self.quoted_items],
            "quoted_total": self.quoted_total,
            "details": dict(self.details),
            "created_by": self.created_by,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
        for name in TIMESTAMP_FIELDS:
            payload[name] = to_iso(getattr(self, name))
        return payload

    def product_ids(self) -> set[str]:
        return {item.product_id for item in self.items if item.product_id}


@dataclass(frozen=True)
class StockEvent:
    product_id: str | None
    product_name: str = ""
    category: str | None = None
    current_stock: float = 0.0
    quantity_to_order: float = 0.0
    unit: str = DEFAULT_UNIT
    supplier_id: str | None = None
    supplier_name: str | None = None
    supplier_email: str | None = None
    current_price: float | None = None
    enable_auto_quotation: bool | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StockEvent":
        enable = _first(data, "enable_auto_quotation", "enableAutoQuotation")
        return cls(
            product_id=_as_text(_first(data, "product_id", "productId", "id")),
            product_name=str(_first(data, "product_name", "productName", "name", default="")).strip(),
            category=_as_text(data.get("category")),
            current_stock=_as_float(_first(data, "current_stock", "currentStock")),
            quantity_to_order=_as_float(_first(data, "quantity_to_order", "quantityToOrder")),
            unit=_as_text(data.get("unit")) or DEFAULT_UNIT,
            supplier_id=_as_text(_first(data, "supplier_id", "supplierId")),
            supplier_name=_as_text(_first(data, "supplier_name", "supplierName")),
            supplier_email=_as_text(_first(data, "supplier_email", "supplierEmail")),
            current_price=_as_optional_float(_first(data, "current_price", "currentPrice")),
            enable_auto_quotation=as_optional_flag(enable),
        )

    @property
    def resolved_category(self) -> str:
        return self.category or DEFAULT_CATEGORY

    def to_item(self) -> QuotationItem:
        return QuotationItem(
            product_id=str(self.product_id or ""),
            name=self.product_name,
            category=self.resolved_category,
            quantity=self.quantity_to_order,
            unit=self.unit,
            price=self.current_price,
        )


@dataclass(frozen=True)
class Supplier:
    id: str
    name: str
    email: str | None = None
    auto_order_enabled: bool = True


@dataclass(frozen=True)
class ProcessingLock:
    tenant_id: str
    product_id: str
    acquired_at: float
    expires_at: float
    acquired_by: str
    last_heartbeat: float | None = None

    def is_live(self, now: float) -> bool:
        return self.expires_at > now
