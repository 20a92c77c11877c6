from __future__ import annotations

import logging
from typing import Any, Mapping

from autoquote.contexts.quotation.domain.models import DEFAULT_UNIT, StockEvent, as_optional_flag
from autoquote.contexts.quotation.domain.ports import InventorySourcePort
from autoquote.core import EventBus, ReorderNeeded, get_event_bus
from autoquote.errors import NotFoundError, ValidationError


def _field(item: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def needs_reorder(item: Mapping[str, Any]) -> bool:
    min_stock = _number(_field(item, "min_stock", "minStock"))
    if min_stock <= 0:
        return False
    return _number(_field(item, "current_stock", "currentStock")) <= min_stock


def max_stock(item: Mapping[str, Any]) -> float:
    """Explicit maximum, or three times the minimum when the item has none."""
    explicit = _number(_field(item, "max_stock", "maxStock"))
    if explicit > 0:
        return explicit
    return max(0.0, _number(_field(item, "min_stock", "minStock")) * 3)


def quantity_to_order(item: Mapping[str, Any]) -> float:
    current = _number(_field(item, "current_stock", "currentStock"))
    return max(0.0, max_stock(item) - current)


def is_reorder_candidate(item: Mapping[str, Any]) -> bool:
    if as_optional_flag(_field(item, "enable_auto_quotation", "enableAutoQuotation")) is False:
        return False
    if not str(_field(item, "supplier_id", "supplierId") or "").strip():
        return False
    return needs_reorder(item)


def to_stock_event(item: Mapping[str, Any]) -> StockEvent:
    enable = _field(item, "enable_auto_quotation", "enableAutoQuotation")
    price = _field(item, "current_price", "currentPrice")
    return StockEvent(
        product_id=str(_field(item, "product_id", "productId", "id") or "").strip() or None,
        product_name=str(_field(item, "product_name", "productName", "name") or "").strip(),
        category=str(item.get("category") or "").strip() or None,
        current_stock=_number(_field(item, "current_stock", "currentStock")),
        quantity_to_order=quantity_to_order(item),
        unit=str(item.get("unit") or DEFAULT_UNIT),
        supplier_id=str(_field(item, "supplier_id", "supplierId") or "").strip() or None,
        supplier_name=_field(item, "supplier_name", "supplierName"),
        supplier_email=_field(item, "supplier_email", "supplierEmail"),
        current_price=None if price is None else _number(price),
        enable_auto_quotation=as_optional_flag(enable),
    )


class StockMonitor:
    """Turns stock level changes into reorder signals on the event bus."""

    def __init__(
        self,
        *,
        tenant_id: str,
        inventory: InventorySourcePort,
        event_bus: EventBus | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.inventory = inventory
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("autoquote.inventory")

    def check_and_emit(self, item: Mapping[str, Any]) -> bool:
        if not is_reorder_candidate(item):
            return False
        event = to_stock_event(item)
        self.event_bus.publish(
            ReorderNeeded(
                tenant_id=self.tenant_id,
                product_id=event.product_id,
                product_name=event.product_name,
                category=event.category,
                current_stock=event.current_stock,
                quantity_to_order=event.quantity_to_order,
                unit=event.unit,
                supplier_id=event.supplier_id,
                supplier_name=event.supplier_name,
                supplier_email=event.supplier_email,
                current_price=event.current_price,
                enable_auto_quotation=event.enable_auto_quotation,
            )
        )
        self._logger.info(
            "stock_reorder_needed",
            extra={
                "tenant_id": self.tenant_id,
                "product_id": event.product_id,
                "current_stock": event.current_stock,
                "quantity_to_order": event.quantity_to_order,
            },
        )
        return True

    def update_stock(self, item_id: str, current_stock: Any) -> dict:
        try:
            value = float(current_stock)
        except (TypeError, ValueError):
            raise ValidationError(details="current_stock deve ser numerico.") from None
        if value < 0:
            raise ValidationError(details="current_stock nao pode ser negativo.")

        item = self.inventory.update_stock(item_id, value)
        if item is None:
            raise NotFoundError(details=f"item {item_id} nao encontrado")
        reorder = self.check_and_emit(item)
        return {"item": item, "reorder_triggered": reorder}
