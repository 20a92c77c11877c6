"""Automatic quotation creation from low-stock signals.

Admitted reorder events are queued per supplier and flushed after a quiet
period (debounce). A flush groups the queue by supplier and category, drops
products that already sit in an open quotation and creates one draft
quotation per group. The queue is cleared on every flush whatever the
outcome; products still below their minimum re-trigger on their next stock
event.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Mapping

from autoquote.contexts.inventory.application.stock_monitor import is_reorder_candidate, quantity_to_order, to_stock_event
from autoquote.contexts.quotation.application.locking import SYSTEM_USER_ID, LockOutcome, ProcessingLockService
from autoquote.contexts.quotation.domain.machine import QuotationMachine
from autoquote.contexts.quotation.domain.models import (
    DEFAULT_CATEGORY,
    OPEN_QUOTATION_STATUSES,
    QuotationContext,
    QuotationItem,
    StockEvent,
    Supplier,
    as_optional_flag,
    new_quotation_id,
)
from autoquote.contexts.quotation.domain.ports import (
    InventorySourcePort,
    QuotationRepositoryPort,
    SettingsStorePort,
    SupplierDirectoryPort,
)
from autoquote.core import (
    NEEDS_REORDER,
    AutoQuotationFailed,
    EventBus,
    QuotationCreated,
    ReorderNeeded,
    get_event_bus,
)
from autoquote.core.clock import Clock, utc_now
from autoquote.errors import RepositoryFailure, SupplierResolutionFailure
from autoquote.observability import (
    observe_auto_quotation_admission,
    observe_auto_quotation_flush,
    set_auto_quotation_pending,
)


TimerFactory = Callable[[float, Callable[[], None]], Any]
ContextFactory = Callable[[], ContextManager[Any]]

DEFAULT_DEBOUNCE_SECONDS = 5
DEFAULT_STARTUP_DELAY_SECONDS = 5
DEFAULT_MAX_ITEMS = 20
DEFAULT_HEARTBEAT_SECONDS = 30


@dataclass(frozen=True)
class SkippedGroup:
    supplier_id: str
    category: str
    reason: str
    product_ids: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supplier_id": self.supplier_id,
            "category": self.category,
            "reason": self.reason,
            "product_ids": list(self.product_ids),
        }


@dataclass
class FlushReport:
    created: List[str] = field(default_factory=list)
    skipped: List[SkippedGroup] = field(default_factory=list)
    deduplicated: List[str] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)
    used_cache: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": list(self.created),
            "skipped": [group.to_dict() for group in self.skipped],
            "deduplicated": list(self.deduplicated),
            "truncated": list(self.truncated),
            "used_cache": self.used_cache,
            "duration_ms": round(self.duration_ms, 3),
        }


def _product_ids_of(record: Mapping[str, Any]) -> set[str]:
    ids = set()
    for raw in record.get("items") or []:
        item = raw if isinstance(raw, QuotationItem) else QuotationItem.from_dict(raw)
        if item.product_id:
            ids.add(item.product_id)
    return ids


def _default_timer_factory(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class AutoQuotationOrchestrator:
    def __init__(
        self,
        *,
        tenant_id: str,
        quotations: QuotationRepositoryPort,
        locks: ProcessingLockService,
        suppliers: SupplierDirectoryPort,
        settings: SettingsStorePort,
        inventory: InventorySourcePort | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
        timer_factory: TimerFactory | None = None,
        context_factory: ContextFactory | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        startup_delay_seconds: float = DEFAULT_STARTUP_DELAY_SECONDS,
        max_items: int = DEFAULT_MAX_ITEMS,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    ) -> None:
        self.tenant_id = tenant_id
        self.quotations = quotations
        self.locks = locks
        self.suppliers = suppliers
        self.settings = settings
        self.inventory = inventory
        self.event_bus = event_bus or get_event_bus()
        self._clock = clock
        self._timer_factory = timer_factory or _default_timer_factory
        self._context_factory = context_factory or nullcontext
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        self.startup_delay_seconds = max(0.0, float(startup_delay_seconds))
        self.max_items = max(1, int(max_items))
        self.heartbeat_seconds = max(1.0, float(heartbeat_seconds))

        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._pending: Dict[str, List[StockEvent]] = {}
        self._pending_products: set[str] = set()
        self._debounce_timer: Any = None
        self._startup_timer: Any = None
        self._unsubscribe: Callable[[], None] | None = None
        self._initialized = False
        self._open_cache: List[Dict[str, Any]] = []
        self._logger = logging.getLogger("autoquote.auto_quotation")

    # Lifecycle

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, *, reconcile: bool = True) -> None:
        with self._lock:
            if self._initialized:
                return
            self._unsubscribe = self.event_bus.subscribe(ReorderNeeded, self._on_reorder_needed)
            self._initialized = True
            if reconcile and self.inventory is not None:
                self._startup_timer = self._timer_factory(self.startup_delay_seconds, self._run_startup_reconciliation)
                self._startup_timer.start()
        self._logger.info("auto_quotation_initialized", extra={"tenant_id": self.tenant_id})

    def shutdown(self) -> None:
        with self._lock:
            for timer in (self._debounce_timer, self._startup_timer):
                if timer is not None:
                    timer.cancel()
            self._debounce_timer = None
            self._startup_timer = None
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            self._initialized = False

    # Admission

    def _on_reorder_needed(self, event: ReorderNeeded) -> None:
        if str(event.tenant_id or "").strip() != self.tenant_id:
            return
        self.handle_event(event)

    def _record_admission(self, result: str, event: StockEvent) -> str:
        observe_auto_quotation_admission(result)
        if result != "admitted":
            self._logger.info(
                "auto_quotation_event_dropped",
                extra={
                    "tenant_id": self.tenant_id,
                    "product_id": event.product_id,
                    "supplier_id": event.supplier_id,
                    "reason": result,
                },
            )
        return result

    def _automation_mode(self) -> str:
        try:
            return self.settings.automation_mode()
        except Exception:  # noqa: BLE001
            self._logger.warning("auto_quotation_settings_unavailable", extra={"tenant_id": self.tenant_id}, exc_info=True)
            return "auto"

    def handle_event(self, event: ReorderNeeded | StockEvent | Mapping[str, Any]) -> str:
        """Run the admission guards for one reorder signal; returns the admission result."""
        if isinstance(event, Mapping):
            event_type = str(event.get("type") or NEEDS_REORDER)
            if event_type != NEEDS_REORDER:
                return "ignored"
            stock_event = StockEvent.from_mapping(event)
        elif isinstance(event, ReorderNeeded):
            if event.type != NEEDS_REORDER:
                return "ignored"
            stock_event = StockEvent(
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
                enable_auto_quotation=as_optional_flag(event.enable_auto_quotation),
            )
        else:
            stock_event = event

        if self._automation_mode() == "manual":
            return self._record_admission("manual_mode", stock_event)
        if stock_event.enable_auto_quotation is False:
            return self._record_admission("auto_quotation_disabled", stock_event)
        if not stock_event.product_id:
            return self._record_admission("missing_product", stock_event)
        if not stock_event.supplier_id:
            return self._record_admission("missing_supplier", stock_event)

        with self._lock:
            if stock_event.product_id in self._pending_products:
                return self._record_admission("already_pending", stock_event)

            outcome = self.locks.acquire(stock_event.product_id)
            if not outcome.admitted:
                reason = "lock_contended" if outcome is LockOutcome.CONTENDED else "lock_unavailable"
                return self._record_admission(reason, stock_event)

            self._pending.setdefault(stock_event.supplier_id, []).append(stock_event)
            self._pending_products.add(stock_event.product_id)
            set_auto_quotation_pending(self.tenant_id, len(self._pending_products))
            self._reset_debounce_timer()

        self._logger.info(
            "auto_quotation_event_queued",
            extra={
                "tenant_id": self.tenant_id,
                "product_id": stock_event.product_id,
                "supplier_id": stock_event.supplier_id,
                "lock_outcome": outcome.value,
            },
        )
        return self._record_admission("admitted", stock_event)

    def _reset_debounce_timer(self) -> None:
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
        self._debounce_timer = self._timer_factory(self.debounce_seconds, self._on_debounce_elapsed)
        self._debounce_timer.start()

    def _on_debounce_elapsed(self) -> None:
        try:
            self.flush_pending()
        except Exception:  # noqa: BLE001
            self._logger.exception("auto_quotation_flush_crashed", extra={"tenant_id": self.tenant_id})

    # Manual surface

    def get_pending_count(self) -> int:
        with self._lock:
            return len(self._pending_products)

    def trigger_check(self, products: Iterable[Mapping[str, Any]]) -> int:
        """Push products through admission outside the stock-update flow; returns how many were queued.

        No threshold filtering happens here. A caller-supplied quantity to order is kept; when it
        is missing the refill quantity is derived from the stock levels of the product.
        """
        admitted = 0
        for product in products or []:
            event = StockEvent.from_mapping(product)
            if product.get("quantity_to_order") is None and product.get("quantityToOrder") is None:
                event = replace(event, quantity_to_order=quantity_to_order(product))
            if self.handle_event(event) == "admitted":
                admitted += 1
        return admitted

    def _run_startup_reconciliation(self) -> None:
        try:
            with self._context_factory():
                self.reconcile_inventory()
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("auto_quotation_reconciliation_failed", extra={"tenant_id": self.tenant_id})
            self._publish_failure(stage="reconciliation", reason=str(exc) or type(exc).__name__)

    def reconcile_inventory(self) -> int:
        """Publish a reorder signal for every inventory item that went low while nobody was listening."""
        if self.inventory is None:
            return 0
        published = 0
        for item in self.inventory.list_items():
            if not is_reorder_candidate(item):
                continue
            stock_event = to_stock_event(item)
            self.event_bus.publish(
                ReorderNeeded(
                    tenant_id=self.tenant_id,
                    product_id=stock_event.product_id,
                    product_name=stock_event.product_name,
                    category=stock_event.category,
                    current_stock=stock_event.current_stock,
                    quantity_to_order=stock_event.quantity_to_order,
                    unit=stock_event.unit,
                    supplier_id=stock_event.supplier_id,
                    supplier_name=stock_event.supplier_name,
                    supplier_email=stock_event.supplier_email,
                    current_price=stock_event.current_price,
                    enable_auto_quotation=stock_event.enable_auto_quotation,
                )
            )
            published += 1
        self._logger.info(
            "auto_quotation_reconciliation_done",
            extra={"tenant_id": self.tenant_id, "published": published},
        )
        return published

    # Flush

    def _take_batch(self) -> Dict[str, List[StockEvent]]:
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            batch = self._pending
            self._pending = {}
            self._pending_products = set()
            set_auto_quotation_pending(self.tenant_id, 0)
            return batch

    def _open_quotations(self, report: FlushReport) -> List[Dict[str, Any]]:
        try:
            records = self.quotations.list(sorted(OPEN_QUOTATION_STATUSES))
        except Exception as exc:  # noqa: BLE001
            failure = RepositoryFailure(details=str(exc))
            report.used_cache = True
            self._logger.warning(
                "auto_quotation_open_read_failed",
                extra={"tenant_id": self.tenant_id, "error_code": failure.code, "cached": len(self._open_cache)},
            )
            with self._lock:
                return list(self._open_cache)
        open_records = [record for record in records if str(record.get("status") or "") in OPEN_QUOTATION_STATUSES]
        with self._lock:
            self._open_cache = list(open_records)
        return open_records

    def flush_pending(self) -> FlushReport:
        with self._flush_lock:
            started = time.monotonic()
            flush_started_at = self._clock()
            batch = self._take_batch()
            report = FlushReport()
            if not batch:
                return report

            flushed_products = [event.product_id for events in batch.values() for event in events if event.product_id]
            try:
                with self._context_factory():
                    try:
                        open_records = self._open_quotations(report)
                        open_products: set[str] = set()
                        for record in open_records:
                            open_products |= _product_ids_of(record)

                        for supplier_id, events in batch.items():
                            by_category: Dict[str, List[StockEvent]] = {}
                            for event in events:
                                by_category.setdefault(event.category or DEFAULT_CATEGORY, []).append(event)
                            for category, group in by_category.items():
                                self._heartbeat_if_due(flush_started_at, group)
                                self._flush_group(supplier_id, category, group, open_products, report)
                    finally:
                        for product_id in flushed_products:
                            self.locks.release(product_id)
            finally:
                report.duration_ms = (time.monotonic() - started) * 1000.0
                observe_auto_quotation_flush(
                    created=len(report.created),
                    skipped_reasons=[group.reason for group in report.skipped],
                    deduplicated=len(report.deduplicated),
                    duration_ms=report.duration_ms,
                )

            self._logger.info(
                "auto_quotation_flushed",
                extra={
                    "tenant_id": self.tenant_id,
                    "created": len(report.created),
                    "skipped": len(report.skipped),
                    "deduplicated": len(report.deduplicated),
                    "used_cache": report.used_cache,
                },
            )
            return report

    def _heartbeat_if_due(self, flush_started_at: Any, group: List[StockEvent]) -> None:
        elapsed = (self._clock() - flush_started_at).total_seconds()
        if elapsed < self.heartbeat_seconds:
            return
        for event in group:
            if event.product_id:
                self.locks.extend(event.product_id)

    def _resolve_supplier(self, supplier_id: str) -> Supplier:
        try:
            supplier = self.suppliers.get_by_id(supplier_id)
        except Exception as exc:  # noqa: BLE001
            raise SupplierResolutionFailure(details=f"supplier_lookup_failed: {exc}") from exc
        if supplier is None:
            raise SupplierResolutionFailure(details="supplier_missing")
        if not supplier.auto_order_enabled:
            raise SupplierResolutionFailure(details="supplier_auto_order_disabled")
        if not supplier.email:
            raise SupplierResolutionFailure(details="supplier_without_email")
        return supplier

    def _skip(self, report: FlushReport, supplier_id: str, category: str, reason: str, group: List[StockEvent]) -> None:
        report.skipped.append(
            SkippedGroup(
                supplier_id=supplier_id,
                category=category,
                reason=reason,
                product_ids=tuple(event.product_id for event in group if event.product_id),
            )
        )

    def _flush_group(
        self,
        supplier_id: str,
        category: str,
        group: List[StockEvent],
        open_products: set[str],
        report: FlushReport,
    ) -> None:
        try:
            supplier = self._resolve_supplier(supplier_id)
        except SupplierResolutionFailure as exc:
            reason = (exc.details or exc.code).split(":", 1)[0]
            self._logger.warning(
                "auto_quotation_supplier_unresolved",
                extra={"tenant_id": self.tenant_id, "supplier_id": supplier_id, "category": category, "reason": reason},
            )
            self._skip(report, supplier_id, category, reason, group)
            self._publish_failure(stage="supplier", reason=reason, supplier_id=supplier_id, category=category)
            return

        items: List[QuotationItem] = []
        for event in group:
            if event.product_id in open_products:
                report.deduplicated.append(str(event.product_id))
                continue
            items.append(event.to_item())
        if not items:
            self._skip(report, supplier_id, category, "already_open", group)
            return

        if len(items) > self.max_items:
            report.truncated.extend(item.product_id for item in items[self.max_items :])
            items = items[: self.max_items]

        machine = QuotationMachine(
            QuotationContext(
                id=new_quotation_id(),
                tenant_id=self.tenant_id,
                supplier_id=supplier.id,
                supplier_name=supplier.name,
                supplier_email=supplier.email,
                category=category,
                items=tuple(items),
                details={"source": "auto_quotation"},
                created_by=SYSTEM_USER_ID,
            ),
            clock=self._clock,
        )
        record = machine.to_record()
        try:
            self.quotations.create(record)
        except Exception as exc:  # noqa: BLE001
            failure = RepositoryFailure(details=str(exc))
            self._logger.warning(
                "auto_quotation_create_failed",
                extra={
                    "tenant_id": self.tenant_id,
                    "supplier_id": supplier_id,
                    "category": category,
                    "error_code": failure.code,
                },
                exc_info=True,
            )
            self._skip(report, supplier_id, category, "create_failed", group)
            self._publish_failure(stage="create", reason=failure.code, supplier_id=supplier_id, category=category)
            return

        for item in items:
            open_products.add(item.product_id)
        with self._lock:
            self._open_cache.append(record)
        report.created.append(record["id"])
        self.event_bus.publish(
            QuotationCreated(
                tenant_id=self.tenant_id,
                quotation_id=record["id"],
                supplier_id=supplier.id,
                items_count=len(items),
                source="auto",
            )
        )
        self._logger.info(
            "auto_quotation_created",
            extra={
                "tenant_id": self.tenant_id,
                "quotation_id": record["id"],
                "supplier_id": supplier.id,
                "category": category,
                "items": len(items),
            },
        )

    def _publish_failure(
        self,
        *,
        stage: str,
        reason: str,
        product_id: str | None = None,
        supplier_id: str | None = None,
        category: str | None = None,
    ) -> None:
        self.event_bus.publish(
            AutoQuotationFailed(
                tenant_id=self.tenant_id,
                stage=stage,
                reason=reason,
                product_id=product_id,
                supplier_id=supplier_id,
                category=category,
            )
        )
