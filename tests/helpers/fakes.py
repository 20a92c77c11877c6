from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List

from autoquote.contexts.quotation.domain.models import ProcessingLock, Supplier
from autoquote.contexts.quotation.domain.ports import (
    InventorySourcePort,
    LockStorePort,
    QuotationRepositoryPort,
    SettingsStorePort,
    SupplierDirectoryPort,
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeTimer:
    def __init__(self, factory: "FakeTimerFactory", interval: float, function: Callable[[], None]) -> None:
        self.factory = factory
        self.interval = interval
        self.function = function
        self.due_at = 0.0
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True
        self.due_at = self.factory.elapsed + self.interval

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimerFactory:
    """Deterministic stand-in for threading.Timer; time only moves via ``advance``."""

    def __init__(self) -> None:
        self.elapsed = 0.0
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self, interval, function)
        self.timers.append(timer)
        return timer

    def active(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if timer.started and not timer.cancelled]

    def advance(self, seconds: float) -> int:
        self.elapsed += seconds
        fired = 0
        for timer in sorted(self.active(), key=lambda item: item.due_at):
            if timer.due_at <= self.elapsed and not timer.cancelled:
                timer.cancelled = True
                timer.function()
                fired += 1
        return fired


class InMemoryQuotationRepository(QuotationRepositoryPort):
    def __init__(self, records: Iterable[Dict[str, Any]] | None = None) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.fail_list = False
        self.fail_create = False
        for record in records or []:
            self.records[str(record["id"])] = copy.deepcopy(dict(record))

    def create(self, quotation: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail_create:
            raise RuntimeError("write failed")
        record = copy.deepcopy(dict(quotation))
        record.setdefault("status", "draft")
        self.records[str(record["id"])] = record
        return copy.deepcopy(record)

    def list(self, statuses: Iterable[str] | None = None) -> List[Dict[str, Any]]:
        if self.fail_list:
            raise RuntimeError("read failed")
        wanted = set(statuses or [])
        return [
            copy.deepcopy(record)
            for record in self.records.values()
            if not wanted or record.get("status") in wanted
        ]

    def get(self, quotation_id: str) -> Dict[str, Any] | None:
        record = self.records.get(quotation_id)
        return copy.deepcopy(record) if record else None

    def update(self, quotation_id: str, patch: Dict[str, Any]) -> None:
        self.records[quotation_id].update(copy.deepcopy(dict(patch)))

    def delete(self, quotation_id: str) -> None:
        self.records.pop(quotation_id, None)


class InMemoryLockStore(LockStorePort):
    def __init__(self, tenant_id: str = "tenant-test") -> None:
        self.tenant_id = tenant_id
        self.locks: Dict[str, ProcessingLock] = {}
        self.fail = False
        self.deleted: List[str] = []

    def _check(self) -> None:
        if self.fail:
            raise RuntimeError("lock store offline")

    def get(self, product_id: str) -> ProcessingLock | None:
        self._check()
        return self.locks.get(product_id)

    def put(self, lock: ProcessingLock) -> None:
        self._check()
        self.locks[lock.product_id] = lock

    def delete(self, product_id: str) -> None:
        self._check()
        self.deleted.append(product_id)
        self.locks.pop(product_id, None)

    def insert_if_absent(self, lock: ProcessingLock) -> bool:
        self._check()
        if lock.product_id in self.locks:
            return False
        self.locks[lock.product_id] = lock
        return True

    def replace_if_expired(self, lock: ProcessingLock, observed_expires_at: float) -> bool:
        self._check()
        current = self.locks.get(lock.product_id)
        if current is None or current.expires_at != observed_expires_at or current.expires_at > lock.acquired_at:
            return False
        self.locks[lock.product_id] = lock
        return True


class InMemorySupplierDirectory(SupplierDirectoryPort):
    def __init__(self, suppliers: Iterable[Supplier] | None = None) -> None:
        self.suppliers = {supplier.id: supplier for supplier in suppliers or []}
        self.lookups: List[str] = []

    def get_by_id(self, supplier_id: str) -> Supplier | None:
        self.lookups.append(supplier_id)
        return self.suppliers.get(supplier_id)


class InMemorySettings(SettingsStorePort):
    def __init__(self, mode: str = "auto") -> None:
        self.mode = mode

    def automation_mode(self) -> str:
        return self.mode

    def set_automation_mode(self, mode: str) -> str:
        self.mode = mode
        return mode


class InMemoryInventory(InventorySourcePort):
    def __init__(self, items: Iterable[Dict[str, Any]] | None = None) -> None:
        self.items = {str(item["id"]): dict(item) for item in items or []}

    def list_items(self) -> List[Dict[str, Any]]:
        return [dict(item) for item in self.items.values()]

    def get(self, item_id: str) -> Dict[str, Any] | None:
        item = self.items.get(item_id)
        return dict(item) if item else None

    def update_stock(self, item_id: str, current_stock: float) -> Dict[str, Any] | None:
        if item_id not in self.items:
            return None
        self.items[item_id]["current_stock"] = current_stock
        return dict(self.items[item_id])
