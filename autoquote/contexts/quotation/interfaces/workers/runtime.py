from __future__ import annotations

import os
import threading
import time
from typing import Any, Dict, List

from flask import Flask

from autoquote.contexts.inventory.infrastructure.inventory_repository import InventoryRepository
from autoquote.contexts.quotation.application.locking import ProcessingLockService
from autoquote.contexts.quotation.application.orchestrator import AutoQuotationOrchestrator, TimerFactory
from autoquote.contexts.quotation.application.service import QuotationService
from autoquote.contexts.quotation.domain.machine import MachinePolicy
from autoquote.contexts.quotation.infrastructure.repositories import (
    ProcessingLockRepository,
    QuotationRepository,
    SettingsRepository,
    SupplierRepository,
)
from autoquote.core import EventBus, get_event_bus
from autoquote.db import close_db, get_db
from autoquote.tenant import DEFAULT_TENANT_ID, normalize_tenant_id


REGISTRY_EXTENSION_KEY = "auto_quotation"
EXPIRY_EXTENSION_KEY = "quotation_expiry_scheduler"


def machine_policy(app: Flask) -> MachinePolicy:
    return MachinePolicy(
        expiry_days=_int_config(app, "QUOTATION_EXPIRY_DAYS", 7, 1, 365),
        cancel_window_hours=_int_config(app, "QUOTATION_CANCEL_WINDOW_HOURS", 24, 1, 24 * 365),
    )


def build_quotation_service(app: Flask, tenant_id: str, *, event_bus: EventBus | None = None) -> QuotationService:
    return QuotationService(
        tenant_id=tenant_id,
        repository=QuotationRepository(tenant_id=tenant_id),
        suppliers=SupplierRepository(tenant_id=tenant_id),
        event_bus=event_bus,
        policy=machine_policy(app),
    )


class AutoQuotationRegistry:
    """One orchestrator per tenant, created on first use and kept for the app lifetime."""

    def __init__(self, app: Flask, *, event_bus: EventBus | None = None) -> None:
        self.app = app
        self.event_bus = event_bus or get_event_bus()
        self.timer_factory: TimerFactory | None = None
        self._lock = threading.Lock()
        self._orchestrators: Dict[str, AutoQuotationOrchestrator] = {}

    def _build(self, tenant_id: str) -> AutoQuotationOrchestrator:
        config = self.app.config
        lock_service = ProcessingLockService(
            ProcessingLockRepository(tenant_id=tenant_id),
            ttl_seconds=_int_config(self.app, "AUTO_QUOTATION_LOCK_TTL_SECONDS", 180, 1, 86_400),
            fail_open=bool(config.get("AUTO_QUOTATION_LOCK_FAIL_OPEN", True)),
        )
        return AutoQuotationOrchestrator(
            tenant_id=tenant_id,
            quotations=QuotationRepository(tenant_id=tenant_id),
            locks=lock_service,
            suppliers=SupplierRepository(tenant_id=tenant_id),
            settings=SettingsRepository(
                tenant_id=tenant_id,
                default_mode=str(config.get("AUTOMATION_MODE_DEFAULT") or "auto"),
            ),
            inventory=InventoryRepository(tenant_id=tenant_id),
            event_bus=self.event_bus,
            timer_factory=self.timer_factory,
            context_factory=self.app.app_context,
            debounce_seconds=_int_config(self.app, "AUTO_QUOTATION_DEBOUNCE_SECONDS", 5, 0, 3600),
            startup_delay_seconds=_int_config(self.app, "AUTO_QUOTATION_STARTUP_DELAY_SECONDS", 5, 0, 3600),
            max_items=_int_config(self.app, "AUTO_QUOTATION_MAX_ITEMS", 20, 1, 500),
            heartbeat_seconds=_int_config(self.app, "AUTO_QUOTATION_LOCK_HEARTBEAT_SECONDS", 30, 1, 3600),
        )

    def get(self, tenant_id: str | None, *, reconcile: bool = False) -> AutoQuotationOrchestrator:
        scope = normalize_tenant_id(tenant_id) or DEFAULT_TENANT_ID
        with self._lock:
            orchestrator = self._orchestrators.get(scope)
            if orchestrator is None:
                orchestrator = self._build(scope)
                self._orchestrators[scope] = orchestrator
        orchestrator.init(reconcile=reconcile)
        return orchestrator

    def tenants(self) -> List[str]:
        with self._lock:
            return sorted(self._orchestrators)

    def start_known_tenants(self) -> List[str]:
        tenant_ids: set[str] = set()
        with self.app.app_context():
            try:
                rows = get_db().execute(
                    """
                    SELECT tenant_id FROM inventory_items
                    UNION
                    SELECT tenant_id FROM settings
                    """
                ).fetchall()
                tenant_ids = {str(dict(row)["tenant_id"]) for row in rows}
            except Exception:  # noqa: BLE001
                self.app.logger.warning("auto_quotation_tenant_scan_failed", exc_info=True)
            finally:
                close_db()
        tenant_ids.add(DEFAULT_TENANT_ID)
        for tenant_id in sorted(tenant_ids):
            self.get(tenant_id, reconcile=True)
        return sorted(tenant_ids)

    def shutdown(self) -> None:
        with self._lock:
            orchestrators = list(self._orchestrators.values())
            self._orchestrators.clear()
        for orchestrator in orchestrators:
            orchestrator.shutdown()


def get_registry(app: Flask) -> AutoQuotationRegistry:
    registry = app.extensions.get(REGISTRY_EXTENSION_KEY)
    if registry is None:
        registry = AutoQuotationRegistry(app)
        app.extensions[REGISTRY_EXTENSION_KEY] = registry
    return registry


class QuotationExpiryScheduler:
    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "QUOTATION_EXPIRY_INTERVAL_SECONDS", 3600, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "QUOTATION_EXPIRY_MIN_BACKOFF_SECONDS", 30, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "QUOTATION_EXPIRY_MAX_BACKOFF_SECONDS",
            1800,
            self.min_backoff_seconds,
            86_400,
        )

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[str, int] = {}
        self._next_run_at: dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="quotation-expiry", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> Dict[str, Any]:
        expired: Dict[str, Any] = {}
        with self.app.app_context():
            try:
                rows = get_db().execute(
                    "SELECT DISTINCT tenant_id FROM quotations WHERE status IN (?, ?) ORDER BY tenant_id",
                    ("sent", "awaiting"),
                ).fetchall()
                for row in rows:
                    tenant_id = str(dict(row)["tenant_id"])
                    if not self._is_due(tenant_id):
                        continue
                    try:
                        expired[tenant_id] = build_quotation_service(self.app, tenant_id).expire_overdue()
                        self._clear_backoff(tenant_id)
                    except Exception:  # noqa: BLE001
                        self.app.logger.exception("quotation_expiry_failed", extra={"tenant_id": tenant_id})
                        self._register_failure(tenant_id)
            finally:
                close_db()
        return expired

    def _is_due(self, tenant_id: str) -> bool:
        next_run_at = self._next_run_at.get(tenant_id)
        if next_run_at is None:
            return True
        return time.monotonic() >= next_run_at

    def _clear_backoff(self, tenant_id: str) -> None:
        self._failure_counts.pop(tenant_id, None)
        self._next_run_at.pop(tenant_id, None)

    def _register_failure(self, tenant_id: str) -> None:
        failure_count = self._failure_counts.get(tenant_id, 0) + 1
        self._failure_counts[tenant_id] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[tenant_id] = time.monotonic() + backoff_seconds


def start_background_workers(app: Flask) -> None:
    if not _should_start_workers(app):
        return

    if app.config.get("AUTO_QUOTATION_ENABLED", True):
        tenants = get_registry(app).start_known_tenants()
        app.logger.info("Auto-quotation started for tenants: %s", ", ".join(tenants))

    if app.config.get("QUOTATION_EXPIRY_ENABLED", True):
        scheduler = QuotationExpiryScheduler(app)
        scheduler.start()
        app.extensions[EXPIRY_EXTENSION_KEY] = scheduler
        app.logger.info("Quotation expiry scheduler started: interval=%ss", scheduler.interval_seconds)


def _should_start_workers(app: Flask) -> bool:
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
