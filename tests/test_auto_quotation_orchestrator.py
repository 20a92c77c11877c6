import unittest

from autoquote.contexts.quotation.application.locking import SYSTEM_USER_ID, ProcessingLockService
from autoquote.contexts.quotation.application.orchestrator import AutoQuotationOrchestrator
from autoquote.contexts.quotation.domain.models import ProcessingLock, Supplier
from autoquote.core import AutoQuotationFailed, EventBus, QuotationCreated, ReorderNeeded
from autoquote.observability import metrics_snapshot, reset_metrics_for_tests
from tests.helpers.fakes import (
    FakeClock,
    FakeTimerFactory,
    InMemoryInventory,
    InMemoryLockStore,
    InMemoryQuotationRepository,
    InMemorySettings,
    InMemorySupplierDirectory,
)


TENANT = "tenant-a"


def _event(product_id, *, supplier_id="S1", category="Laticinios", **extra) -> ReorderNeeded:
    values = {
        "tenant_id": TENANT,
        "product_id": product_id,
        "product_name": f"Produto {product_id}",
        "category": category,
        "current_stock": 2,
        "quantity_to_order": 10,
        "unit": "un",
        "supplier_id": supplier_id,
        "current_price": 3.5,
    }
    values.update(extra)
    return ReorderNeeded(**values)


class _SlowSupplierDirectory(InMemorySupplierDirectory):
    def __init__(self, clock, suppliers) -> None:
        super().__init__(suppliers)
        self.clock = clock

    def get_by_id(self, supplier_id):
        self.clock.advance(seconds=40)
        return super().get_by_id(supplier_id)


class _RecordingLockStore(InMemoryLockStore):
    def __init__(self) -> None:
        super().__init__(tenant_id=TENANT)
        self.heartbeats = []

    def put(self, lock):
        self.heartbeats.append(lock.product_id)
        super().put(lock)


class AutoQuotationOrchestratorTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        self.clock = FakeClock()
        self.timers = FakeTimerFactory()
        self.bus = EventBus()
        self.repo = InMemoryQuotationRepository()
        self.lock_store = InMemoryLockStore(tenant_id=TENANT)
        self.suppliers = InMemorySupplierDirectory(
            [
                Supplier(id="S1", name="Distribuidora Serra", email="compras@serra.example"),
                Supplier(id="S2", name="Padaria Central", email="pedidos@central.example"),
                Supplier(id="S-off", name="Sem automacao", email="x@off.example", auto_order_enabled=False),
                Supplier(id="S-mute", name="Sem email", email=None),
            ]
        )
        self.settings = InMemorySettings("auto")
        self.inventory = InMemoryInventory()
        self.created_events = []
        self.failures = []
        self.bus.subscribe(QuotationCreated, self.created_events.append)
        self.bus.subscribe(AutoQuotationFailed, self.failures.append)
        self.orchestrator = self._build()

    def tearDown(self) -> None:
        self.orchestrator.shutdown()

    def _build(self, **overrides) -> AutoQuotationOrchestrator:
        values = {
            "tenant_id": TENANT,
            "quotations": self.repo,
            "locks": ProcessingLockService(self.lock_store, clock=self.clock),
            "suppliers": self.suppliers,
            "settings": self.settings,
            "inventory": self.inventory,
            "event_bus": self.bus,
            "clock": self.clock,
            "timer_factory": self.timers,
        }
        values.update(overrides)
        return AutoQuotationOrchestrator(**values)

    def _quotations(self):
        return list(self.repo.records.values())

    # Admission

    def test_manual_mode_drops_event(self) -> None:
        self.settings.mode = "manual"
        self.assertEqual(self.orchestrator.handle_event(_event("p1")), "manual_mode")
        self.assertEqual(self.orchestrator.get_pending_count(), 0)
        self.assertEqual(self.lock_store.locks, {})

    def test_event_with_auto_quotation_disabled_is_dropped(self) -> None:
        result = self.orchestrator.handle_event(_event("p1", enable_auto_quotation=False))
        self.assertEqual(result, "auto_quotation_disabled")
        self.assertEqual(self.orchestrator.get_pending_count(), 0)

    def test_missing_product_or_supplier_is_dropped(self) -> None:
        self.assertEqual(self.orchestrator.handle_event(_event(None)), "missing_product")
        self.assertEqual(self.orchestrator.handle_event(_event("p1", supplier_id=None)), "missing_supplier")
        self.assertEqual(self.orchestrator.get_pending_count(), 0)

    def test_live_lock_held_elsewhere_drops_event(self) -> None:
        now = self.clock.now.timestamp()
        self.lock_store.locks["p1"] = ProcessingLock(
            tenant_id=TENANT,
            product_id="p1",
            acquired_at=now,
            expires_at=now + 180,
            acquired_by="another-tab",
        )

        self.assertEqual(self.orchestrator.handle_event(_event("p1")), "lock_contended")
        self.assertEqual(self.orchestrator.get_pending_count(), 0)
        self.assertEqual(metrics_snapshot()["auto_quotation"]["admissions"].get("lock_contended"), 1)

    def test_lock_store_outage_admits_event_by_default(self) -> None:
        self.lock_store.fail = True
        self.assertEqual(self.orchestrator.handle_event(_event("p1")), "admitted")
        self.assertEqual(self.orchestrator.get_pending_count(), 1)

    def test_lock_store_outage_drops_event_when_fail_closed(self) -> None:
        self.lock_store.fail = True
        orchestrator = self._build(locks=ProcessingLockService(self.lock_store, clock=self.clock, fail_open=False))

        self.assertEqual(orchestrator.handle_event(_event("p1")), "lock_unavailable")
        self.assertEqual(orchestrator.get_pending_count(), 0)

    def test_mapping_events_are_accepted_and_other_types_ignored(self) -> None:
        self.assertEqual(self.orchestrator.handle_event({"type": "PRICE_CHANGED", "productId": "p1"}), "ignored")
        result = self.orchestrator.handle_event(
            {"type": "NEEDS_REORDER", "productId": "p1", "supplierId": "S1", "quantityToOrder": 4}
        )
        self.assertEqual(result, "admitted")

    # Batching

    def test_same_product_twice_in_window_is_queued_once(self) -> None:
        self.assertEqual(self.orchestrator.handle_event(_event("p1")), "admitted")
        self.assertEqual(self.orchestrator.handle_event(_event("p1")), "already_pending")
        self.assertEqual(self.orchestrator.get_pending_count(), 1)

        report = self.orchestrator.flush_pending()

        self.assertEqual(len(report.created), 1)
        quotation = self._quotations()[0]
        self.assertEqual([item["product_id"] for item in quotation["items"]], ["p1"])

    def test_each_admitted_event_resets_single_debounce_timer(self) -> None:
        self.orchestrator.handle_event(_event("p1"))
        self.orchestrator.handle_event(_event("p2"))

        active = self.timers.active()
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0].interval, 5)
        self.assertTrue(self.timers.timers[0].cancelled)

    # Flush

    def test_one_supplier_two_categories_creates_two_quotations(self) -> None:
        self.orchestrator.handle_event(_event("milk", category="Laticinios"))
        self.orchestrator.handle_event(_event("cheese", category="Laticinios"))
        self.orchestrator.handle_event(_event("bread", category="Padaria"))

        report = self.orchestrator.flush_pending()

        self.assertEqual(len(report.created), 2)
        by_category = {quotation["category"]: quotation for quotation in self._quotations()}
        self.assertEqual(set(by_category), {"Laticinios", "Padaria"})
        self.assertEqual(
            sorted(item["product_id"] for item in by_category["Laticinios"]["items"]),
            ["cheese", "milk"],
        )
        self.assertEqual([item["product_id"] for item in by_category["Padaria"]["items"]], ["bread"])
        for quotation in self._quotations():
            self.assertEqual(quotation["supplier_id"], "S1")
            self.assertEqual({item["category"] for item in quotation["items"]}, {quotation["category"]})

    def test_missing_category_falls_back_to_default(self) -> None:
        self.orchestrator.handle_event(_event("p1", category=None))
        self.orchestrator.flush_pending()
        self.assertEqual(self._quotations()[0]["category"], "Outros")

    def test_product_in_open_quotation_is_not_quoted_again(self) -> None:
        self.repo.create(
            {
                "id": "quot_existing",
                "status": "sent",
                "supplier_id": "S2",
                "category": "Outra categoria",
                "items": [{"product_id": "X", "name": "Produto X", "quantity": 3}],
            }
        )

        self.orchestrator.handle_event(_event("X", category="Laticinios"))
        report = self.orchestrator.flush_pending()

        self.assertEqual(report.created, [])
        self.assertEqual(report.deduplicated, ["X"])
        self.assertEqual(report.skipped[0].reason, "already_open")
        containing_x = [
            quotation
            for quotation in self._quotations()
            if any(item["product_id"] == "X" for item in quotation["items"])
        ]
        self.assertEqual([quotation["id"] for quotation in containing_x], ["quot_existing"])

    def test_closed_quotation_does_not_block_new_one(self) -> None:
        self.repo.create(
            {
                "id": "quot_done",
                "status": "delivered",
                "supplier_id": "S1",
                "items": [{"product_id": "X", "name": "Produto X", "quantity": 3}],
            }
        )
        self.orchestrator.handle_event(_event("X"))
        self.assertEqual(len(self.orchestrator.flush_pending().created), 1)

    def test_legacy_open_status_blocks_duplicate(self) -> None:
        self.repo.create(
            {
                "id": "quot_legacy",
                "status": "awaiting",
                "supplier_id": "S1",
                "items": [{"productId": "X", "name": "Produto X", "quantity": 3}],
            }
        )
        self.orchestrator.handle_event(_event("X"))
        self.assertEqual(self.orchestrator.flush_pending().deduplicated, ["X"])

    def test_created_quotation_is_system_draft(self) -> None:
        self.orchestrator.handle_event(_event("p1"))
        report = self.orchestrator.flush_pending()

        quotation = self.repo.records[report.created[0]]
        self.assertEqual(quotation["status"], "draft")
        self.assertEqual(quotation["created_by"], SYSTEM_USER_ID)
        self.assertEqual(quotation["supplier_email"], "compras@serra.example")
        self.assertEqual(quotation["history"][0]["event"], "INIT")
        self.assertEqual(quotation["items"][0]["quantity"], 10)

        self.assertEqual(len(self.created_events), 1)
        self.assertEqual(self.created_events[0].source, "auto")
        self.assertEqual(self.created_events[0].quotation_id, report.created[0])

    def test_items_are_capped_at_twenty(self) -> None:
        for index in range(25):
            self.orchestrator.handle_event(_event(f"p{index:02d}"))

        report = self.orchestrator.flush_pending()

        self.assertEqual(len(report.created), 1)
        self.assertEqual(len(self._quotations()[0]["items"]), 20)
        self.assertEqual(report.truncated, [f"p{index:02d}" for index in range(20, 25)])

    def test_unusable_suppliers_skip_only_their_group(self) -> None:
        self.orchestrator.handle_event(_event("a", supplier_id="S-unknown"))
        self.orchestrator.handle_event(_event("b", supplier_id="S-off"))
        self.orchestrator.handle_event(_event("c", supplier_id="S-mute"))
        self.orchestrator.handle_event(_event("d", supplier_id="S2"))

        report = self.orchestrator.flush_pending()

        self.assertEqual(len(report.created), 1)
        self.assertEqual(self._quotations()[0]["supplier_id"], "S2")
        reasons = {group.supplier_id: group.reason for group in report.skipped}
        self.assertEqual(
            reasons,
            {
                "S-unknown": "supplier_missing",
                "S-off": "supplier_auto_order_disabled",
                "S-mute": "supplier_without_email",
            },
        )
        self.assertEqual({failure.stage for failure in self.failures}, {"supplier"})
        self.assertEqual(len(self.failures), 3)

    def test_supplier_lookup_error_is_contained(self) -> None:
        class _BrokenDirectory(InMemorySupplierDirectory):
            def get_by_id(self, supplier_id):
                if supplier_id == "S1":
                    raise RuntimeError("timeout")
                return super().get_by_id(supplier_id)

        orchestrator = self._build(suppliers=_BrokenDirectory(self.suppliers.suppliers.values()))
        orchestrator.handle_event(_event("a", supplier_id="S1"))
        orchestrator.handle_event(_event("b", supplier_id="S2"))

        report = orchestrator.flush_pending()

        self.assertEqual(len(report.created), 1)
        self.assertEqual(report.skipped[0].reason, "supplier_lookup_failed")

    def test_batch_cleared_and_locks_released_even_when_create_fails(self) -> None:
        self.repo.fail_create = True
        self.orchestrator.handle_event(_event("p1"))
        self.orchestrator.handle_event(_event("p2", supplier_id="S2"))

        report = self.orchestrator.flush_pending()

        self.assertEqual(report.created, [])
        self.assertEqual({group.reason for group in report.skipped}, {"create_failed"})
        self.assertEqual(self.orchestrator.get_pending_count(), 0)
        self.assertEqual(self.lock_store.locks, {})
        self.assertEqual([failure.stage for failure in self.failures], ["create", "create"])

    def test_locks_released_after_successful_flush(self) -> None:
        self.orchestrator.handle_event(_event("p1"))
        self.assertIn("p1", self.lock_store.locks)

        self.orchestrator.flush_pending()

        self.assertEqual(self.lock_store.locks, {})
        self.assertEqual(self.lock_store.deleted, ["p1"])

    def test_repository_read_failure_falls_back_to_cached_open_set(self) -> None:
        self.orchestrator.handle_event(_event("X"))
        first = self.orchestrator.flush_pending()
        self.assertEqual(len(first.created), 1)

        self.repo.fail_list = True
        self.orchestrator.handle_event(_event("X"))
        second = self.orchestrator.flush_pending()

        self.assertTrue(second.used_cache)
        self.assertEqual(second.created, [])
        self.assertEqual(second.deduplicated, ["X"])

    def test_empty_flush_is_a_no_op(self) -> None:
        report = self.orchestrator.flush_pending()
        self.assertEqual(report.to_dict()["created"], [])
        self.assertFalse(report.used_cache)

    def test_heartbeat_extends_locks_for_slow_flush(self) -> None:
        store = _RecordingLockStore()
        orchestrator = self._build(
            locks=ProcessingLockService(store, clock=self.clock),
            suppliers=_SlowSupplierDirectory(self.clock, self.suppliers.suppliers.values()),
        )
        orchestrator.handle_event(_event("milk", category="Laticinios"))
        orchestrator.handle_event(_event("bread", category="Padaria"))

        orchestrator.flush_pending()

        self.assertEqual(store.heartbeats, ["bread"])

    # Debounce, lifecycle and reconciliation

    def test_two_categories_one_second_apart_flush_after_debounce(self) -> None:
        self.orchestrator.init(reconcile=False)

        self.bus.publish(_event("A", category="Dairy"))
        self.timers.advance(1)
        self.bus.publish(_event("B", category="Bakery"))

        self.timers.advance(4)
        self.assertEqual(self._quotations(), [])
        self.assertEqual(self.orchestrator.get_pending_count(), 2)

        self.timers.advance(1)
        quotations = self._quotations()
        self.assertEqual(len(quotations), 2)
        for quotation in quotations:
            self.assertEqual(quotation["status"], "draft")
            self.assertEqual(quotation["supplier_id"], "S1")
            self.assertEqual(len(quotation["items"]), 1)
        self.assertEqual({quotation["category"] for quotation in quotations}, {"Dairy", "Bakery"})
        self.assertEqual(self.orchestrator.get_pending_count(), 0)

    def test_events_for_other_tenants_are_ignored(self) -> None:
        self.orchestrator.init(reconcile=False)
        self.bus.publish(_event("p1", tenant_id="tenant-b"))
        self.assertEqual(self.orchestrator.get_pending_count(), 0)

    def test_init_is_idempotent_and_shutdown_unsubscribes(self) -> None:
        self.orchestrator.init(reconcile=False)
        self.orchestrator.init(reconcile=False)

        self.bus.publish(_event("p1"))
        self.assertEqual(self.orchestrator.get_pending_count(), 1)

        self.orchestrator.shutdown()
        self.assertEqual(self.timers.active(), [])
        self.bus.publish(_event("p2"))
        self.assertEqual(self.orchestrator.get_pending_count(), 1)

    def test_startup_reconciliation_publishes_only_eligible_items(self) -> None:
        self.inventory.items = {
            "low": {"id": "low", "name": "Leite", "current_stock": 2, "min_stock": 5, "max_stock": 20, "supplier_id": "S1"},
            "at-min": {"id": "at-min", "name": "Ovos", "current_stock": 5, "min_stock": 5, "max_stock": 8, "supplier_id": "S1"},
            "no-min": {"id": "no-min", "name": "Sal", "current_stock": 0, "min_stock": 0, "max_stock": 5, "supplier_id": "S1"},
            "ok": {"id": "ok", "name": "Arroz", "current_stock": 9, "min_stock": 5, "max_stock": 20, "supplier_id": "S1"},
            "orphan": {"id": "orphan", "name": "Cafe", "current_stock": 1, "min_stock": 5, "max_stock": 20},
            "off": {
                "id": "off",
                "name": "Acucar",
                "current_stock": 1,
                "min_stock": 5,
                "max_stock": 20,
                "supplier_id": "S1",
                "enable_auto_quotation": False,
            },
        }
        published = []
        self.bus.subscribe(ReorderNeeded, published.append)

        self.orchestrator.init()
        self.assertEqual(published, [])

        self.timers.advance(5)

        self.assertEqual(sorted(event.product_id for event in published), ["at-min", "low"])
        quantities = {event.product_id: event.quantity_to_order for event in published}
        self.assertEqual(quantities, {"low": 18.0, "at-min": 3.0})
        self.assertEqual(self.orchestrator.get_pending_count(), 2)

    def test_trigger_check_keeps_caller_quantity_without_thresholds(self) -> None:
        queued = self.orchestrator.trigger_check(
            [{"id": "P1", "name": "Farinha", "currentStock": 1, "quantityToOrder": 7, "supplierId": "S1"}]
        )
        self.assertEqual(queued, 1)

        self.orchestrator.flush_pending()

        (quotation,) = self._quotations()
        self.assertEqual(quotation["items"][0]["product_id"], "P1")
        self.assertEqual(quotation["items"][0]["quantity"], 7.0)

    def test_trigger_check_does_not_filter_on_stock_levels(self) -> None:
        queued = self.orchestrator.trigger_check(
            [
                {"id": "p1", "name": "Leite", "currentStock": 1, "minStock": 4, "maxStock": 10, "supplierId": "S1"},
                {"id": "p2", "name": "Pao", "currentStock": 9, "minStock": 4, "maxStock": 10, "supplierId": "S1"},
                {"id": "p3", "name": "Sem fornecedor", "currentStock": 0, "minStock": 4},
            ]
        )
        self.assertEqual(queued, 2)
        self.assertEqual(self.orchestrator.get_pending_count(), 2)

        self.orchestrator.flush_pending()

        (quotation,) = self._quotations()
        quantities = {item["product_id"]: item["quantity"] for item in quotation["items"]}
        self.assertEqual(quantities, {"p1": 9.0, "p2": 1.0})

    def test_mapping_event_with_false_string_flag_is_dropped(self) -> None:
        for flag in ("false", "0", "no"):
            result = self.orchestrator.handle_event(
                {"type": "NEEDS_REORDER", "productId": "p1", "supplierId": "S1", "enableAutoQuotation": flag}
            )
            self.assertEqual(result, "auto_quotation_disabled")
        self.assertEqual(self.orchestrator.get_pending_count(), 0)

    def test_flush_metrics_are_recorded(self) -> None:
        self.orchestrator.handle_event(_event("p1"))
        self.orchestrator.flush_pending()

        auto = metrics_snapshot()["auto_quotation"]
        self.assertEqual(auto["created_total"], 1)
        self.assertEqual(auto["flush_count"], 1)
        self.assertEqual(auto["pending"].get(TENANT), 0)


if __name__ == "__main__":
    unittest.main()
