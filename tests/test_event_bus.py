import unittest

from autoquote.core import AutoQuotationFailed, EventBus, QuotationCreated, ReorderNeeded


class EventBusTest(unittest.TestCase):
    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []

        bus.subscribe(QuotationCreated, lambda _event: execution_trace.append("first"))
        bus.subscribe(QuotationCreated, lambda _event: execution_trace.append("second"))
        bus.publish(QuotationCreated(tenant_id="tenant-a", quotation_id="quot_1", supplier_id="S1"))

        self.assertEqual(execution_trace, ["first", "second"])

    def test_handlers_only_receive_their_event_type(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(AutoQuotationFailed, received.append)

        bus.publish(QuotationCreated(tenant_id="tenant-a", quotation_id="quot_1", supplier_id="S1"))
        bus.publish(AutoQuotationFailed(tenant_id="tenant-a", stage="supplier", reason="supplier_missing"))

        self.assertEqual([event.reason for event in received], ["supplier_missing"])

    def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("boom")

        bus.subscribe(ReorderNeeded, broken)
        bus.subscribe(ReorderNeeded, received.append)
        bus.publish(ReorderNeeded(tenant_id="tenant-a", product_id="p1"))

        self.assertEqual(len(received), 1)

    def test_unsubscribe_stops_delivery(self) -> None:
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(ReorderNeeded, received.append)

        unsubscribe()
        bus.publish(ReorderNeeded(tenant_id="tenant-a", product_id="p1"))

        self.assertEqual(received, [])

    def test_event_workspace_defaults_to_tenant(self) -> None:
        event = ReorderNeeded(tenant_id="tenant-a", product_id="p1")
        self.assertEqual(event.workspace_id, "tenant-a")
        self.assertEqual(event.type, "NEEDS_REORDER")
        self.assertTrue(event.event_id)
        self.assertIsNotNone(event.occurred_at.tzinfo)


if __name__ == "__main__":
    unittest.main()
