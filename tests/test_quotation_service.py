import unittest

from autoquote.contexts.quotation.application.service import QuotationService
from autoquote.contexts.quotation.domain.models import Supplier
from autoquote.core import EventBus, QuotationCreated, QuotationTransitioned
from autoquote.errors import NotFoundError, ValidationError
from tests.helpers.fakes import FakeClock, InMemoryQuotationRepository, InMemorySupplierDirectory


class QuotationServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.repo = InMemoryQuotationRepository()
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(QuotationCreated, self.events.append)
        self.bus.subscribe(QuotationTransitioned, self.events.append)
        self.service = QuotationService(
            tenant_id="tenant-a",
            repository=self.repo,
            suppliers=InMemorySupplierDirectory(
                [Supplier(id="S1", name="Distribuidora Serra", email="compras@serra.example")]
            ),
            event_bus=self.bus,
            clock=self.clock,
        )

    def _create(self, **overrides) -> str:
        data = {
            "supplier_id": "S1",
            "category": "Laticinios",
            "items": [{"product_id": "p1", "name": "Leite", "quantity": 12}],
        }
        data.update(overrides)
        snapshot = self.service.create_quotation(data, created_by="buyer@demo.com")
        return snapshot["context"]["id"]

    def test_create_fills_supplier_contact_and_publishes(self) -> None:
        quotation_id = self._create()
        record = self.repo.records[quotation_id]

        self.assertEqual(record["status"], "draft")
        self.assertEqual(record["supplier_email"], "compras@serra.example")
        self.assertEqual(record["details"], {"source": "manual"})
        self.assertEqual(record["created_by"], "buyer@demo.com")
        self.assertIsInstance(self.events[0], QuotationCreated)
        self.assertEqual(self.events[0].source, "manual")

    def test_create_validates_input(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create_quotation({"items": [{"product_id": "p1", "quantity": 1}]})
        with self.assertRaises(ValidationError):
            self.service.create_quotation({"supplier_id": "S1", "items": []})
        with self.assertRaises(ValidationError):
            self.service.create_quotation({"supplier_id": "S1", "items": [{"product_id": "p1", "quantity": 0}]})
        with self.assertRaises(ValidationError):
            self.service.create_quotation({"supplier_id": "S9", "items": [{"product_id": "p1", "quantity": 1}]})
        self.assertEqual(self.repo.records, {})

    def test_transition_persists_state_and_history(self) -> None:
        quotation_id = self._create()

        result = self.service.transition(quotation_id, "send", {"subject": "Cotacao"})

        self.assertTrue(result.success)
        record = self.repo.records[quotation_id]
        self.assertEqual(record["status"], "sent")
        self.assertIsNotNone(record["sent_at"])
        self.assertEqual([entry["event"] for entry in record["history"]], ["INIT", "SEND"])
        transitioned = self.events[-1]
        self.assertIsInstance(transitioned, QuotationTransitioned)
        self.assertEqual((transitioned.previous_state, transitioned.state), ("draft", "sent"))

    def test_rejected_transition_leaves_record_untouched(self) -> None:
        quotation_id = self._create()
        before = dict(self.repo.records[quotation_id])

        result = self.service.transition(quotation_id, "CONFIRM")

        self.assertFalse(result.success)
        self.assertTrue(result.error)
        self.assertEqual(self.repo.records[quotation_id], before)
        self.assertFalse(any(isinstance(event, QuotationTransitioned) for event in self.events))

    def test_missing_quotation_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.transition("quot_missing", "SEND")
        with self.assertRaises(NotFoundError):
            self.service.delete("quot_missing")

    def test_list_filters_by_status_and_rejects_unknown(self) -> None:
        draft_id = self._create()
        sent_id = self._create()
        self.service.transition(sent_id, "SEND")

        self.assertEqual([record["id"] for record in self.service.list("sent")], [sent_id])
        self.assertEqual({record["id"] for record in self.service.list()}, {draft_id, sent_id})
        with self.assertRaises(ValidationError) as ctx:
            self.service.list("archived")
        self.assertEqual(ctx.exception.message_key, "status_invalid")

    def test_expire_overdue_only_touches_quotations_past_policy(self) -> None:
        old_id = self._create()
        self.service.transition(old_id, "SEND")
        self.clock.advance(days=3)
        recent_id = self._create()
        self.service.transition(recent_id, "SEND")

        self.clock.advance(days=4)
        expired = self.service.expire_overdue()

        self.assertEqual(expired, [old_id])
        self.assertEqual(self.repo.records[old_id]["status"], "expired")
        self.assertEqual(self.repo.records[recent_id]["status"], "sent")

    def test_expire_overdue_handles_legacy_awaiting_status(self) -> None:
        quotation_id = self._create()
        self.service.transition(quotation_id, "SEND")
        self.repo.records[quotation_id]["status"] = "awaiting"

        self.clock.advance(days=8)

        self.assertEqual(self.service.expire_overdue(), [quotation_id])
        self.assertEqual(self.repo.records[quotation_id]["status"], "expired")

    def test_delete_removes_record(self) -> None:
        quotation_id = self._create()
        self.service.delete(quotation_id)
        self.assertNotIn(quotation_id, self.repo.records)


if __name__ == "__main__":
    unittest.main()
