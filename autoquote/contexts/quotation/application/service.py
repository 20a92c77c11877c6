from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

from autoquote.contexts.quotation.domain.machine import (
    MachinePolicy,
    MachineSnapshot,
    QuotationEvent,
    QuotationMachine,
    QuotationState,
    TransitionResult,
    parse_state,
)
from autoquote.contexts.quotation.domain.models import (
    TIMESTAMP_FIELDS,
    QuotationContext,
    QuotationItem,
    new_quotation_id,
)
from autoquote.contexts.quotation.domain.ports import QuotationRepositoryPort, SupplierDirectoryPort
from autoquote.core import EventBus, QuotationCreated, QuotationTransitioned, get_event_bus
from autoquote.core.clock import Clock, utc_now
from autoquote.errors import NotFoundError, ValidationError


class QuotationService:
    """Application facade for manual quotation handling."""

    def __init__(
        self,
        *,
        tenant_id: str,
        repository: QuotationRepositoryPort,
        suppliers: SupplierDirectoryPort | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
        policy: MachinePolicy | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.repository = repository
        self.suppliers = suppliers
        self.event_bus = event_bus or get_event_bus()
        self._clock = clock
        self.policy = policy or MachinePolicy()
        self._logger = logging.getLogger("autoquote.quotation")

    def _machine(self, record: Mapping[str, Any]) -> QuotationMachine:
        return QuotationMachine.from_record(record, clock=self._clock, policy=self.policy)

    def _load(self, quotation_id: str) -> Dict[str, Any]:
        record = self.repository.get(quotation_id)
        if record is None:
            raise NotFoundError(details=f"cotacao {quotation_id} nao encontrada")
        return record

    def create_quotation(self, data: Mapping[str, Any], *, created_by: str | None = None) -> Dict[str, Any]:
        supplier_id = str(data.get("supplier_id") or "").strip()
        if not supplier_id:
            raise ValidationError(details="supplier_id obrigatorio.", payload={"field": "supplier_id"})

        raw_items = data.get("items") or []
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError(details="Informe ao menos um item.", payload={"field": "items"})
        items = [QuotationItem.from_dict(item) for item in raw_items if isinstance(item, Mapping)]
        if len(items) != len(raw_items) or any(not item.product_id or item.quantity <= 0 for item in items):
            raise ValidationError(details="Itens invalidos.", payload={"field": "items"})

        supplier_name = data.get("supplier_name")
        supplier_email = data.get("supplier_email")
        if self.suppliers is not None:
            supplier = self.suppliers.get_by_id(supplier_id)
            if supplier is None:
                raise ValidationError(details="Fornecedor inexistente.", payload={"field": "supplier_id"})
            supplier_name = supplier_name or supplier.name
            supplier_email = supplier_email or supplier.email

        machine = QuotationMachine(
            QuotationContext(
                id=new_quotation_id(),
                tenant_id=self.tenant_id,
                supplier_id=supplier_id,
                supplier_name=supplier_name,
                supplier_email=supplier_email,
                category=str(data.get("category") or "").strip() or None,
                items=tuple(items),
                details={"source": "manual"},
                created_by=created_by,
            ),
            clock=self._clock,
            policy=self.policy,
        )
        record = self.repository.create(machine.to_record())
        self.event_bus.publish(
            QuotationCreated(
                tenant_id=self.tenant_id,
                quotation_id=record["id"],
                supplier_id=supplier_id,
                items_count=len(items),
                source="manual",
            )
        )
        self._logger.info("quotation_created", extra={"tenant_id": self.tenant_id, "quotation_id": record["id"]})
        return self._machine(record).get_snapshot().to_dict()

    def get(self, quotation_id: str) -> Dict[str, Any]:
        return self._load(quotation_id)

    def list(self, status: str | None = None) -> List[Dict[str, Any]]:
        if status:
            parsed = parse_state(status)
            if parsed is None:
                raise ValidationError(message_key="status_invalid", details=f"status invalido: {status}")
            return self.repository.list([parsed.value])
        return self.repository.list()

    def snapshot(self, quotation_id: str) -> MachineSnapshot:
        return self._machine(self._load(quotation_id)).get_snapshot()

    def transition(self, quotation_id: str, event: Any, payload: Any = None) -> TransitionResult:
        machine = self._machine(self._load(quotation_id))
        result = machine.send(event, payload)
        if not result.success:
            return result

        record = machine.to_record()
        patch = {
            "status": record["status"],
            "quoted_items": record["quoted_items"],
            "quoted_total": record["quoted_total"],
            "details": record["details"],
            "history": record["history"],
            "updated_at": record["updated_at"],
        }
        for name in TIMESTAMP_FIELDS:
            patch[name] = record[name]
        self.repository.update(quotation_id, patch)

        self.event_bus.publish(
            QuotationTransitioned(
                tenant_id=self.tenant_id,
                quotation_id=quotation_id,
                event=str(result.event),
                previous_state=result.previous_state.value if result.previous_state else "",
                state=result.snapshot.state.value,
            )
        )
        return result

    def expire_overdue(self) -> List[str]:
        expired: List[str] = []
        for record in self.repository.list([QuotationState.SENT.value, "awaiting"]):
            machine = self._machine(record)
            if not machine.can_transition(QuotationEvent.EXPIRE).valid:
                continue
            result = self.transition(str(record["id"]), QuotationEvent.EXPIRE)
            if result.success:
                expired.append(str(record["id"]))
        if expired:
            self._logger.info("quotations_expired", extra={"tenant_id": self.tenant_id, "count": len(expired)})
        return expired

    def delete(self, quotation_id: str) -> None:
        self._load(quotation_id)
        self.repository.delete(quotation_id)
