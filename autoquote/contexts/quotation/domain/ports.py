from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from autoquote.contexts.quotation.domain.models import ProcessingLock, Supplier


class QuotationRepositoryPort(ABC):
    @abstractmethod
    def create(self, quotation: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list(self, statuses: Iterable[str] | None = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get(self, quotation_id: str) -> Dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update(self, quotation_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, quotation_id: str) -> None:
        raise NotImplementedError


class LockStorePort(ABC):
    """Keyed lock documents shared by every process of a tenant.

    ``insert_if_absent`` and ``replace_if_expired`` are single-row conditional
    writes; they return False when another writer got there first.
    """

    @abstractmethod
    def get(self, product_id: str) -> ProcessingLock | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, lock: ProcessingLock) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, product_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def insert_if_absent(self, lock: ProcessingLock) -> bool:
        raise NotImplementedError

    @abstractmethod
    def replace_if_expired(self, lock: ProcessingLock, observed_expires_at: float) -> bool:
        raise NotImplementedError


class SupplierDirectoryPort(ABC):
    @abstractmethod
    def get_by_id(self, supplier_id: str) -> Supplier | None:
        raise NotImplementedError


class SettingsStorePort(ABC):
    @abstractmethod
    def automation_mode(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def set_automation_mode(self, mode: str) -> str:
        raise NotImplementedError


class InventorySourcePort(ABC):
    @abstractmethod
    def list_items(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get(self, item_id: str) -> Dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_stock(self, item_id: str, current_stock: float) -> Dict[str, Any] | None:
        raise NotImplementedError
