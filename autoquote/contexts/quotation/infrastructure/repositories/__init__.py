from autoquote.contexts.quotation.infrastructure.repositories.lock_repository import ProcessingLockRepository
from autoquote.contexts.quotation.infrastructure.repositories.quotation_repository import QuotationRepository
from autoquote.contexts.quotation.infrastructure.repositories.settings_repository import SettingsRepository
from autoquote.contexts.quotation.infrastructure.repositories.supplier_repository import SupplierRepository

__all__ = [
    "ProcessingLockRepository",
    "QuotationRepository",
    "SettingsRepository",
    "SupplierRepository",
]
