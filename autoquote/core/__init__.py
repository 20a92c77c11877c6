from autoquote.core.event_bus import (
    NEEDS_REORDER,
    AutoQuotationFailed,
    DomainEvent,
    EventBus,
    QuotationCreated,
    QuotationTransitioned,
    ReorderNeeded,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "NEEDS_REORDER",
    "DomainEvent",
    "EventBus",
    "ReorderNeeded",
    "QuotationCreated",
    "QuotationTransitioned",
    "AutoQuotationFailed",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
