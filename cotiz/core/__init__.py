from cotiz.core.event_bus import (
    ApprovalDecided,
    DeliveryStatusChanged,
    DomainEvent,
    EventBus,
    NotificationCreated,
    PaymentStatusChanged,
    ProposalApproved,
    ProposalSubmitted,
    QuoteCreated,
    QuoteStatusChanged,
    get_event_bus,
    reset_event_bus_for_tests,
)

DOMAIN_EVENT_TYPES = (
    QuoteCreated,
    QuoteStatusChanged,
    ProposalSubmitted,
    ProposalApproved,
    ApprovalDecided,
    PaymentStatusChanged,
    DeliveryStatusChanged,
    NotificationCreated,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "QuoteCreated",
    "QuoteStatusChanged",
    "ProposalSubmitted",
    "ProposalApproved",
    "ApprovalDecided",
    "PaymentStatusChanged",
    "DeliveryStatusChanged",
    "NotificationCreated",
    "DOMAIN_EVENT_TYPES",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
