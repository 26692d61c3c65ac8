from cotiz.infrastructure.repositories.approval_repository import ApprovalRepository
from cotiz.infrastructure.repositories.audit_repository import AuditRepository
from cotiz.infrastructure.repositories.auth_repository import AuthRepository
from cotiz.infrastructure.repositories.base import BaseRepository, ClientScopeRequiredError
from cotiz.infrastructure.repositories.billing_repository import BillingRepository
from cotiz.infrastructure.repositories.client_repository import ClientRepository
from cotiz.infrastructure.repositories.delivery_repository import DeliveryRepository
from cotiz.infrastructure.repositories.invitation_repository import InvitationRepository
from cotiz.infrastructure.repositories.notification_repository import NotificationRepository
from cotiz.infrastructure.repositories.payment_repository import PaymentRepository
from cotiz.infrastructure.repositories.quote_repository import QuoteRepository
from cotiz.infrastructure.repositories.response_repository import ResponseRepository
from cotiz.infrastructure.repositories.status_event_repository import StatusEventRepository
from cotiz.infrastructure.repositories.supplier_repository import SupplierRepository
from cotiz.infrastructure.repositories.transfer_repository import TransferRepository
from cotiz.infrastructure.repositories.webhook_repository import WebhookEventRepository

__all__ = [
    "ApprovalRepository",
    "AuditRepository",
    "AuthRepository",
    "BaseRepository",
    "BillingRepository",
    "ClientRepository",
    "ClientScopeRequiredError",
    "DeliveryRepository",
    "InvitationRepository",
    "NotificationRepository",
    "PaymentRepository",
    "QuoteRepository",
    "ResponseRepository",
    "StatusEventRepository",
    "SupplierRepository",
    "TransferRepository",
    "WebhookEventRepository",
]
