from __future__ import annotations

from cotiz.domain.contracts import Actor, ServiceOutput
from cotiz.infrastructure.repositories import (
    ApprovalRepository,
    DeliveryRepository,
    InvitationRepository,
    PaymentRepository,
    QuoteRepository,
    ResponseRepository,
)
from cotiz.procurement.flow_policy import QUOTE_STATUSES


class DashboardService:
    def client_summary(self, db, *, client_id: str) -> ServiceOutput:
        quotes_by_status = {status: 0 for status in QUOTE_STATUSES}
        quotes_by_status.update(QuoteRepository(client_id=client_id).count_by_status(db))
        payments = PaymentRepository(client_id=client_id).summary_by_status(db)
        return ServiceOutput(
            {
                "client_id": client_id,
                "quotes_by_status": quotes_by_status,
                "quotes_total": sum(quotes_by_status.values()),
                "pending_approvals": ApprovalRepository(client_id=client_id).count_pending(db),
                "payments_by_status": payments,
                "amount_in_escrow": payments.get("in_escrow", {}).get("amount", 0.0),
                "amount_released": payments.get("completed", {}).get("amount", 0.0),
                "pending_deliveries": DeliveryRepository(client_id=client_id).count_pending(db),
            }
        )

    def supplier_summary(self, db, *, supplier_id: int) -> ServiceOutput:
        receivables = PaymentRepository.receivables_for_supplier(db, supplier_id)
        return ServiceOutput(
            {
                "supplier_id": supplier_id,
                "open_invitations": InvitationRepository.count_open_for_supplier(db, supplier_id),
                "responses_by_status": ResponseRepository.count_by_status_for_supplier(db, supplier_id),
                "receivables_by_status": receivables,
                "receivable_in_escrow": receivables.get("in_escrow", {}).get("amount", 0.0),
                "received": receivables.get("completed", {}).get("amount", 0.0),
            }
        )

    def summary(self, db, *, actor: Actor) -> ServiceOutput:
        if actor.role == "supplier" and actor.supplier_id is not None:
            return self.supplier_summary(db, supplier_id=actor.supplier_id)
        return self.client_summary(db, client_id=actor.client_id)
