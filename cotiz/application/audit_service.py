from __future__ import annotations

import logging

from cotiz.domain.contracts import Actor, ServiceOutput
from cotiz.infrastructure.repositories import AuditRepository


logger = logging.getLogger("cotiz.audit")


class AuditService:
    def __init__(self, repository: AuditRepository | None = None) -> None:
        self.repository = repository or AuditRepository()

    def record(
        self,
        db,
        *,
        action: str,
        entity_type: str | None,
        entity_id: object | None,
        client_id: str | None,
        actor: Actor | None = None,
        panel_type: str | None = None,
        details: dict | None = None,
    ) -> int:
        audit_id = self.repository.add(
            db,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            client_id=client_id,
            user_id=actor.user_id if actor else None,
            panel_type=panel_type or (actor.role if actor else "system"),
            details=details,
        )
        logger.info(
            "audit_recorded",
            extra={"action": action, "entity_type": entity_type, "entity_id": entity_id, "client_id": client_id},
        )
        return audit_id

    def list(
        self,
        db,
        *,
        client_id: str | None,
        action: str | None = None,
        entity_type: str | None = None,
        limit: int = 100,
    ) -> ServiceOutput:
        items = self.repository.list(db, client_id=client_id, action=action, entity_type=entity_type, limit=limit)
        return ServiceOutput({"items": items})
