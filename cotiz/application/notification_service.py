from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List

from cotiz.core import EventBus, NotificationCreated, get_event_bus
from cotiz.domain.contracts import ServiceOutput
from cotiz.errors import NotFoundError
from cotiz.infrastructure.repositories import AuthRepository, NotificationRepository
from cotiz.integrations.messaging import MessagingError, Messenger, get_messenger
from cotiz.ui_strings import render_notification


logger = logging.getLogger("cotiz.notifications")


class NotificationService:
    """Notificacoes in-app e envio de mensagens externas (WhatsApp/email)."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        messenger_factory: Callable[[], Messenger] | None = None,
        auth_repository: AuthRepository | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.messenger_factory = messenger_factory or get_messenger
        self.auth_repository = auth_repository or AuthRepository()

    def notify(
        self,
        db,
        *,
        client_id: str,
        template_key: str,
        context: Dict[str, object],
        user_id: int | None = None,
        supplier_id: int | None = None,
        type: str = "info",
        priority: str = "normal",
        action_url: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        rendered = render_notification(template_key, **context)
        notification_id = NotificationRepository(client_id=client_id).create(
            db,
            title=rendered["title"],
            message=rendered["text"],
            user_id=user_id,
            supplier_id=supplier_id,
            type=type,
            priority=priority,
            action_url=action_url,
            metadata=metadata,
        )
        self.event_bus.publish_on_commit(
            db,
            NotificationCreated(
                client_id=client_id,
                notification_id=notification_id,
                user_id=user_id,
                supplier_id=supplier_id,
                title=rendered["title"],
            )
        )
        return notification_id

    def notify_client_users(
        self,
        db,
        *,
        client_id: str,
        template_key: str,
        context: Dict[str, object],
        roles: Iterable[str] | None = None,
        user_ids: Iterable[int] | None = None,
        **kwargs,
    ) -> List[int]:
        if user_ids is not None:
            targets = list(dict.fromkeys(int(user_id) for user_id in user_ids))
        else:
            users = self.auth_repository.list_users_for_client(db, client_id, tuple(roles) if roles else None)
            targets = [int(user["id"]) for user in users if user.get("role") != "supplier"]
        return [
            self.notify(db, client_id=client_id, template_key=template_key, context=context, user_id=user_id, **kwargs)
            for user_id in targets
        ]

    def deliver(
        self,
        *,
        phone: str | None = None,
        email: str | None = None,
        template_key: str,
        context: Dict[str, object],
        send_whatsapp: bool = True,
        send_email: bool = True,
    ) -> Dict[str, dict]:
        """Envia a mensagem pelos canais pedidos; falhas viram resultado, nao excecao."""
        rendered = render_notification(template_key, **context)
        messenger = self.messenger_factory()
        results: Dict[str, dict] = {}
        if send_whatsapp:
            results["whatsapp"] = self._attempt(
                "whatsapp",
                phone,
                lambda: messenger.send_whatsapp(str(phone), rendered["text"]),
            )
        if send_email:
            results["email"] = self._attempt(
                "email",
                email,
                lambda: messenger.send_email(str(email), rendered["title"], rendered["text"]),
            )
        return results

    @staticmethod
    def _attempt(channel: str, target: str | None, send: Callable[[], dict]) -> dict:
        if not target:
            return {"status": "skipped", "reason": "contato_ausente"}
        try:
            send()
        except MessagingError as exc:
            logger.warning(
                "message_delivery_failed",
                extra={"channel": channel, "error": str(exc), "code": exc.code},
            )
            return {"status": "failed", "error": str(exc)}
        return {"status": "sent"}

    @staticmethod
    def any_sent(results: Dict[str, dict]) -> bool:
        return any(item.get("status") == "sent" for item in results.values())

    def list_for_recipient(
        self,
        db,
        *,
        client_id: str,
        user_id: int | None,
        supplier_id: int | None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> ServiceOutput:
        repository = NotificationRepository(client_id=client_id)
        items = repository.list_for_recipient(
            db,
            user_id=user_id,
            supplier_id=supplier_id,
            unread_only=unread_only,
            limit=limit,
        )
        unread = repository.count_unread(db, user_id=user_id, supplier_id=supplier_id)
        return ServiceOutput({"items": items, "unread_count": unread})

    def mark_read(self, db, *, client_id: str, notification_id: int, user_id: int | None, supplier_id: int | None) -> ServiceOutput:
        updated = NotificationRepository(client_id=client_id).mark_read(
            db,
            notification_id,
            user_id=user_id,
            supplier_id=supplier_id,
        )
        if not updated:
            raise NotFoundError(code="notification_not_found", payload={"notification_id": notification_id})
        return ServiceOutput({"id": notification_id, "read": True})

    def mark_all_read(self, db, *, client_id: str, user_id: int | None, supplier_id: int | None) -> ServiceOutput:
        updated = NotificationRepository(client_id=client_id).mark_all_read(db, user_id=user_id, supplier_id=supplier_id)
        return ServiceOutput({"updated": updated})
