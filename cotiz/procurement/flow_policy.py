from __future__ import annotations

from typing import Dict, List


PROCESS_STAGES: List[Dict[str, str]] = [
    {"key": "cotacao", "label": "Cotacao"},
    {"key": "propostas", "label": "Propostas"},
    {"key": "aprovacao", "label": "Aprovacao"},
    {"key": "pagamento", "label": "Pagamento"},
    {"key": "entrega", "label": "Entrega"},
]


ACTION_LABELS: Dict[str, str] = {
    "edit_quote": "Editar cotacao",
    "send_to_suppliers": "Enviar aos fornecedores",
    "send_reminders": "Lembrar fornecedores",
    "submit_response": "Enviar proposta",
    "close_responses": "Encerrar recebimento",
    "approve_proposal": "Aprovar proposta",
    "reject_proposal": "Recusar proposta",
    "cancel_quote": "Cancelar cotacao",
    "decide_approval": "Decidir aprovacao",
    "create_payment": "Gerar pagamento",
    "create_delivery": "Agendar entrega",
    "update_delivery_status": "Atualizar entrega",
    "confirm_delivery": "Confirmar recebimento",
    "resend_code": "Reenviar codigo",
    "cancel_delivery": "Cancelar entrega",
    "view_responses": "Comparar propostas",
    "view_history": "Ver historico",
}


FLOW_POLICY: Dict[str, Dict[str, Dict[str, object]]] = {
    "cotacao": {
        "draft": {
            "allowed_actions": ["edit_quote", "send_to_suppliers", "cancel_quote", "view_history"],
            "primary_action": "send_to_suppliers",
        },
        "sent": {
            "allowed_actions": [
                "send_to_suppliers",
                "send_reminders",
                "submit_response",
                "cancel_quote",
                "view_responses",
                "view_history",
            ],
            "primary_action": "view_responses",
        },
        "receiving": {
            "allowed_actions": [
                "send_to_suppliers",
                "send_reminders",
                "submit_response",
                "close_responses",
                "approve_proposal",
                "reject_proposal",
                "cancel_quote",
                "view_responses",
                "view_history",
            ],
            "primary_action": "approve_proposal",
        },
        "received": {
            "allowed_actions": [
                "approve_proposal",
                "reject_proposal",
                "cancel_quote",
                "view_responses",
                "view_history",
            ],
            "primary_action": "approve_proposal",
        },
        "under_review": {
            "allowed_actions": ["decide_approval", "view_responses", "view_history"],
            "primary_action": "decide_approval",
        },
        "approved": {
            "allowed_actions": ["create_payment", "create_delivery", "view_responses", "view_history"],
            "primary_action": "create_payment",
        },
        "rejected": {
            "allowed_actions": ["view_responses", "view_history"],
            "primary_action": "view_history",
        },
        "finalized": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
        "cancelled": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
    },
    "entrega": {
        "scheduled": {
            "allowed_actions": [
                "update_delivery_status",
                "confirm_delivery",
                "resend_code",
                "cancel_delivery",
                "view_history",
            ],
            "primary_action": "update_delivery_status",
        },
        "in_transit": {
            "allowed_actions": ["confirm_delivery", "resend_code", "view_history"],
            "primary_action": "confirm_delivery",
        },
        "delivered": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
        "cancelled": {
            "allowed_actions": ["view_history"],
            "primary_action": "view_history",
        },
    },
}


# Transicoes de status disparadas por acoes explicitas do usuario.
QUOTE_ACTION_TARGETS: Dict[str, str] = {
    "send_to_suppliers": "sent",
    "close_responses": "received",
    "cancel_quote": "cancelled",
}

DELIVERY_TRANSITIONS: Dict[str, set[str]] = {
    "scheduled": {"in_transit", "delivered", "cancelled"},
    "in_transit": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

QUOTE_STATUSES = tuple(FLOW_POLICY["cotacao"].keys())
OPEN_QUOTE_STATUSES = ("sent", "receiving")
DECIDABLE_QUOTE_STATUSES = ("receiving", "received")


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "primary_action": None}


def status_policy(stage: str, status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return FLOW_POLICY.get(stage, {}).get(str(status), _fallback_policy())


def allowed_actions(stage: str, status: str | None) -> List[str]:
    actions = status_policy(stage, status).get("allowed_actions") or []
    if not isinstance(actions, list):
        return []
    return [str(action) for action in actions]


def primary_action(stage: str, status: str | None) -> str | None:
    action = status_policy(stage, status).get("primary_action")
    if not action:
        return None
    return str(action)


def action_allowed(stage: str, status: str | None, action: str) -> bool:
    if not action:
        return False
    return action in set(allowed_actions(stage, status))


def action_label(action: str, fallback: str | None = None) -> str:
    label = ACTION_LABELS.get(action)
    if label:
        return label
    if fallback is not None:
        return fallback
    return action


def flow_meta(stage: str, status: str | None) -> Dict[str, object]:
    primary = primary_action(stage, status)
    return {
        "stage": stage,
        "status": status,
        "allowed_actions": allowed_actions(stage, status),
        "primary_action": primary,
        "primary_action_label": action_label(primary) if primary else None,
    }


def delivery_transition_allowed(from_status: str | None, to_status: str) -> bool:
    return to_status in DELIVERY_TRANSITIONS.get(str(from_status or ""), set())


def stage_for_quote_status(status: str | None) -> str:
    mapping = {
        "draft": "cotacao",
        "sent": "propostas",
        "receiving": "propostas",
        "received": "propostas",
        "under_review": "aprovacao",
        "rejected": "aprovacao",
        "approved": "pagamento",
        "finalized": "entrega",
        "cancelled": "cotacao",
    }
    return mapping.get(str(status or "").strip(), "cotacao")


def _stage_index(stage: str) -> int:
    for idx, item in enumerate(PROCESS_STAGES):
        if item["key"] == stage:
            return idx
    return 0


def build_process_steps(current_stage: str) -> List[Dict[str, object]]:
    current_idx = _stage_index(current_stage)
    steps: List[Dict[str, object]] = []
    for idx, stage in enumerate(PROCESS_STAGES):
        state = "future"
        if idx < current_idx:
            state = "completed"
        elif idx == current_idx:
            state = "current"
        steps.append({"key": stage["key"], "label": stage["label"], "state": state})
    return steps
