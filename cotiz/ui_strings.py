from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Cotiz",
    "quote": "Cotacao",
    "proposal": "Proposta",
    "approval": "Aprovacao",
    "payment": "Pagamento",
    "delivery": "Entrega",
    "supplier": "Fornecedor",
    "client": "Cliente",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "cotacao": [
        {"key": "draft", "label": "Rascunho", "description": "Cotacao em elaboracao, ainda nao enviada."},
        {"key": "sent", "label": "Enviada", "description": "Convites enviados aos fornecedores."},
        {"key": "receiving", "label": "Recebendo propostas", "description": "Ao menos uma proposta recebida."},
        {"key": "received", "label": "Propostas recebidas", "description": "Recebimento de propostas encerrado."},
        {"key": "under_review", "label": "Em aprovacao", "description": "Proposta escolhida aguardando aprovacao."},
        {"key": "approved", "label": "Aprovada", "description": "Proposta aprovada, segue para pagamento."},
        {"key": "rejected", "label": "Reprovada", "description": "Aprovacao negada."},
        {"key": "finalized", "label": "Finalizada", "description": "Entrega confirmada e pagamento liberado."},
        {"key": "cancelled", "label": "Cancelada", "description": "Cotacao encerrada sem continuidade."},
    ],
    "proposta": [
        {"key": "submitted", "label": "Enviada", "description": "Proposta enviada pelo fornecedor."},
        {"key": "approved", "label": "Aprovada", "description": "Proposta escolhida pelo cliente."},
        {"key": "rejected", "label": "Nao selecionada", "description": "Proposta nao escolhida."},
    ],
    "aprovacao": [
        {"key": "pending", "label": "Pendente", "description": "Aguardando decisao do aprovador."},
        {"key": "approved", "label": "Aprovada", "description": "Aprovador liberou a cotacao."},
        {"key": "rejected", "label": "Reprovada", "description": "Aprovador negou a cotacao."},
    ],
    "pagamento": [
        {"key": "pending", "label": "Aguardando pagamento", "description": "Pagamento criado, aguardando gateway."},
        {"key": "in_escrow", "label": "Em custodia", "description": "Valor retido ate a confirmacao da entrega."},
        {"key": "completed", "label": "Liberado", "description": "Valor liberado ao fornecedor."},
        {"key": "disputed", "label": "Em disputa", "description": "Disputa aberta, valor bloqueado."},
        {"key": "refunded", "label": "Estornado", "description": "Valor devolvido ao cliente."},
        {"key": "failed", "label": "Falhou", "description": "Gateway recusou o pagamento."},
        {"key": "cancelled", "label": "Cancelado", "description": "Pagamento cancelado antes da cobranca."},
    ],
    "entrega": [
        {"key": "scheduled", "label": "Agendada", "description": "Entrega agendada pelo fornecedor."},
        {"key": "in_transit", "label": "Em transito", "description": "Entrega a caminho."},
        {"key": "delivered", "label": "Entregue", "description": "Recebimento confirmado pelo cliente."},
        {"key": "cancelled", "label": "Cancelada", "description": "Entrega cancelada."},
    ],
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "quote_created": "Cotacao criada com sucesso.",
        "quote_sent": "Cotacao enviada aos fornecedores.",
        "quote_cancelled": "Cotacao cancelada.",
        "proposal_submitted": "Proposta enviada com sucesso.",
        "proposal_approved": "Proposta aprovada com sucesso!",
        "approval_approved": "Cotacao aprovada.",
        "approval_rejected": "Cotacao reprovada.",
        "payment_created": "Pagamento criado.",
        "payment_cancelled": "Pagamento cancelado com sucesso.",
        "dispute_opened": "A disputa foi registrada e sera analisada.",
        "funds_released": "Pagamento liberado para o fornecedor.",
        "delivery_confirmed": "Entrega confirmada com sucesso! Pagamento liberado para o fornecedor.",
        "delivery_code_sent": "Codigo de confirmacao enviado.",
    },
    "error": {
        "action_invalid": "Acao invalida para esta operacao.",
        "action_not_allowed_for_status": "Esta acao nao e permitida para o status atual.",
        "amount_invalid": "Valor informado e invalido.",
        "approval_already_decided": "Esta aprovacao ja foi decidida.",
        "approval_level_invalid": "Nivel de aprovacao invalido.",
        "approval_level_not_found": "Nivel de aprovacao nao encontrado.",
        "approval_not_found": "Aprovacao nao encontrada.",
        "approvers_required": "Informe ao menos um aprovador.",
        "auth_invalid_credentials": "Credenciais invalidas. Tente novamente.",
        "auth_missing_credentials": "Informe email e senha.",
        "auth_required": "Autenticacao necessaria.",
        "client_not_found": "Cliente nao encontrado.",
        "cnpj_invalid": "CNPJ invalido.",
        "CODE_ALREADY_USED": "Este codigo ja foi utilizado anteriormente.",
        "CODE_EXPIRED": "Este codigo expirou.",
        "CODE_NOT_FOUND": "Codigo de confirmacao nao encontrado.",
        "comments_required": "Informe o motivo da reprovacao.",
        "confirmation_code_required": "Codigo de confirmacao e obrigatorio.",
        "conflict": "A operacao conflita com o estado atual do registro.",
        "delivery_not_found": "Entrega nao encontrada.",
        "delivery_requires_escrow": "A entrega exige pagamento em custodia.",
        "email_already_registered": "Email ja cadastrado. Use outro email ou faca login.",
        "email_invalid": "Email invalido.",
        "client_type_invalid": "Tipo de cliente invalido.",
        "invalid_payment_transition": "Transicao de pagamento nao permitida.",
        "invalid_delivery_transition": "Transicao de entrega nao permitida.",
        "items_required": "Nenhum item foi enviado na proposta.",
        "messaging_rejected": "O provedor de mensagens recusou o envio.",
        "messaging_temporarily_unavailable": "Nao conseguimos enviar a mensagem agora. Tente novamente em instantes.",
        "no_changes": "Nenhuma alteracao informada.",
        "not_found": "Registro nao encontrado.",
        "notification_not_found": "Notificacao nao encontrada.",
        "payment_already_exists": "Esta cotacao ja possui pagamento ativo.",
        "payment_not_found": "Pagamento nao encontrado.",
        "PERMISSION_DENIED": "Voce nao tem permissao para confirmar esta entrega.",
        "permission_denied": "Voce nao possui permissao para executar esta acao.",
        "proposal_not_found": "Proposta nao encontrada.",
        "quote_items_required": "Informe ao menos um item com descricao.",
        "quote_not_found": "Cotacao nao encontrada.",
        "rate_limit_exceeded": "Muitas requisicoes. Tente novamente em instantes.",
        "reason_required": "Informe o motivo.",
        "required_fields_missing": "Campos obrigatorios faltando.",
        "status_invalid": "Status informado e invalido.",
        "supplier_not_found": "Fornecedor nao encontrado.",
        "suppliers_not_found": "Nenhum fornecedor encontrado.",
        "threshold_invalid": "Faixa de valores invalida para o nivel.",
        "title_required": "Informe o titulo da cotacao.",
        "token_expired": "Token expirado.",
        "token_not_found": "Token nao encontrado.",
        "total_amount_invalid": "Valor total invalido.",
        "unexpected_error": "Nao foi possivel concluir a operacao. Tente novamente em instantes.",
        "validation_error": "Dados invalidos.",
        "webhook_signature_invalid": "Assinatura do webhook invalida.",
        "webhook_unauthorized": "Webhook nao autorizado.",
        "webhook_payload_invalid": "Payload do webhook invalido.",
    },
}


NOTIFICATION_TEMPLATES: Dict[str, Dict[str, str]] = {
    "quote_invitation": {
        "title": "Nova cotacao disponivel",
        "text": (
            "Ola {supplier_name}!\n\n"
            "*{client_name}* convidou voce para a cotacao *{quote_title}*.\n"
            "Prazo: {deadline}\n\n"
            "Envie sua proposta pelo link: {link}\n"
            "{custom_message}"
        ),
    },
    "quote_reminder": {
        "title": "Lembrete de cotacao pendente",
        "text": (
            "Ola {supplier_name}!\n\n"
            "Este e o *{reminder_label} lembrete* sobre a cotacao *{quote_title}*.\n"
            "Prazo: {deadline}\n\n"
            "Ainda nao recebemos sua proposta: {link}"
        ),
    },
    "proposal_received": {
        "title": "Nova proposta recebida",
        "text": "{supplier_name} enviou uma proposta de R$ {amount} para a cotacao #{quote_id}",
    },
    "proposal_approved": {
        "title": "Proposta Aprovada!",
        "text": (
            "Parabens! Sua proposta foi APROVADA!\n\n"
            "Cotacao: {quote_title}\n"
            "Valor aprovado: R$ {amount}\n"
            "Prazo de entrega: {delivery_days} dias\n"
            "{comments}"
        ),
    },
    "proposal_rejected": {
        "title": "Proposta Nao Selecionada",
        "text": "Sua proposta para \"{quote_title}\" nao foi selecionada. Outra proposta foi aprovada pelo cliente.",
    },
    "approval_request": {
        "title": "Nova Aprovacao Pendente",
        "text": "Cotacao #{quote_id} aguarda sua aprovacao no valor de R$ {amount}",
    },
    "approval_approved": {
        "title": "Cotacao Aprovada",
        "text": "Sua cotacao \"{quote_title}\" foi aprovada e pode prosseguir para pagamento",
    },
    "approval_rejected": {
        "title": "Cotacao Rejeitada",
        "text": "Sua cotacao \"{quote_title}\" foi rejeitada. Motivo: {reason}",
    },
    "payment_in_escrow": {
        "title": "Pagamento em custodia",
        "text": "O pagamento da cotacao \"{quote_title}\" foi recebido e esta retido ate a entrega.",
    },
    "delivery_code": {
        "title": "Codigo de confirmacao de entrega",
        "text": (
            "Sua entrega da cotacao \"{quote_title}\" foi agendada.\n"
            "Codigo de confirmacao: *{code}*\n"
            "Informe o codigo somente apos receber os itens. Valido ate {expires_at}."
        ),
    },
    "delivery_confirmed": {
        "title": "Entrega Confirmada",
        "text": "O cliente confirmou o recebimento da entrega. Pagamento liberado!",
    },
    "dispute_opened": {
        "title": "Disputa aberta",
        "text": "Uma disputa foi aberta para o pagamento da cotacao \"{quote_title}\": {reason}",
    },
    "overdue_reminder": {
        "title": "Fatura em atraso",
        "text": (
            "Ola {owner_name}!\n\n"
            "A fatura #{invoice_id} do plano {plan_name}, no valor de R$ {invoice_amount}, venceu em {due_date} "
            "e esta em atraso ha {days_overdue} dias.\n"
            "Multa por atraso: R$ {late_fee}. Total atualizado: R$ {total_with_fee}."
        ),
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def status_label(group: str, key: str | None) -> str:
    for item in STATUS_GROUPS.get(group, []):
        if item["key"] == key:
            return item["label"]
    return str(key or "")


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def format_brl(amount: float | int | None) -> str:
    value = float(amount or 0)
    formatted = f"{value:,.2f}"
    return formatted.replace(",", "_").replace(".", ",").replace("_", ".")


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_notification(template_key: str, **context: object) -> Dict[str, str]:
    template = NOTIFICATION_TEMPLATES.get(template_key)
    if template is None:
        raise KeyError(f"template de notificacao desconhecido: {template_key}")
    values = _SafeDict({key: "" if value is None else value for key, value in context.items()})
    return {
        "title": template["title"],
        "text": template["text"].format_map(values).strip(),
    }
