from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Cotacao Automatica",
    "quotation": "Cotacao",
    "supplier": "Fornecedor",
    "inventory": "Estoque",
    "workspace": "Workspace",
}


QUOTATION_STATES: List[Dict[str, str]] = [
    {"key": "draft", "label": "Rascunho", "description": "Cotacao criada, ainda nao enviada."},
    {"key": "sent", "label": "Enviada", "description": "E-mail enviado, aguardando resposta do fornecedor."},
    {"key": "replied", "label": "Resposta recebida", "description": "Fornecedor respondeu, falta analisar."},
    {"key": "quoted", "label": "Cotada", "description": "Precos extraidos da resposta."},
    {"key": "confirmed", "label": "Confirmada", "description": "Pedido confirmado pelo usuario."},
    {"key": "delivered", "label": "Entregue", "description": "Mercadoria recebida."},
    {"key": "cancelled", "label": "Cancelada", "description": "Cotacao encerrada sem continuidade."},
    {"key": "expired", "label": "Expirada", "description": "Sem resposta dentro do prazo."},
]


MESSAGES: Dict[str, Dict[str, str]] = {
    "errors": {
        "unexpected_error": "Nao foi possivel concluir a operacao.",
        "action_invalid": "Acao invalida para os dados informados.",
        "status_invalid": "Status informado nao e valido.",
        "not_found": "Registro nao encontrado.",
        "transition_not_allowed": "Esta transicao nao e permitida no status atual.",
        "state_has_no_transitions": "Estado atual nao permite transicoes.",
        "event_not_valid_for_state": "Evento nao e valido no estado atual.",
        "guard_failed": "Condicao de transicao nao satisfeita.",
        "send_requires_email_and_items": "Email do fornecedor e itens sao obrigatorios para enviar.",
        "reply_requires_body": "Corpo do email e obrigatorio.",
        "expire_requires_overdue": "A cotacao ainda esta dentro do prazo de resposta.",
        "analyze_requires_items": "Nenhum item cotado encontrado na analise.",
        "confirm_requires_total": "Cotacao precisa ter valor total para confirmar.",
        "cancel_window_elapsed": "Pedidos confirmados ha mais de 24h nao podem ser cancelados.",
        "repository_unavailable": "Armazenamento temporariamente indisponivel.",
        "lock_unavailable": "Nao foi possivel reservar o item para processamento.",
        "supplier_unresolved": "Fornecedor nao encontrado ou sem e-mail configurado.",
    },
    "success": {
        "quotation_created": "Cotacao criada.",
        "transition_applied": "Status da cotacao atualizado.",
        "batch_flushed": "Cotacoes automaticas processadas.",
    },
}


def state_label(state: str | None, default: str | None = None) -> str:
    key = str(state or "").strip()
    for item in QUOTATION_STATES:
        if item["key"] == key:
            return item["label"]
    return default if default is not None else key


def get_message(category: str, key: str, default: str | None = None) -> str:
    value = MESSAGES.get(category, {}).get(key)
    if value:
        return value
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("errors", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
