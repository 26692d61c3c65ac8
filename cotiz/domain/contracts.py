from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class Actor:
    """Quem executa a operacao (usuario autenticado ou fornecedor via token)."""

    client_id: str
    user_id: int | None = None
    role: str = "client"
    supplier_id: int | None = None
    email: str | None = None


@dataclass(frozen=True)
class QuoteItemInput:
    description: str
    quantity: float = 1.0
    unit: str | None = None


@dataclass(frozen=True)
class QuoteCreateInput:
    title: str
    description: str | None
    deadline: str | None
    cost_center_id: str | None
    items: List[QuoteItemInput]


@dataclass(frozen=True)
class SendQuoteInput:
    quote_id: int
    supplier_ids: List[int]
    send_whatsapp: bool = True
    send_email: bool = True
    custom_message: str | None = None


@dataclass(frozen=True)
class QuickResponseInput:
    token: str
    supplier_name: str
    supplier_email: str
    total_amount: float
    items: List[Dict[str, Any]]
    delivery_days: int = 7
    shipping_cost: float = 0.0
    warranty_months: int = 12
    payment_terms: str = "30 dias"
    notes: str | None = None
    supplier_phone: str | None = None
    visit_date: str | None = None
    visit_notes: str | None = None


@dataclass(frozen=True)
class ApprovalLevelInput:
    name: str
    amount_threshold: float
    max_amount_threshold: float | None
    order_level: int
    approvers: List[int]
    active: bool = True


@dataclass(frozen=True)
class DeliveryCreateInput:
    quote_id: int
    scheduled_date: str | None = None
    tracking_info: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class SupplierCreateInput:
    name: str
    email: str | None
    whatsapp: str | None
    cnpj: str | None
    specialties: List[str] = field(default_factory=list)
    bank_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthLoginInput:
    email: str
    password: str


@dataclass(frozen=True)
class AuthRegisterInput:
    email: str
    password: str
    display_name: str | None
    company_name: str | None
    client_type: str = "condominio"


@dataclass(frozen=True)
class AuthUser:
    id: int
    email: str
    display_name: str
    client_id: str
    role: str
    supplier_id: int | None = None
