from __future__ import annotations

from cotiz.domain.contracts import ServiceOutput, SupplierCreateInput
from cotiz.errors import ConflictError, NotFoundError, ValidationError
from cotiz.infrastructure.repositories import SupplierRepository
from cotiz.validators import is_valid_cnpj, is_valid_email, normalize_phone, only_digits


SUPPLIER_STATUSES = ("active", "pending", "suspended", "inactive")


class SupplierService:
    def list(self, db, *, client_id: str, status: str | None = None, search: str | None = None, limit: int = 200) -> ServiceOutput:
        if status and status not in SUPPLIER_STATUSES:
            raise ValidationError(code="status_invalid", payload={"allowed": list(SUPPLIER_STATUSES)})
        items = SupplierRepository(client_id=client_id).list_visible(db, status=status, search=search, limit=limit)
        return ServiceOutput({"items": items})

    def get(self, db, *, client_id: str, supplier_id: int) -> ServiceOutput:
        supplier = SupplierRepository(client_id=client_id).get_visible(db, supplier_id)
        if not supplier:
            raise NotFoundError(code="supplier_not_found", payload={"supplier_id": supplier_id})
        return ServiceOutput(supplier)

    def create_local(self, db, *, client_id: str, supplier_input: SupplierCreateInput) -> ServiceOutput:
        name = (supplier_input.name or "").strip()
        if not name:
            raise ValidationError(code="required_fields_missing", payload={"fields": ["name"]})

        email = (supplier_input.email or "").strip().lower() or None
        if email and not is_valid_email(email):
            raise ValidationError(code="validation_error", payload={"field": "email"})

        cnpj = only_digits(supplier_input.cnpj) or None
        if cnpj and not is_valid_cnpj(cnpj):
            raise ValidationError(code="cnpj_invalid", payload={"cnpj": supplier_input.cnpj})

        repository = SupplierRepository(client_id=client_id)
        if cnpj and repository.cnpj_exists(db, cnpj):
            raise ConflictError(code="conflict", payload={"field": "cnpj"})

        whatsapp = normalize_phone(supplier_input.whatsapp) if supplier_input.whatsapp else None
        supplier_id = repository.create_local(
            db,
            name=name,
            email=email,
            whatsapp=whatsapp,
            cnpj=cnpj,
            specialties=[str(item).strip() for item in supplier_input.specialties if str(item).strip()],
            bank_data=dict(supplier_input.bank_data or {}),
        )
        return ServiceOutput(repository.get_visible(db, supplier_id) or {"id": supplier_id}, 201)

    def update_status(self, db, *, client_id: str, supplier_id: int, status: str) -> ServiceOutput:
        if status not in SUPPLIER_STATUSES:
            raise ValidationError(code="status_invalid", payload={"allowed": list(SUPPLIER_STATUSES)})
        # Somente fornecedores locais do cliente podem ter o status alterado por ele.
        if not SupplierRepository(client_id=client_id).update_status(db, supplier_id, status):
            raise NotFoundError(code="supplier_not_found", payload={"supplier_id": supplier_id})
        return ServiceOutput({"id": supplier_id, "status": status})
