from __future__ import annotations

import re
from typing import Iterable

from werkzeug.security import check_password_hash

from cotiz.domain.contracts import AuthLoginInput, AuthRegisterInput, AuthUser
from cotiz.errors import ConflictError, ValidationError
from cotiz.infrastructure.repositories import AuthRepository, ClientRepository
from cotiz.policies import normalize_role
from cotiz.tenant import DEFAULT_CLIENT_ID
from cotiz.validators import is_valid_email


CLIENT_TYPES = ("condominio", "administradora")


class AuthService:
    def __init__(
        self,
        repository: AuthRepository | None = None,
        clients: ClientRepository | None = None,
    ) -> None:
        self.repository = repository or AuthRepository()
        self.clients = clients or ClientRepository()

    def login(self, db, auth_input: AuthLoginInput, raw_users: object) -> AuthUser | None:
        email = (auth_input.email or "").strip().lower()
        password = auth_input.password or ""
        if not email or not password:
            return None

        db_user = self.repository.find_user_by_email(db, email)
        if db_user and check_password_hash(db_user["password_hash"], password):
            return self._to_auth_user(db_user)

        for user in self._parse_users(raw_users):
            if user["email"] == email and user["password"] == password:
                return self._bootstrap_user(db, user, existing=db_user)
        return None

    def _bootstrap_user(self, db, user: dict, *, existing: dict | None) -> AuthUser:
        """Usuarios de APP_USERS ganham linha em auth_users para ter id estavel."""
        if existing:
            return self._to_auth_user(existing)
        self.clients.ensure_client(db, user["client_id"], f"Cliente {user['client_id']}")
        user_id = self.repository.create_user(
            db,
            email=user["email"],
            password=user["password"],
            display_name=user["display_name"],
            client_id=user["client_id"],
            role=user["role"],
        )
        return AuthUser(
            id=user_id,
            email=user["email"],
            display_name=user["display_name"],
            client_id=user["client_id"],
            role=user["role"],
        )

    def register(self, db, auth_input: AuthRegisterInput) -> AuthUser:
        email = (auth_input.email or "").strip().lower()
        password = auth_input.password or ""
        display_name = (auth_input.display_name or "").strip() or None
        company_name = (auth_input.company_name or "").strip() or None
        client_type = (auth_input.client_type or "condominio").strip().lower()

        if not email or not password:
            raise ValidationError(code="auth_missing_credentials")
        if not is_valid_email(email):
            raise ValidationError(code="email_invalid", payload={"fields": ["email"]})
        if client_type not in CLIENT_TYPES:
            raise ValidationError(code="client_type_invalid", payload={"allowed": list(CLIENT_TYPES)})
        if self.repository.email_exists(db, email):
            raise ConflictError(code="email_already_registered")

        client_id = self.resolve_client_id(company_name or "")
        self.clients.ensure_client(db, client_id, company_name or f"Cliente {client_id}", client_type=client_type)
        role = "administradora" if client_type == "administradora" else "client"
        user_id = self.repository.create_user(
            db,
            email=email,
            password=password,
            display_name=display_name,
            client_id=client_id,
            role=role,
        )
        return AuthUser(
            id=user_id,
            email=email,
            display_name=display_name or email.split("@")[0],
            client_id=client_id,
            role=role,
        )

    def me(self, db, user_id: int | None) -> dict | None:
        if user_id is None:
            return None
        user = self.repository.find_user_by_id(db, user_id)
        if not user:
            return None
        client = self.clients.get(db, str(user["client_id"])) if user.get("client_id") else None
        user["client"] = client
        if user.get("role") == "administradora" and user.get("client_id"):
            user["managed_clients"] = self.clients.list_managed_by(db, str(user["client_id"]))
        return user

    def resolve_client_id(self, company_name: str) -> str:
        if not company_name:
            return DEFAULT_CLIENT_ID
        slug = self._slugify(company_name)
        if not slug:
            return DEFAULT_CLIENT_ID
        return f"client-{slug}"

    @staticmethod
    def _to_auth_user(row: dict) -> AuthUser:
        return AuthUser(
            id=int(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or row["email"].split("@")[0],
            client_id=row["client_id"],
            role=normalize_role(row.get("role"), default="client"),
            supplier_id=row.get("supplier_id"),
        )

    @staticmethod
    def _slugify(value: str) -> str:
        normalized = value.strip().lower()
        normalized = re.sub(r"[^\w\s-]", "", normalized)
        normalized = re.sub(r"[\s_-]+", "-", normalized)
        return normalized.strip("-")

    @staticmethod
    def _parse_users(raw_users: object) -> Iterable[dict]:
        if not raw_users:
            return []
        if isinstance(raw_users, str):
            entries = []
            for chunk in raw_users.replace("\n", ",").replace(";", ",").split(","):
                entry = chunk.strip()
                if entry:
                    entries.append(entry)
        elif isinstance(raw_users, (list, tuple, set)):
            entries = [str(item).strip() for item in raw_users if str(item).strip()]
        else:
            return []

        users = []
        for entry in entries:
            parts = [part.strip() for part in entry.split(":")]
            if len(parts) < 3:
                continue
            email, password, client_id = parts[0].lower(), parts[1], parts[2]
            display_name = parts[3] if len(parts) > 3 and parts[3] else email.split("@")[0]
            role = normalize_role(parts[4] if len(parts) > 4 else "client", default="client")
            users.append(
                {
                    "email": email,
                    "password": password,
                    "client_id": client_id,
                    "display_name": display_name,
                    "role": role,
                }
            )
        return users
