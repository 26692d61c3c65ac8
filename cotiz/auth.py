from __future__ import annotations

from flask import current_app, g, request, session

from cotiz.domain.contracts import Actor
from cotiz.errors import AuthError
from cotiz.policies import normalize_role
from cotiz.tenant import DEFAULT_CLIENT_ID, normalize_client_id


PUBLIC_PATHS = {"/health", "/metrics", "/api/auth/login", "/api/auth/register", "/api/auth/logout"}
PUBLIC_PREFIXES = ("/api/public/", "/api/webhooks/")


def _header_identity_allowed() -> bool:
    return bool(current_app.config.get("TESTING")) or not current_app.config.get("AUTH_ENABLED", True)


def _optional_int(value) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _load_identity() -> None:
    g.user_id = _optional_int(session.get("user_id"))
    g.user_role = normalize_role(session.get("user_role"), default="client")
    g.client_id = normalize_client_id(session.get("client_id"))
    g.supplier_id = _optional_int(session.get("supplier_id"))

    if g.user_id is None and _header_identity_allowed():
        # Sem login (testes/auth desligada) a identidade pode vir por header.
        g.user_id = _optional_int(request.headers.get("X-User-Id"))
        g.user_role = normalize_role(request.headers.get("X-User-Role"), default="client")
        g.client_id = normalize_client_id(request.headers.get("X-Tenant-Id")) or g.client_id
        g.supplier_id = _optional_int(request.headers.get("X-Supplier-Id"))

    requested = normalize_client_id(request.headers.get("X-Client-Id") or request.args.get("client_id"))
    if requested and requested != g.client_id and _can_act_on_client(requested):
        g.client_id = requested

    if not g.client_id:
        g.client_id = DEFAULT_CLIENT_ID


def _can_act_on_client(client_id: str) -> bool:
    if g.user_role == "admin":
        return True
    if g.user_role != "administradora" or not g.client_id:
        return False
    from cotiz.db import get_db
    from cotiz.infrastructure.repositories import ClientRepository

    return ClientRepository().is_managed_by(get_db(), client_id, g.client_id)


def _is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def register_auth(app) -> None:
    @app.before_request
    def _require_login():
        _load_identity()
        path = request.path or "/"
        if request.method == "OPTIONS" or _is_public_path(path):
            return None
        if _header_identity_allowed():
            return None
        if session.get("user_email"):
            return None
        raise AuthError(code="auth_required", http_status=401)


def current_actor() -> Actor:
    return Actor(
        client_id=getattr(g, "client_id", None) or DEFAULT_CLIENT_ID,
        user_id=getattr(g, "user_id", None),
        role=getattr(g, "user_role", None) or "client",
        supplier_id=getattr(g, "supplier_id", None),
        email=session.get("user_email"),
    )


def login_session(user) -> None:
    session.clear()
    session["user_email"] = user.email
    session["user_id"] = user.id
    session["display_name"] = user.display_name
    session["client_id"] = user.client_id
    session["user_role"] = normalize_role(user.role, default="client")
    if user.supplier_id is not None:
        session["supplier_id"] = user.supplier_id
