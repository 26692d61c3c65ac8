from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, session

from cotiz.application.auth_service import AuthService
from cotiz.auth import current_actor, login_session
from cotiz.db import get_db
from cotiz.domain.contracts import AuthLoginInput, AuthRegisterInput
from cotiz.errors import AuthError, NotFoundError


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")
_auth_service = AuthService()


def _user_payload(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "client_id": user.client_id,
        "role": user.role,
        "supplier_id": user.supplier_id,
    }


@auth_bp.route("/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or {}
    db = get_db()
    user = _auth_service.login(
        db,
        AuthLoginInput(
            email=str(payload.get("email") or ""),
            password=str(payload.get("password") or ""),
        ),
        current_app.config.get("APP_USERS"),
    )
    if not user:
        raise AuthError(code="auth_invalid_credentials", http_status=401)
    db.commit()
    login_session(user)
    return jsonify({"user": _user_payload(user)}), 200


@auth_bp.route("/register", methods=["POST"])
def register():
    payload = request.get_json(silent=True) or {}
    db = get_db()
    user = _auth_service.register(
        db,
        AuthRegisterInput(
            email=str(payload.get("email") or ""),
            password=str(payload.get("password") or ""),
            display_name=payload.get("display_name"),
            company_name=payload.get("company_name"),
            client_type=str(payload.get("client_type") or "condominio"),
        ),
    )
    db.commit()
    login_session(user)
    return jsonify({"user": _user_payload(user)}), 201


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"logged_out": True}), 200


@auth_bp.route("/me", methods=["GET"])
def me():
    actor = current_actor()
    user = _auth_service.me(get_db(), actor.user_id)
    if user is None:
        if actor.user_id is not None:
            raise NotFoundError(code="not_found")
        # Identidade por header (testes) sem linha em auth_users.
        user = {"id": None, "email": actor.email, "role": actor.role, "client_id": actor.client_id}
    user["active_client_id"] = actor.client_id
    user["supplier_id"] = user.get("supplier_id") or actor.supplier_id
    return jsonify({"user": user}), 200
