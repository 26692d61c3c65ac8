import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from cotiz.config import Config
from cotiz.db import close_db, init_db
from cotiz.db_migrations import register_db_cli
from cotiz.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)
from cotiz.security import apply_security_headers, enforce_rate_limit


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_security(app)
    _register_auth(app)
    _register_integrations(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _register_jobs(app)
    _maybe_init_schema(app)

    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fora de development.")
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from cotiz.routes.approval_routes import approval_bp
    from cotiz.routes.auth_routes import auth_bp
    from cotiz.routes.delivery_routes import delivery_bp
    from cotiz.routes.home_routes import home_bp
    from cotiz.routes.notification_routes import notification_bp
    from cotiz.routes.payment_routes import payment_bp
    from cotiz.routes.quote_routes import quote_bp
    from cotiz.routes.realtime_routes import realtime_bp
    from cotiz.routes.supplier_routes import supplier_bp
    from cotiz.routes.webhook_routes import webhook_bp

    for blueprint in (
        auth_bp,
        home_bp,
        quote_bp,
        supplier_bp,
        approval_bp,
        payment_bp,
        delivery_bp,
        notification_bp,
        realtime_bp,
        webhook_bp,
    ):
        app.register_blueprint(blueprint)


def _register_auth(app: Flask) -> None:
    from cotiz.auth import register_auth

    register_auth(app)


def _register_integrations(app: Flask) -> None:
    from cotiz.core import get_event_bus
    from cotiz.integrations.circuit_breaker import get_circuit_breaker
    from cotiz.realtime import get_realtime_hub

    for channel in ("whatsapp", "email"):
        get_circuit_breaker(channel).configure_from_config(app.config)

    hub = get_realtime_hub()
    hub.queue_size = max(1, int(app.config.get("REALTIME_QUEUE_SIZE", 200) or 200))
    hub.attach(get_event_bus())


def _register_jobs(app: Flask) -> None:
    from cotiz.scheduler import register_jobs_cli, start_job_scheduler

    register_jobs_cli(app)
    start_job_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from cotiz.errors import AppError, IntegrationError, SystemError, classify_gateway_failure
    from cotiz.integrations.messaging import MessagingError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        response = observe_response(response)
        return apply_security_headers(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(MessagingError)
    def _handle_messaging_error(exc: MessagingError):
        request_id = ensure_request_id()
        code, message_key, http_status = classify_gateway_failure(str(exc))
        mapped = IntegrationError(
            code=code,
            message_key=message_key,
            http_status=http_status,
            critical=False,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_security(app: Flask) -> None:
    @app.before_request
    def _rate_limit_guard():
        return enforce_rate_limit()


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from cotiz.db import get_db
        from cotiz.integrations.circuit_breaker import circuit_snapshot
        from cotiz.realtime import get_realtime_hub

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "messaging_mode": app.config.get("MESSAGING_MODE", "mock"),
            "metrics": metrics_snapshot(),
            "circuits": circuit_snapshot(),
            "realtime_subscribers": get_realtime_hub().subscriber_count(),
        }
        try:
            get_db().execute("SELECT 1").fetchone()
        except Exception:  # noqa: BLE001 - health reporta degradado em vez de falhar
            app.logger.warning("health_db_unavailable", exc_info=True)
            payload["status"] = "degraded"
        return payload, 200

    @app.route("/metrics")
    def metrics():
        return Response(prometheus_metrics_text(), mimetype="text/plain; version=0.0.4")
