import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "cotiz.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-cotiz")
    AUTH_ENABLED = _bool_env("AUTH_ENABLED", True)
    # email:senha:client_id[:nome[:papel]]
    APP_USERS = os.environ.get("APP_USERS", "admin@cotiz.local:admin123:client-demo:Administrador:admin")

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 300)
    SECURITY_HEADERS_ENABLED = _bool_env("SECURITY_HEADERS_ENABLED", True)

    SCHEDULER_ENABLED = _bool_env("SCHEDULER_ENABLED", True)
    SCHEDULER_INTERVAL_SECONDS = _int_env("SCHEDULER_INTERVAL_SECONDS", 300)
    SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("SCHEDULER_MIN_BACKOFF_SECONDS", 30)
    SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("SCHEDULER_MAX_BACKOFF_SECONDS", 1800)
    SCHEDULER_JOBS = os.environ.get("SCHEDULER_JOBS", "quote_reminders,escrow_auto_release,overdue_invoices")

    QUOTE_TOKEN_TTL_DAYS = _int_env("QUOTE_TOKEN_TTL_DAYS", 7)
    QUOTE_REMINDER_AFTER_HOURS = _int_env("QUOTE_REMINDER_AFTER_HOURS", 48)
    QUOTE_REMINDER_MIN_GAP_HOURS = _int_env("QUOTE_REMINDER_MIN_GAP_HOURS", 24)
    ESCROW_RELEASE_DAYS = _int_env("ESCROW_RELEASE_DAYS", 7)
    DELIVERY_CODE_TTL_HOURS = _int_env("DELIVERY_CODE_TTL_HOURS", 72)
    OVERDUE_SUSPEND_DAYS = _int_env("OVERDUE_SUSPEND_DAYS", 7)
    OVERDUE_AUTO_SUSPEND = _bool_env("OVERDUE_AUTO_SUSPEND", True)
    OVERDUE_REMINDER_ENABLED = _bool_env("OVERDUE_REMINDER_ENABLED", True)
    # dias apos o vencimento em que a fatura recebe lembrete
    OVERDUE_REMINDER_SCHEDULE = os.environ.get("OVERDUE_REMINDER_SCHEDULE", "1,3,7,15,30")
    OVERDUE_REMINDER_CHANNELS = os.environ.get("OVERDUE_REMINDER_CHANNELS", "whatsapp,email")
    OVERDUE_REMINDER_STOP_AFTER_DAYS = _int_env("OVERDUE_REMINDER_STOP_AFTER_DAYS", 45)
    OVERDUE_REMINDER_MIN_GAP_HOURS = _int_env("OVERDUE_REMINDER_MIN_GAP_HOURS", 24)
    LATE_FEE_PERCENTAGE = _float_env("LATE_FEE_PERCENTAGE", 2.0)
    TRANSFER_MAX_AUTO_APPROVE = _float_env("TRANSFER_MAX_AUTO_APPROVE", 50000.0)

    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = _int_env("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)
    ASAAS_WEBHOOK_TOKEN = os.environ.get("ASAAS_WEBHOOK_TOKEN")

    MESSAGING_MODE = os.environ.get("MESSAGING_MODE", "mock")
    EVOLUTION_API_URL = os.environ.get("EVOLUTION_API_URL")
    EVOLUTION_API_TOKEN = os.environ.get("EVOLUTION_API_TOKEN")
    EVOLUTION_INSTANCE = os.environ.get("EVOLUTION_INSTANCE")
    EVOLUTION_SEND_ENDPOINT = os.environ.get("EVOLUTION_SEND_ENDPOINT")
    EMAIL_API_URL = os.environ.get("EMAIL_API_URL")
    EMAIL_API_KEY = os.environ.get("EMAIL_API_KEY")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "Cotiz <nao-responda@cotiz.local>")
    MESSAGING_TIMEOUT_SECONDS = _int_env("MESSAGING_TIMEOUT_SECONDS", 15)
    MESSAGING_VERIFY_SSL = _bool_env("MESSAGING_VERIFY_SSL", True)
    MESSAGING_RETRY_ATTEMPTS = _int_env("MESSAGING_RETRY_ATTEMPTS", 2)
    MESSAGING_RETRY_BACKOFF_MS = _int_env("MESSAGING_RETRY_BACKOFF_MS", 300)
    MESSAGING_CIRCUIT_ENABLED = _bool_env("MESSAGING_CIRCUIT_ENABLED", True)
    MESSAGING_CIRCUIT_ERROR_RATE = _float_env("MESSAGING_CIRCUIT_ERROR_RATE", 0.6)
    MESSAGING_CIRCUIT_MIN_SAMPLES = _int_env("MESSAGING_CIRCUIT_MIN_SAMPLES", 5)
    MESSAGING_CIRCUIT_WINDOW_SECONDS = _int_env("MESSAGING_CIRCUIT_WINDOW_SECONDS", 120)
    MESSAGING_CIRCUIT_OPEN_SECONDS = _int_env("MESSAGING_CIRCUIT_OPEN_SECONDS", 30)

    FRONTEND_BASE_URL = os.environ.get("FRONTEND_BASE_URL", "http://localhost:5173")
    REALTIME_QUEUE_SIZE = _int_env("REALTIME_QUEUE_SIZE", 200)
    REALTIME_KEEPALIVE_SECONDS = _int_env("REALTIME_KEEPALIVE_SECONDS", 15)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-cotiz":
            raise RuntimeError("SECRET_KEY insegura para producao.")
