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


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "autoquote.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    AUTOMATION_MODE_DEFAULT = os.environ.get("AUTOMATION_MODE_DEFAULT", "auto")
    AUTO_QUOTATION_ENABLED = _bool_env("AUTO_QUOTATION_ENABLED", True)
    AUTO_QUOTATION_DEBOUNCE_SECONDS = _int_env("AUTO_QUOTATION_DEBOUNCE_SECONDS", 5)
    AUTO_QUOTATION_STARTUP_DELAY_SECONDS = _int_env("AUTO_QUOTATION_STARTUP_DELAY_SECONDS", 5)
    AUTO_QUOTATION_MAX_ITEMS = _int_env("AUTO_QUOTATION_MAX_ITEMS", 20)
    AUTO_QUOTATION_LOCK_TTL_SECONDS = _int_env("AUTO_QUOTATION_LOCK_TTL_SECONDS", 180)
    AUTO_QUOTATION_LOCK_HEARTBEAT_SECONDS = _int_env("AUTO_QUOTATION_LOCK_HEARTBEAT_SECONDS", 30)
    AUTO_QUOTATION_LOCK_FAIL_OPEN = _bool_env("AUTO_QUOTATION_LOCK_FAIL_OPEN", True)

    QUOTATION_EXPIRY_DAYS = _int_env("QUOTATION_EXPIRY_DAYS", 7)
    QUOTATION_CANCEL_WINDOW_HOURS = _int_env("QUOTATION_CANCEL_WINDOW_HOURS", 24)
    QUOTATION_EXPIRY_ENABLED = _bool_env("QUOTATION_EXPIRY_ENABLED", True)
    QUOTATION_EXPIRY_INTERVAL_SECONDS = _int_env("QUOTATION_EXPIRY_INTERVAL_SECONDS", 3600)
    QUOTATION_EXPIRY_MIN_BACKOFF_SECONDS = _int_env("QUOTATION_EXPIRY_MIN_BACKOFF_SECONDS", 30)
    QUOTATION_EXPIRY_MAX_BACKOFF_SECONDS = _int_env("QUOTATION_EXPIRY_MAX_BACKOFF_SECONDS", 1800)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
