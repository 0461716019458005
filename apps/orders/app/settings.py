import os


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_flag(key: str, default: str = "false") -> bool:
    return _env_or(key, default).strip().lower() in ("1", "true", "yes", "on")


ENV = _env_or("ENV", "dev").strip().lower()

DB_URL = _env_or("ORDERS_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/orders.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None

# Public base of this API (used to build simulated wallet payment links) and the
# customer-facing frontend (payment status pages).
API_URL = _env_or("API_URL", "http://localhost:5001").rstrip("/")
FRONTEND_URL = _env_or("FRONTEND_URL", "http://localhost:5173").rstrip("/")

RECEIPTS_DIR = _env_or("RECEIPTS_DIR", "/tmp/orders-uploads/receipts")
RECEIPTS_URL_PREFIX = "/uploads/receipts"
RECEIPT_MAX_BYTES = int(_env_or("RECEIPT_MAX_BYTES", str(5 * 1024 * 1024)))

GCASH_API_URL = _env_or("GCASH_API_URL", "https://api.gcash.com").rstrip("/")
GCASH_API_KEY = _env_or("GCASH_API_KEY", "")
GCASH_MERCHANT_ID = _env_or("GCASH_MERCHANT_ID", "")
GCASH_SECRET_KEY = _env_or("GCASH_SECRET_KEY", "")
GCASH_WEBHOOK_SECRET = _env_or("GCASH_WEBHOOK_SECRET", "")

PAYMAYA_API_URL = _env_or("PAYMAYA_API_URL", "https://pg.paymaya.com").rstrip("/")
PAYMAYA_API_KEY = _env_or("PAYMAYA_API_KEY", "")
PAYMAYA_MERCHANT_ID = _env_or("PAYMAYA_MERCHANT_ID", "")
PAYMAYA_SECRET_KEY = _env_or("PAYMAYA_SECRET_KEY", "")
PAYMAYA_WEBHOOK_SECRET = _env_or("PAYMAYA_WEBHOOK_SECRET", "")

PROVIDER_TIMEOUT_SECS = float(_env_or("PROVIDER_TIMEOUT_SECS", "10"))
CURRENCY = "PHP"

# Orders are eligible for a prep estimate this many minutes after placement.
ESTIMATED_READY_MINUTES = 15
MAX_TABLE_NUMBER = 6

LOYALTY_ENABLED = _env_flag("LOYALTY_ENABLED", "true")
LOYALTY_POINTS_PER_PESO = float(_env_or("LOYALTY_POINTS_PER_PESO", "1"))
WELCOME_POINTS_ENABLED = _env_flag("WELCOME_POINTS_ENABLED", "false")
WELCOME_POINTS = int(_env_or("WELCOME_POINTS", "100"))

LOW_STOCK_POLL_SECS = int(_env_or("LOW_STOCK_POLL_SECS", "0"))

CLEANUP_CANCELLED_DAYS = int(_env_or("CLEANUP_CANCELLED_DAYS", "1"))
CLEANUP_PENDING_DAYS = int(_env_or("CLEANUP_PENDING_DAYS", "2"))


def is_prod_env() -> bool:
    env = (os.getenv("ENV") or ENV or "dev").strip().lower()
    return env in ("prod", "production", "staging")
