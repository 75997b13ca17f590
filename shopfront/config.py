import os


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")

# Postgres only; leave unset for SQLite
DB_SCHEMA = os.getenv("DB_SCHEMA")

JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set")
JWT_ISSUER = os.getenv("JWT_ISSUER")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", "10"))

CHECKOUT_SESSION_TTL_MINUTES = int(os.getenv("CHECKOUT_SESSION_TTL_MINUTES", "60"))
MAX_ITEM_QUANTITY = int(os.getenv("MAX_ITEM_QUANTITY", "999"))
MAX_ADDRESS_LENGTH = 500

# products with 0 < stock < LOW_STOCK_THRESHOLD count as low stock in catalog stats
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

# Cancelled orders give their reserved quantities back to the catalog
RESTOCK_ON_CANCEL = _get_bool("RESTOCK_ON_CANCEL", "true")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
