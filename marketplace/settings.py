import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "7"))

SUPERUSER_EMAIL = os.getenv("SUPERUSER_EMAIL", "admin@marketplace.io")
SUPERUSER_PASSWORD = os.getenv("SUPERUSER_PASSWORD", "Admin123!")
SEED_SAMPLE_PRODUCTS = _flag("SEED_SAMPLE_PRODUCTS", "true")

BINANCE_API_KEY = os.getenv("BINANCE_API_KEY", "")
BINANCE_SECRET_KEY = os.getenv("BINANCE_SECRET_KEY", "")
BINANCE_PAY_URL = os.getenv(
    "BINANCE_PAY_URL", "https://bpay.binanceapi.com/binancepay/openapi/v2/order"
)
BINANCE_PAY_SIMULATE = _flag("BINANCE_PAY_SIMULATE", "true")
BINANCE_TIMEOUT_SECONDS = float(os.getenv("BINANCE_TIMEOUT_SECONDS", "10"))
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
