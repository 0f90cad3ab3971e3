import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./task_manager.db")

# JWT
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60)
TOKEN_REFRESH_WINDOW_MINUTES = _env_int("TOKEN_REFRESH_WINDOW_MINUTES", 60)

BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Mail
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "console")
SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_BACKEND_URL = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/0")
OVERDUE_SCAN_INTERVAL_SECONDS = _env_int("OVERDUE_SCAN_INTERVAL_SECONDS", 3600)
SMS_SCAN_INTERVAL_SECONDS = _env_int("SMS_SCAN_INTERVAL_SECONDS", 30)

DEFAULT_PAGE_SIZE = _env_int("DEFAULT_PAGE_SIZE", 20)
MAX_PAGE_SIZE = _env_int("MAX_PAGE_SIZE", 100)

# upper bounds on query windows; larger values overflow datetime arithmetic
MAX_WINDOW_HOURS = 24 * 365 * 100
MAX_WINDOW_DAYS = 365 * 100