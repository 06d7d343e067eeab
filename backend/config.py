import os
import logging
from dotenv import load_dotenv

load_dotenv()

# Config
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./surveys.db")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "change-me")
ORIGINS = os.getenv("ORIGINS", "http://localhost:5173").split(",")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173").rstrip("/")
DEFAULT_STORE_ID = int(os.getenv("DEFAULT_STORE_ID", "1"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() in ("1", "true", "yes")
EMAIL_FROM = os.getenv("EMAIL_FROM", "surveys@localhost")

RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "1.0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str | None = None) -> None:
    """Set the root log format and level once per process."""
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
