import logging
import os

from fxledger.errors import ValidationError
from fxledger.validation import normalize_currency

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./fxledger.db")


def get_frontend_origin() -> str:
    return os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValidationError:
        return "USD"


def configure_logging() -> None:
    if logging.root.handlers:
        return
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
