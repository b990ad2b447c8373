import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_WHOOP_API_BASE = "https://api.prod.whoop.com/developer/v2"
DEFAULT_DATA_DIR = Path(__file__).resolve().parent / "data"
DATABASE_FILENAME = "swole.db"


def get_env(name, default=None):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def data_dir() -> Path:
    override = get_env("DATA_DIR")
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


def database_path() -> Path:
    return data_dir() / DATABASE_FILENAME


def webhook_secret():
    return get_env("WHOOP_WEBHOOK_SECRET")


def whoop_api_base() -> str:
    return get_env("WHOOP_API_BASE", DEFAULT_WHOOP_API_BASE).rstrip("/")


def openai_api_key():
    return get_env("OPENAI_API_KEY")


def openai_model() -> str:
    return get_env("OPENAI_MODEL", "gpt-4o-mini")


def health_advice_rate_limit() -> int:
    try:
        return int(get_env("HEALTH_ADVICE_RATE_LIMIT", "40"))
    except ValueError:
        return 40


def api_base() -> str:
    return get_env("SWOLE_API_BASE", "http://localhost:5000").rstrip("/")


def configure_logging():
    """Attach stdout and rotating-file handlers to the root logger once."""
    root = logging.getLogger()
    if getattr(root, "_swole_configured", False):
        return root

    level = get_env("LOG_LEVEL", "INFO").upper()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handlers = [logging.StreamHandler(sys.stdout)]

    log_dir = get_env("LOG_DIR")
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(Path(log_dir) / "swole.log", maxBytes=1_000_000, backupCount=3)
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    root._swole_configured = True
    return root
