import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DEFAULT_DATABASE_URL = "sqlite:///./therapysync.db"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class Settings:
    database_url: str
    notes_secret_key: bytes
    token_encryption_key: str
    google_client_id: str
    google_client_secret: str
    google_callback_url: str
    google_calendar_id: str = "primary"
    calendar_http_timeout: float = 10.0
    token_refresh_margin_seconds: int = 300


def parse_notes_key(raw: str) -> bytes:
    """
    Turn the configured notes key into 32 raw bytes.

    Accepts either 64 hex characters or a 32-byte string used verbatim,
    which is how keys were provisioned for existing encrypted notes.
    """
    if len(raw) == 64:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    key = raw.encode("utf-8")
    if len(key) != 32:
        raise ConfigurationError(
            "NOTES_SECRET_KEY must be 64 hex characters or exactly 32 bytes"
        )
    return key


def load_settings(environ: Optional[dict] = None) -> Settings:
    """
    Build Settings from the environment, failing fast on missing secrets.

    Called once at startup; nothing reads secrets per request.
    """
    env = os.environ if environ is None else environ

    required = {
        "NOTES_SECRET_KEY": env.get("NOTES_SECRET_KEY"),
        "TOKEN_ENCRYPTION_KEY": env.get("TOKEN_ENCRYPTION_KEY"),
        "GOOGLE_CALENDAR_CLIENT_ID": env.get("GOOGLE_CALENDAR_CLIENT_ID"),
        "GOOGLE_CALENDAR_CLIENT_SECRET": env.get("GOOGLE_CALENDAR_CLIENT_SECRET"),
        "GOOGLE_CALENDAR_CALLBACK_URL": env.get("GOOGLE_CALENDAR_CALLBACK_URL"),
    }
    missing = sorted(name for name, value in required.items() if not value)
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    try:
        timeout = float(env.get("CALENDAR_HTTP_TIMEOUT", "10"))
        margin = int(env.get("TOKEN_REFRESH_MARGIN_SECONDS", "300"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    return Settings(
        database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        notes_secret_key=parse_notes_key(required["NOTES_SECRET_KEY"]),
        token_encryption_key=required["TOKEN_ENCRYPTION_KEY"],
        google_client_id=required["GOOGLE_CALENDAR_CLIENT_ID"],
        google_client_secret=required["GOOGLE_CALENDAR_CLIENT_SECRET"],
        google_callback_url=required["GOOGLE_CALENDAR_CALLBACK_URL"],
        google_calendar_id=env.get("GOOGLE_CALENDAR_ID", "primary"),
        calendar_http_timeout=timeout,
        token_refresh_margin_seconds=margin,
    )
