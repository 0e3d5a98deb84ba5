"""
Application bootstrap: logging, settings, tables and component wiring.

Secrets are read once here; a missing secret stops startup.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_google_calendar,  # noqa: F401
)
from .config import LOG_LEVEL, Settings, load_settings
from .database import Base, create_db_engine
from .domain.credentials.repository import CredentialRepository
from .domain.notes.service import SessionNoteService
from .domain.sessions.service import SessionBookingService
from .security_utils import NoteCipher, TokenVault
from .services.google_calendar_service import CalendarSyncService, GoogleCalendarClient
from .services.token_refresh import TokenRefreshGuard

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Reduce verbosity of third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class Application:
    """Process-wide components, built once at startup"""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    cipher: NoteCipher
    credentials: CredentialRepository
    google: GoogleCalendarClient
    guard: TokenRefreshGuard
    calendar: CalendarSyncService

    def notes(self, db: Session) -> SessionNoteService:
        return SessionNoteService(db, self.cipher)

    def bookings(self, db: Session) -> SessionBookingService:
        return SessionBookingService(db, self.calendar)


def create_application(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Application:
    """Build and wire every component, creating tables if needed"""
    settings = settings or load_settings()
    engine = engine or create_db_engine(settings.database_url)

    logger.info("Application starting up...")
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database tables created successfully")

    cipher = NoteCipher(settings.notes_secret_key)
    credentials = CredentialRepository(TokenVault(settings.token_encryption_key))
    google = GoogleCalendarClient(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.google_callback_url,
        timeout=settings.calendar_http_timeout,
        transport=transport,
    )
    guard = TokenRefreshGuard(
        credentials, google, refresh_margin_seconds=settings.token_refresh_margin_seconds
    )
    calendar = CalendarSyncService(
        google, guard, credentials, calendar_id=settings.google_calendar_id
    )

    return Application(
        settings=settings,
        engine=engine,
        session_factory=sessionmaker(autocommit=False, autoflush=False, bind=engine),
        cipher=cipher,
        credentials=credentials,
        google=google,
        guard=guard,
        calendar=calendar,
    )
