import asyncio
import os
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from therapysync import models, models_google_calendar  # noqa: F401
from therapysync.database import Base
from therapysync.domain.credentials.repository import CredentialRepository
from therapysync.models import TherapySession, utcnow
from therapysync.security_utils import NoteCipher, TokenVault
from therapysync.services.google_calendar_service import CalendarSyncService, GoogleCalendarClient
from therapysync.services.token_refresh import TokenRefreshGuard

THERAPIST_ID = 10
CLIENT_ID = 20
OUTSIDER_ID = 30
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"


class FakeGoogle:
    """Stands in for Google's OAuth and Calendar endpoints behind httpx.MockTransport"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.delay = 0.0
        self.token_status = 200
        self.token_payload = {
            "access_token": "fresh-access-token",
            "expires_in": 3600,
            "scope": CALENDAR_SCOPE,
            "token_type": "Bearer",
        }
        self.insert_status = 200
        self.insert_payload = {
            "id": "evt-123",
            "hangoutLink": "https://meet.google.com/abc-defg-hij",
        }
        self.delete_status = 204
        # Raw body returned instead of insert_payload, e.g. an HTML error page
        self.insert_body: Optional[str] = None
        self.revoke_status = 200

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = request.url.path
        if path == "/token":
            return httpx.Response(self.token_status, json=self.token_payload)
        if path == "/revoke":
            return httpx.Response(self.revoke_status, json={})
        if request.method == "POST" and path.endswith("/events"):
            if self.insert_body is not None:
                return httpx.Response(self.insert_status, text=self.insert_body)
            return httpx.Response(self.insert_status, json=self.insert_payload)
        if request.method == "DELETE":
            if self.delete_status == 204:
                return httpx.Response(204)
            return httpx.Response(self.delete_status, json={"error": {"code": self.delete_status}})
        return httpx.Response(404, json={"error": "unexpected request"})

    def calls(self, path_suffix: str, method: Optional[str] = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path.endswith(path_suffix) and (method is None or r.method == method)
        ]

    def token_calls(self) -> list[dict]:
        return [
            {k: v[0] for k, v in parse_qs(r.content.decode()).items()}
            for r in self.calls("/token")
        ]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notes_key() -> bytes:
    return os.urandom(32)


@pytest.fixture
def cipher(notes_key) -> NoteCipher:
    return NoteCipher(notes_key)


@pytest.fixture
def vault() -> TokenVault:
    return TokenVault(Fernet.generate_key())


@pytest.fixture
def credentials(vault) -> CredentialRepository:
    return CredentialRepository(vault)


@pytest.fixture
def fake_google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def google(fake_google) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://therapy.example.com/calendar/callback",
        timeout=5.0,
        transport=httpx.MockTransport(fake_google),
    )


@pytest.fixture
def guard(credentials, google) -> TokenRefreshGuard:
    return TokenRefreshGuard(credentials, google, refresh_margin_seconds=300)


@pytest.fixture
def calendar(google, guard, credentials) -> CalendarSyncService:
    return CalendarSyncService(google, guard, credentials)


@pytest.fixture
def store_credential(db, credentials):
    """Store a credential for the therapist expiring at the given offset from now"""

    def _store(expires_in: timedelta = timedelta(hours=1), owner_id: int = THERAPIST_ID):
        return credentials.upsert(
            db,
            owner_id,
            access_token="stored-access-token",
            refresh_token="stored-refresh-token",
            token_expires_at=utcnow() + expires_in,
            scope=CALENDAR_SCOPE,
        )

    return _store


@pytest.fixture
def make_session(db):
    def _make(
        therapist_id: int = THERAPIST_ID,
        client_id: int = CLIENT_ID,
        scheduled_time: Optional[datetime] = None,
        **fields,
    ) -> TherapySession:
        session = TherapySession(
            therapist_id=therapist_id,
            client_id=client_id,
            scheduled_time=scheduled_time or datetime(2026, 11, 2, 15, 0),
            duration_minutes=fields.pop("duration_minutes", 60),
            status=fields.pop("status", "scheduled"),
            **fields,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    return _make
