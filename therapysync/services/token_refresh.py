"""
Token Refresh Guard
Hands out calendar credentials that are valid for immediate use
"""
import asyncio
import logging
import weakref
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from sqlalchemy.orm import Session

from ..domain.credentials.repository import CredentialRepository
from ..errors import AuthRequired, DecryptionError, ReauthorizationRequired, RemoteSyncError
from ..models import utcnow
from ..schemas import CalendarCredential, LiveCredential

if TYPE_CHECKING:
    from .google_calendar_service import GoogleCalendarClient

logger = logging.getLogger(__name__)


class TokenRefreshGuard:
    """
    Checks expiry right before every use and refreshes on demand.

    Refreshes are single-flight per owner: callers that find the same
    expired token queue on the owner's lock, and whoever gets it second
    re-reads the store and finds the token already refreshed.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        google: "GoogleCalendarClient",
        refresh_margin_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.credentials = credentials
        self.google = google
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.clock = clock
        # Entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def is_expired(self, credential: CalendarCredential) -> bool:
        return credential.token_expires_at <= self.clock() + self.refresh_margin

    def _load(self, db: Session, owner_id: int) -> CalendarCredential:
        try:
            credential = self.credentials.get(db, owner_id)
        except DecryptionError as e:
            raise ReauthorizationRequired(
                "Stored Google credential is unreadable, please reconnect."
            ) from e
        if not credential:
            raise AuthRequired("Google authentication required")
        return credential

    async def ensure_valid(self, db: Session, owner_id: int) -> LiveCredential:
        """
        Return the owner's credential, refreshing it first if it has expired.

        Raises:
            AuthRequired: the owner never authorized calendar access
            ReauthorizationRequired: Google refused the refresh; not retried
        """
        credential = self._load(db, owner_id)
        if not self.is_expired(credential):
            return LiveCredential(**credential.model_dump())

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            credential = self._load(db, owner_id)
            if not self.is_expired(credential):
                return LiveCredential(**credential.model_dump())

            logger.info(f"🔄 Google Calendar token expired for therapist {owner_id}, refreshing...")
            try:
                tokens = await self.google.refresh_access_token(credential.refresh_token)
            except RemoteSyncError as e:
                logger.error(f"❌ Token refresh failed for therapist {owner_id}: {e}")
                raise ReauthorizationRequired(
                    "Google authentication failed, please reconnect."
                ) from e

            updated = self.credentials.upsert(
                db,
                owner_id,
                access_token=tokens.access_token,
                token_expires_at=tokens.expires_at,
                refresh_token=tokens.refresh_token,
                scope=tokens.scope or None,
            )
            logger.info(f"✅ Google Calendar token refreshed for therapist {owner_id}")
            return LiveCredential(**updated.model_dump(), refreshed=True)
