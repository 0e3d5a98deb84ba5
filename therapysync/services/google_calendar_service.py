"""
Google Calendar Service
Handles OAuth token exchange/refresh and calendar event creation and deletion
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from ..domain.credentials.repository import CredentialRepository
from ..errors import CalendarUnavailable, RemoteSyncError
from ..models import utcnow
from ..schemas import Attendee, CalendarCredential, CalendarEventRef, OAuthTokens
from ..security_utils import log_security_event
from .token_refresh import TokenRefreshGuard

logger = logging.getLogger(__name__)

# Google OAuth URLs
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Google answers 410 for events already deleted and 404 for unknown ids
EVENT_GONE_STATUSES = (404, 410)


class GoogleCalendarClient:
    """Thin async client for the Google OAuth and Calendar REST endpoints"""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def build_authorization_url(self, state: str) -> str:
        """URL the therapist visits to grant offline calendar access"""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    @staticmethod
    def _read_json(response: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteSyncError(
                f"Unreadable {what} response: {e}", status_code=response.status_code
            ) from e
        if not isinstance(body, dict):
            raise RemoteSyncError(
                f"Unexpected {what} response: {body!r}", status_code=response.status_code
            )
        return body

    @staticmethod
    def _parse_tokens(tokens: dict[str, Any]) -> OAuthTokens:
        access_token = tokens.get("access_token")
        if not access_token:
            raise RemoteSyncError("No access token in token response")
        try:
            expires_in = int(tokens.get("expires_in", 3600))
            return OAuthTokens(
                access_token=access_token,
                refresh_token=tokens.get("refresh_token"),
                expires_at=utcnow() + timedelta(seconds=expires_in),
                scope=tokens.get("scope", ""),
            )
        except (TypeError, ValueError, OverflowError) as e:
            # pydantic's ValidationError is a ValueError
            raise RemoteSyncError(f"Invalid token response: {e}") from e

    async def _post_token(self, data: dict[str, str]) -> OAuthTokens:
        try:
            async with self._http() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise RemoteSyncError(
                f"Token request failed: {response.text}", status_code=response.status_code
            )
        return self._parse_tokens(self._read_json(response, "token"))

    async def exchange_authorization_code(self, code: str) -> OAuthTokens:
        tokens = await self._post_token(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if not tokens.refresh_token:
            raise RemoteSyncError("Invalid token response: no refresh token issued")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        return await self._post_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )

    async def insert_event(
        self, access_token: str, calendar_id: str, event: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            async with self._http() as client:
                response = await client.post(
                    f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events",
                    params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                    headers={"Authorization": f"Bearer {access_token}"},
                    json=event,
                )
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Calendar API unreachable: {e}") from e

        if response.status_code not in [200, 201]:
            raise RemoteSyncError(
                f"Failed to create calendar event: {response.text}",
                status_code=response.status_code,
            )
        return self._read_json(response, "calendar event")

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        try:
            async with self._http() as client:
                response = await client.delete(
                    f"{GOOGLE_CALENDAR_API}/calendars/{calendar_id}/events/{event_id}",
                    params={"sendUpdates": "all"},
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Calendar API unreachable: {e}") from e

        if response.status_code not in [200, 204]:
            raise RemoteSyncError(
                f"Failed to delete calendar event: {response.text}",
                status_code=response.status_code,
            )

    async def revoke_token(self, token: str) -> None:
        try:
            async with self._http() as client:
                response = await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        except httpx.HTTPError as e:
            raise RemoteSyncError(f"Revoke endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise RemoteSyncError(
                f"Token revocation failed: {response.text}", status_code=response.status_code
            )


def build_session_event(
    attendees: Iterable[Attendee],
    start_time: datetime,
    duration_minutes: int,
    summary: str = "Therapy Session",
    description: str = "A virtual therapy session.",
) -> dict[str, Any]:
    """Event body for a session, asking Google to attach a Meet link"""
    end_time = start_time + timedelta(minutes=duration_minutes)
    attendee_list = []
    for attendee in attendees:
        entry = {"email": attendee.email}
        if attendee.display_name:
            entry["displayName"] = attendee.display_name
        attendee_list.append(entry)

    return {
        "summary": summary,
        "description": description,
        "start": {"dateTime": start_time.isoformat(), "timeZone": "UTC"},
        "end": {"dateTime": end_time.isoformat(), "timeZone": "UTC"},
        "attendees": attendee_list,
        "conferenceData": {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
        "reminders": {"useDefault": True},
    }


def extract_meeting_link(event: dict[str, Any]) -> Optional[str]:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for entry in entry_points:
        if entry.get("entryPointType") == "video":
            return entry.get("uri")
    return None


class CalendarSyncService:
    """Creates and removes the remote calendar event behind each therapy session"""

    def __init__(
        self,
        google: GoogleCalendarClient,
        guard: TokenRefreshGuard,
        credentials: CredentialRepository,
        calendar_id: str = "primary",
    ):
        self.google = google
        self.guard = guard
        self.credentials = credentials
        self.calendar_id = calendar_id

    def authorization_url(self, state: str) -> str:
        return self.google.build_authorization_url(state)

    async def connect(self, db: Session, owner_id: int, code: str) -> CalendarCredential:
        """Exchange an authorization code and store the owner's credential"""
        tokens = await self.google.exchange_authorization_code(code)
        credential = self.credentials.upsert(
            db,
            owner_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            scope=tokens.scope,
            google_calendar_id=self.calendar_id,
        )
        logger.info(f"✅ Google Calendar connected for therapist: {owner_id}")
        log_security_event("calendar_connected", user_id=owner_id)
        return credential

    async def disconnect(self, db: Session, owner_id: int) -> bool:
        """Revoke the owner's grant at Google and forget the credential"""
        credential = self.credentials.get(db, owner_id)
        if not credential:
            return False

        try:
            await self.google.revoke_token(credential.refresh_token)
        except RemoteSyncError as e:
            logger.warning(f"⚠️ Failed to revoke Google tokens for therapist {owner_id}: {e}")

        self.credentials.delete(db, owner_id)
        logger.info(f"✅ Google Calendar disconnected for therapist: {owner_id}")
        log_security_event("calendar_disconnected", user_id=owner_id)
        return True

    async def create_session_event(
        self,
        db: Session,
        therapist_id: int,
        attendees: Iterable[Attendee],
        start_time: datetime,
        duration_minutes: int,
    ) -> CalendarEventRef:
        """
        Create the calendar event for a session.

        Raises:
            CalendarUnavailable: no usable credential (AuthRequired or
                ReauthorizationRequired)
            RemoteSyncError: Google rejected or did not answer the insert
        """
        try:
            credential = await self.guard.ensure_valid(db, therapist_id)
        except CalendarUnavailable as e:
            logger.error(f"❌ Calendar unavailable for therapist {therapist_id}: {e}")
            raise

        event = build_session_event(attendees, start_time, duration_minutes)
        calendar_id = credential.google_calendar_id or self.calendar_id
        created = await self.google.insert_event(credential.access_token, calendar_id, event)

        event_id = created.get("id")
        if not event_id:
            raise RemoteSyncError("Calendar API returned an event without an id")

        logger.info(f"✅ Google Calendar event created: {event_id}")
        return CalendarEventRef(remote_event_id=event_id, meeting_link=extract_meeting_link(created))

    async def delete_session_event(self, db: Session, therapist_id: int, remote_event_id: str) -> None:
        """Delete the session's event; an event that is already gone counts as deleted"""
        credential = await self.guard.ensure_valid(db, therapist_id)
        calendar_id = credential.google_calendar_id or self.calendar_id

        try:
            await self.google.delete_event(credential.access_token, calendar_id, remote_event_id)
        except RemoteSyncError as e:
            if e.status_code in EVENT_GONE_STATUSES:
                logger.warning(f"⚠️ Calendar event already deleted: {remote_event_id}")
                return
            logger.error(f"❌ Failed to delete calendar event {remote_event_id}: {e}")
            raise

        logger.info(f"✅ Google Calendar event deleted: {remote_event_id}")
