import json
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from therapysync.errors import AuthRequired, CalendarUnavailable, RemoteSyncError
from therapysync.models_google_calendar import GoogleCalendarCredential
from therapysync.schemas import Attendee, CalendarEventRef
from therapysync.services.google_calendar_service import build_session_event, extract_meeting_link

from .conftest import THERAPIST_ID

ATTENDEES = [
    Attendee(email="therapist@example.com", display_name="Dr. Rivera"),
    Attendee(email="client@example.com"),
]
START = datetime(2026, 11, 2, 15, 0)


async def test_create_session_event(db, calendar, fake_google, store_credential):
    store_credential()

    ref = await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 50)

    assert ref == CalendarEventRef(
        remote_event_id="evt-123", meeting_link="https://meet.google.com/abc-defg-hij"
    )
    (request,) = fake_google.calls("/events", method="POST")
    assert request.url.path == "/calendar/v3/calendars/primary/events"
    assert request.url.params["conferenceDataVersion"] == "1"
    assert request.headers["Authorization"] == "Bearer stored-access-token"

    body = json.loads(request.content)
    assert body["start"]["dateTime"] == "2026-11-02T15:00:00"
    assert body["end"]["dateTime"] == "2026-11-02T15:50:00"
    assert body["attendees"] == [
        {"email": "therapist@example.com", "displayName": "Dr. Rivera"},
        {"email": "client@example.com"},
    ]
    assert body["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {"type": "hangoutsMeet"}


async def test_create_refreshes_expired_token_first(db, calendar, fake_google, store_credential):
    store_credential(expires_in=timedelta(hours=-1))

    await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 60)

    (request,) = fake_google.calls("/events", method="POST")
    assert request.headers["Authorization"] == "Bearer fresh-access-token"


async def test_create_without_credential_is_calendar_unavailable(db, calendar, fake_google):
    with pytest.raises(CalendarUnavailable) as exc_info:
        await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 60)

    assert isinstance(exc_info.value, AuthRequired)
    assert fake_google.requests == []


async def test_create_insert_failure_is_remote_sync_error(db, calendar, fake_google, store_credential):
    store_credential()
    fake_google.insert_status = 503
    fake_google.insert_payload = {"error": "backendError"}

    with pytest.raises(RemoteSyncError) as exc_info:
        await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 60)

    assert exc_info.value.status_code == 503


async def test_create_rejects_event_without_id(db, calendar, fake_google, store_credential):
    store_credential()
    fake_google.insert_payload = {"status": "confirmed"}

    with pytest.raises(RemoteSyncError):
        await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 60)


@pytest.mark.parametrize("body", ["<html>oops</html>", "[]"])
async def test_create_rejects_unreadable_insert_response(db, calendar, fake_google, store_credential, body):
    store_credential()
    fake_google.insert_body = body

    with pytest.raises(RemoteSyncError) as exc_info:
        await calendar.create_session_event(db, THERAPIST_ID, ATTENDEES, START, 60)

    assert exc_info.value.status_code == 200


async def test_delete_session_event(db, calendar, fake_google, store_credential):
    store_credential()

    await calendar.delete_session_event(db, THERAPIST_ID, "evt-123")

    (request,) = fake_google.calls("/events/evt-123", method="DELETE")
    assert request.headers["Authorization"] == "Bearer stored-access-token"


@pytest.mark.parametrize("status", [404, 410])
async def test_delete_of_missing_event_succeeds(db, calendar, fake_google, store_credential, status):
    store_credential()
    fake_google.delete_status = status

    await calendar.delete_session_event(db, THERAPIST_ID, "evt-123")


async def test_delete_failure_is_remote_sync_error(db, calendar, fake_google, store_credential):
    store_credential()
    fake_google.delete_status = 500

    with pytest.raises(RemoteSyncError):
        await calendar.delete_session_event(db, THERAPIST_ID, "evt-123")


async def test_connect_stores_exchanged_credential(db, calendar, credentials, fake_google):
    fake_google.token_payload["refresh_token"] = "issued-refresh-token"

    await calendar.connect(db, THERAPIST_ID, "auth-code")

    stored = credentials.get(db, THERAPIST_ID)
    assert stored.access_token == "fresh-access-token"
    assert stored.refresh_token == "issued-refresh-token"
    assert stored.google_calendar_id == "primary"
    (call,) = fake_google.token_calls()
    assert call["grant_type"] == "authorization_code"
    assert call["code"] == "auth-code"


async def test_reconnect_replaces_credential(db, calendar, fake_google, store_credential):
    store_credential()
    fake_google.token_payload["refresh_token"] = "issued-refresh-token"

    await calendar.connect(db, THERAPIST_ID, "auth-code")

    assert db.query(GoogleCalendarCredential).count() == 1


async def test_connect_without_refresh_token_fails(db, calendar, credentials):
    with pytest.raises(RemoteSyncError):
        await calendar.connect(db, THERAPIST_ID, "auth-code")

    assert credentials.get(db, THERAPIST_ID) is None


async def test_disconnect_revokes_and_forgets(db, calendar, credentials, fake_google, store_credential):
    store_credential()

    assert await calendar.disconnect(db, THERAPIST_ID) is True

    (request,) = fake_google.calls("/revoke")
    assert request.url.params["token"] == "stored-refresh-token"
    assert credentials.get(db, THERAPIST_ID) is None


async def test_disconnect_survives_revoke_failure(db, calendar, credentials, fake_google, store_credential):
    store_credential()
    fake_google.revoke_status = 400

    assert await calendar.disconnect(db, THERAPIST_ID) is True
    assert credentials.get(db, THERAPIST_ID) is None


async def test_disconnect_when_not_connected(db, calendar):
    assert await calendar.disconnect(db, THERAPIST_ID) is False


def test_authorization_url(calendar):
    url = urlparse(calendar.authorization_url("state-token"))
    params = parse_qs(url.query)

    assert url.netloc == "accounts.google.com"
    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]
    assert params["state"] == ["state-token"]
    assert params["scope"] == ["https://www.googleapis.com/auth/calendar"]


def test_session_events_get_unique_conference_requests():
    first = build_session_event(ATTENDEES, START, 60)
    second = build_session_event(ATTENDEES, START, 60)

    assert (
        first["conferenceData"]["createRequest"]["requestId"]
        != second["conferenceData"]["createRequest"]["requestId"]
    )


def test_meeting_link_falls_back_to_video_entry_point():
    event = {
        "conferenceData": {
            "entryPoints": [
                {"entryPointType": "phone", "uri": "tel:+1-555-0100"},
                {"entryPointType": "video", "uri": "https://meet.google.com/xyz"},
            ]
        }
    }
    assert extract_meeting_link(event) == "https://meet.google.com/xyz"
    assert extract_meeting_link({}) is None
