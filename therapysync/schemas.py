import json
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import DecryptionError
from .models import utcnow

UNAVAILABLE_NOTE_CONTENT = "[Secure content unavailable]"


# Note Schemas
class NoteEnvelope(BaseModel):
    """
    One encrypted note: hex IV plus hex ciphertext.

    Serialized as {"iv": ..., "content": ...}; created_at lives on the
    stored row rather than in the serialized string.
    """

    model_config = ConfigDict(frozen=True)

    initialization_vector: str
    cipher_text: str
    created_at: datetime = Field(default_factory=utcnow)

    def serialize(self) -> str:
        return json.dumps({"iv": self.initialization_vector, "content": self.cipher_text})

    @classmethod
    def parse(cls, raw: str, created_at: Optional[datetime] = None) -> "NoteEnvelope":
        """Parse a serialized envelope, raising DecryptionError if it is malformed"""
        try:
            data = json.loads(raw)
            iv = data["iv"]
            content = data["content"]
        except (TypeError, ValueError, KeyError) as e:
            raise DecryptionError(f"Malformed note envelope: {e}") from e
        if not isinstance(iv, str) or not isinstance(content, str):
            raise DecryptionError("Malformed note envelope: iv and content must be strings")
        if created_at is None:
            return cls(initialization_vector=iv, cipher_text=content)
        return cls(initialization_vector=iv, cipher_text=content, created_at=created_at)


class DecryptedNote(BaseModel):
    id: Optional[int] = None
    content: str
    created_at: Optional[datetime] = None
    decryption_error: bool = False
    encrypted_content: Optional[str] = None


class SessionNotesView(BaseModel):
    shared_notes: List[DecryptedNote]
    # None unless the caller is the session's therapist
    private_notes: Optional[List[DecryptedNote]] = None


class NoteCounts(BaseModel):
    private_notes: int
    shared_notes: int


class SessionHistoryEntry(BaseModel):
    session_id: int
    scheduled_time: datetime
    duration_minutes: int
    status: str
    shared_notes: List[DecryptedNote]
    private_notes: List[DecryptedNote]


# Calendar Schemas
class Participant(BaseModel):
    id: int
    email: str
    display_name: Optional[str] = None


class Attendee(BaseModel):
    email: str
    display_name: Optional[str] = None


class CalendarEventRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    remote_event_id: str
    meeting_link: Optional[str] = None


class OAuthTokens(BaseModel):
    """Token set returned by the provider on code exchange or refresh"""

    access_token: str
    # Only present when the provider issues (or rotates) one
    refresh_token: Optional[str] = None
    expires_at: datetime
    scope: str = ""


class CalendarCredential(BaseModel):
    """Decrypted view of a stored credential"""

    owner_id: int
    access_token: str
    refresh_token: str
    token_expires_at: datetime
    scope: str = ""
    google_calendar_id: Optional[str] = None


class LiveCredential(CalendarCredential):
    """A credential verified or refreshed to be unexpired at time of use"""

    refreshed: bool = False
