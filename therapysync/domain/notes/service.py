"""Session note service - Encrypted, append-only clinical notes"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import Forbidden, InvalidRequest, NotFound
from ...models import NOTE_KIND_PRIVATE, NOTE_KIND_SHARED, SessionNote, TherapySession
from ...schemas import DecryptedNote, NoteCounts, SessionHistoryEntry, SessionNotesView
from ...security_utils import NoteCipher, log_security_event
from .repository import NoteRepository

logger = logging.getLogger(__name__)


class SessionNoteService:
    """
    Service layer for session notes.

    Private notes are visible to the session's therapist only; shared notes
    to the therapist and the session's client. Updating notes always means
    appending a new entry.
    """

    def __init__(self, db: Session, cipher: NoteCipher):
        self.db = db
        self.cipher = cipher
        self.repo = NoteRepository()

    def _get_session(self, session_id: int) -> TherapySession:
        session = self.repo.get_session(self.db, session_id)
        if not session:
            raise NotFound("Session not found")
        return session

    def _get_session_for_therapist(self, session_id: int, therapist_id: int) -> TherapySession:
        session = self._get_session(session_id)
        if session.therapist_id != therapist_id:
            log_security_event(
                "note_write_denied", user_id=therapist_id, details={"session_id": session_id}
            )
            raise Forbidden("Only the session's therapist can add notes")
        return session

    @staticmethod
    def _validate(text, label: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise InvalidRequest(f"{label} content is required")
        try:
            text.encode("utf-8")
        except UnicodeEncodeError as e:
            raise InvalidRequest(f"{label} content is not valid text") from e
        return text

    def _append(self, session_id: int, therapist_id: int, kind: str, text: str) -> int:
        self._get_session_for_therapist(session_id, therapist_id)
        envelope = self.cipher.encrypt(text)
        self.repo.append(self.db, session_id, kind, envelope.serialize())
        count = self.repo.count_notes(self.db, session_id, kind)
        logger.info(f"✅ {kind.capitalize()} note added to session {session_id} ({count} total)")
        return count

    def append_private_note(self, session_id: int, therapist_id: int, text: str) -> int:
        """Encrypt and append a therapist-only note. Returns the private note count."""
        self._validate(text, "Note")
        return self._append(session_id, therapist_id, NOTE_KIND_PRIVATE, text)

    def append_shared_note(self, session_id: int, therapist_id: int, text: str) -> int:
        """Encrypt and append a note the client can read. Returns the shared note count."""
        self._validate(text, "Shared note")
        return self._append(session_id, therapist_id, NOTE_KIND_SHARED, text)

    def append_notes(
        self,
        session_id: int,
        therapist_id: int,
        private_note: Optional[str] = None,
        shared_note: Optional[str] = None,
    ) -> NoteCounts:
        """Append a private and/or shared note in one commit"""
        if private_note is not None:
            self._validate(private_note, "Private note")
        if shared_note is not None:
            self._validate(shared_note, "Shared note")
        if private_note is None and shared_note is None:
            raise InvalidRequest("No valid note updates provided")

        self._get_session_for_therapist(session_id, therapist_id)

        if private_note is not None:
            envelope = self.cipher.encrypt(private_note)
            self.repo.append(self.db, session_id, NOTE_KIND_PRIVATE, envelope.serialize(), commit=False)
        if shared_note is not None:
            envelope = self.cipher.encrypt(shared_note)
            self.repo.append(self.db, session_id, NOTE_KIND_SHARED, envelope.serialize(), commit=False)
        self.db.commit()

        counts = NoteCounts(
            private_notes=self.repo.count_notes(self.db, session_id, NOTE_KIND_PRIVATE),
            shared_notes=self.repo.count_notes(self.db, session_id, NOTE_KIND_SHARED),
        )
        logger.info(f"✅ Session {session_id} notes updated securely")
        return counts

    def _decrypt(self, notes: list[SessionNote]) -> list[DecryptedNote]:
        return [
            self.cipher.decrypt_entry(note.content, note_id=note.id, created_at=note.created_at)
            for note in notes
        ]

    def read_notes(self, session_id: int, caller_id: int) -> SessionNotesView:
        """
        Decrypt the notes the caller may see.

        The session's therapist gets shared and private notes, its client
        gets shared notes only, anyone else is refused. A note that fails to
        decrypt comes back as the unavailable marker without affecting the
        others.
        """
        session = self._get_session(session_id)
        is_therapist = session.therapist_id == caller_id
        is_client = session.client_id == caller_id

        if not is_therapist and not is_client:
            log_security_event("note_read_denied", user_id=caller_id, details={"session_id": session_id})
            raise Forbidden("Unauthorized access to session notes")

        shared = self._decrypt(self.repo.list_notes(self.db, session_id, NOTE_KIND_SHARED))
        private = None
        if is_therapist:
            private = self._decrypt(self.repo.list_notes(self.db, session_id, NOTE_KIND_PRIVATE))

        log_security_event(
            "note_read",
            user_id=caller_id,
            details={"session_id": session_id, "role": "therapist" if is_therapist else "client"},
        )
        return SessionNotesView(shared_notes=shared, private_notes=private)

    def client_history(self, therapist_id: int, client_id: int) -> list[SessionHistoryEntry]:
        """Therapist's sessions with one client, newest first, with decrypted notes"""
        sessions = self.repo.get_sessions_between(self.db, therapist_id, client_id)
        history = []
        for session in sessions:
            history.append(
                SessionHistoryEntry(
                    session_id=session.id,
                    scheduled_time=session.scheduled_time,
                    duration_minutes=session.duration_minutes,
                    status=session.status,
                    shared_notes=self._decrypt(self.repo.list_notes(self.db, session.id, NOTE_KIND_SHARED)),
                    private_notes=self._decrypt(self.repo.list_notes(self.db, session.id, NOTE_KIND_PRIVATE)),
                )
            )

        log_security_event(
            "client_history_read",
            user_id=therapist_id,
            details={"client_id": client_id, "sessions": len(history)},
        )
        return history
