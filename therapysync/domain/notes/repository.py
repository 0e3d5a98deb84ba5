"""Note repository - Append-only storage for encrypted session notes"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import SessionNote, TherapySession, utcnow


class NoteRepository:
    """Repository for session note rows. Rows are insert-only."""

    @staticmethod
    def get_session(db: Session, session_id: int) -> Optional[TherapySession]:
        return db.query(TherapySession).filter(TherapySession.id == session_id).first()

    @staticmethod
    def append(db: Session, session_id: int, kind: str, content: str, commit: bool = True) -> SessionNote:
        """Append a serialized envelope to the session's notes of the given kind"""
        note = SessionNote(session_id=session_id, kind=kind, content=content, created_at=utcnow())
        db.add(note)
        if commit:
            db.commit()
            db.refresh(note)
        return note

    @staticmethod
    def list_notes(db: Session, session_id: int, kind: str) -> list[SessionNote]:
        """Notes of one kind in the order they were appended"""
        return (
            db.query(SessionNote)
            .filter(SessionNote.session_id == session_id, SessionNote.kind == kind)
            .order_by(SessionNote.id.asc())
            .all()
        )

    @staticmethod
    def count_notes(db: Session, session_id: int, kind: str) -> int:
        return (
            db.query(func.count(SessionNote.id))
            .filter(SessionNote.session_id == session_id, SessionNote.kind == kind)
            .scalar()
        )

    @staticmethod
    def get_sessions_between(db: Session, therapist_id: int, client_id: int) -> list[TherapySession]:
        """All sessions of a therapist with one client, most recent first"""
        return (
            db.query(TherapySession)
            .filter(TherapySession.therapist_id == therapist_id, TherapySession.client_id == client_id)
            .order_by(TherapySession.scheduled_time.desc())
            .all()
        )
