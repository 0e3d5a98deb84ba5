"""Session repository - Database operations for therapy sessions"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import TherapySession


class SessionRepository:
    """Repository for therapy session database operations"""

    @staticmethod
    def get_session(db: Session, session_id: int) -> Optional[TherapySession]:
        return db.query(TherapySession).filter(TherapySession.id == session_id).first()

    @staticmethod
    def get_for_therapist(db: Session, therapist_id: int) -> list[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(TherapySession.therapist_id == therapist_id)
            .order_by(TherapySession.scheduled_time.asc())
            .all()
        )

    @staticmethod
    def get_for_client(db: Session, client_id: int) -> list[TherapySession]:
        return (
            db.query(TherapySession)
            .filter(TherapySession.client_id == client_id)
            .order_by(TherapySession.scheduled_time.asc())
            .all()
        )

    @staticmethod
    def create_session(db: Session, **session_data) -> TherapySession:
        session = TherapySession(**session_data)
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    @staticmethod
    def update_session(db: Session, session: TherapySession, **updates) -> TherapySession:
        """Update a session; None values clear the field"""
        for key, value in updates.items():
            if hasattr(session, key):
                setattr(session, key, value)

        db.commit()
        db.refresh(session)
        return session

    @staticmethod
    def delete_session(db: Session, session: TherapySession) -> None:
        """Delete a session together with its notes"""
        db.delete(session)
        db.commit()
