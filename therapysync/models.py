from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

NOTE_KIND_PRIVATE = "private"
NOTE_KIND_SHARED = "shared"

SESSION_STATUSES = ("scheduled", "in-progress", "completed", "cancelled", "no-show")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TherapySession(Base):
    __tablename__ = "therapy_sessions"

    id = Column(Integer, primary_key=True, index=True)
    # Therapist and client accounts live in the user service
    therapist_id = Column(Integer, nullable=False)
    client_id = Column(Integer, nullable=False)
    scheduled_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, default=60, nullable=False)
    status = Column(String(20), default="scheduled", nullable=False)  # see SESSION_STATUSES

    # Google Calendar event reference, set once at booking
    calendar_event_id = Column(String(500), nullable=True, index=True)
    meeting_link = Column(String(500), nullable=True)

    # Cancellation
    cancellation_reason = Column(String(1000), nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # client, therapist
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    notes = relationship(
        "SessionNote",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="SessionNote.id",
    )

    __table_args__ = (
        Index("ix_therapy_sessions_therapist_time", "therapist_id", "scheduled_time"),
        Index("ix_therapy_sessions_client_time", "client_id", "scheduled_time"),
    )


class SessionNote(Base):
    """One encrypted note entry. Rows are only ever inserted, never updated."""

    __tablename__ = "session_notes"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("therapy_sessions.id"), nullable=False, index=True)
    kind = Column(String(10), nullable=False)  # private, shared
    content = Column(Text, nullable=False)  # serialized note envelope
    created_at = Column(DateTime, nullable=False, default=utcnow)

    session = relationship("TherapySession", back_populates="notes")
