"""Session booking service - Booking, cancellation and completion of therapy sessions"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...errors import Forbidden, InvalidRequest, NotFound, TherapySyncError
from ...models import TherapySession, utcnow
from ...schemas import Attendee, Participant
from ...services.google_calendar_service import CalendarSyncService
from .repository import SessionRepository

logger = logging.getLogger(__name__)

CANCELLATION_INITIATORS = ("client", "therapist")

# Called when booking fails after something irreversible (e.g. a captured payment)
Compensation = Callable[[], Awaitable[None]]


class SessionBookingService:
    """Service layer for the therapy session lifecycle"""

    def __init__(self, db: Session, calendar: CalendarSyncService):
        self.db = db
        self.calendar = calendar
        self.repo = SessionRepository()

    def _get_session(self, session_id: int) -> TherapySession:
        session = self.repo.get_session(self.db, session_id)
        if not session:
            raise NotFound("Session not found")
        return session

    def _get_session_for_therapist(self, session_id: int, therapist_id: int) -> TherapySession:
        session = self._get_session(session_id)
        if session.therapist_id != therapist_id:
            raise Forbidden("Unauthorized access")
        return session

    @staticmethod
    async def _compensate(compensate: Optional[Compensation], reason: str) -> None:
        if compensate is None:
            return
        try:
            await compensate()
            logger.info(f"✅ Compensation completed after failed booking: {reason}")
        except Exception as e:
            logger.error(f"❌ Compensation failed after failed booking ({reason}): {e}")

    async def book_session(
        self,
        therapist: Participant,
        client: Participant,
        scheduled_time: datetime,
        duration_minutes: int = 60,
        compensate: Optional[Compensation] = None,
    ) -> TherapySession:
        """
        Create the calendar event and record the session.

        If anything fails, compensate (e.g. a refund) is awaited before the
        original error is re-raised. A compensation failure is only logged.
        """
        if duration_minutes <= 0:
            raise InvalidRequest("Session duration must be positive")

        attendees = [
            Attendee(email=therapist.email, display_name=therapist.display_name),
            Attendee(email=client.email, display_name=client.display_name),
        ]

        try:
            event_ref = await self.calendar.create_session_event(
                self.db, therapist.id, attendees, scheduled_time, duration_minutes
            )
        except TherapySyncError as e:
            logger.error(f"❌ Error creating session for therapist {therapist.id}: {e}")
            await self._compensate(compensate, str(e))
            raise

        try:
            session = self.repo.create_session(
                self.db,
                therapist_id=therapist.id,
                client_id=client.id,
                scheduled_time=scheduled_time,
                duration_minutes=duration_minutes,
                status="scheduled",
                calendar_event_id=event_ref.remote_event_id,
                meeting_link=event_ref.meeting_link,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to save session, removing calendar event: {e}")
            try:
                await self.calendar.delete_session_event(
                    self.db, therapist.id, event_ref.remote_event_id
                )
            except TherapySyncError as cleanup_error:
                logger.error(f"❌ Orphaned calendar event {event_ref.remote_event_id}: {cleanup_error}")
            await self._compensate(compensate, str(e))
            raise

        logger.info(f"✅ Session {session.id} booked for {scheduled_time.isoformat()}")
        return session

    async def cancel_session(
        self,
        session_id: int,
        caller_id: int,
        cancelled_by: str,
        reason: Optional[str] = None,
    ) -> TherapySession:
        """Cancel a session on behalf of its client or therapist and drop the calendar event"""
        if cancelled_by not in CANCELLATION_INITIATORS:
            raise InvalidRequest("Invalid cancellation initiator.")

        session = self._get_session(session_id)
        expected_id = session.client_id if cancelled_by == "client" else session.therapist_id
        if caller_id != expected_id:
            raise Forbidden("Unauthorized access")

        if session.status == "cancelled":
            raise InvalidRequest("Session is already cancelled.")

        if session.calendar_event_id:
            await self.calendar.delete_session_event(
                self.db, session.therapist_id, session.calendar_event_id
            )

        session = self.repo.update_session(
            self.db,
            session,
            status="cancelled",
            calendar_event_id=None,
            meeting_link=None,
            cancellation_reason=reason,
            cancelled_by=cancelled_by,
            cancelled_at=utcnow(),
        )
        logger.info(f"✅ Session {session_id} cancelled by {cancelled_by}")
        return session

    async def delete_session(self, session_id: int, therapist_id: int) -> None:
        """Delete a session, its notes and its calendar event"""
        session = self._get_session_for_therapist(session_id, therapist_id)

        if session.calendar_event_id:
            await self.calendar.delete_session_event(self.db, therapist_id, session.calendar_event_id)

        self.repo.delete_session(self.db, session)
        logger.info(f"✅ Session {session_id} deleted")

    def complete_session(self, session_id: int, therapist_id: int) -> TherapySession:
        session = self._get_session_for_therapist(session_id, therapist_id)
        return self.repo.update_session(self.db, session, status="completed")

    def list_for_therapist(self, therapist_id: int) -> list[TherapySession]:
        return self.repo.get_for_therapist(self.db, therapist_id)

    def list_for_client(self, client_id: int) -> list[TherapySession]:
        return self.repo.get_for_client(self.db, client_id)
