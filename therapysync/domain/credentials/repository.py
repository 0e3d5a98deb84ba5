"""Credential repository - Database operations for Google Calendar credentials"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import utcnow
from ...models_google_calendar import GoogleCalendarCredential
from ...schemas import CalendarCredential
from ...security_utils import TokenVault

logger = logging.getLogger(__name__)

UPSERT_FIELDS = ("access_token", "refresh_token", "token_expires_at", "scope", "google_calendar_id")
ENCRYPTED_FIELDS = ("access_token", "refresh_token")


class CredentialRepository:
    """
    Repository for calendar credentials, one row per owner.

    Tokens are encrypted before they reach the database and decrypted on the
    way out, so callers only ever see plain CalendarCredential values.
    """

    def __init__(self, vault: TokenVault):
        self.vault = vault

    @staticmethod
    def _get_row(db: Session, owner_id: int) -> Optional[GoogleCalendarCredential]:
        return (
            db.query(GoogleCalendarCredential)
            .filter(GoogleCalendarCredential.owner_id == owner_id)
            .first()
        )

    def _to_schema(self, row: GoogleCalendarCredential) -> CalendarCredential:
        return CalendarCredential(
            owner_id=row.owner_id,
            access_token=self.vault.decrypt(row.access_token),
            refresh_token=self.vault.decrypt(row.refresh_token),
            token_expires_at=row.token_expires_at,
            scope=row.scope or "",
            google_calendar_id=row.google_calendar_id,
        )

    def get(self, db: Session, owner_id: int) -> Optional[CalendarCredential]:
        """Get the owner's credential, or None if they never connected"""
        row = self._get_row(db, owner_id)
        if not row:
            return None
        return self._to_schema(row)

    def _apply(self, row: GoogleCalendarCredential, fields: dict) -> None:
        for key, value in fields.items():
            if value is None:
                continue
            if key in ENCRYPTED_FIELDS:
                value = self.vault.encrypt(value)
            setattr(row, key, value)
        row.updated_at = utcnow()

    def upsert(self, db: Session, owner_id: int, **fields) -> CalendarCredential:
        """
        Insert the owner's credential or update it in place.

        Fields left as None keep their stored value, so a refresh that did
        not rotate the refresh token leaves it untouched.
        """
        unknown = set(fields) - set(UPSERT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown credential fields: {', '.join(sorted(unknown))}")

        row = self._get_row(db, owner_id)
        if row:
            self._apply(row, fields)
            db.commit()
            db.refresh(row)
            return self._to_schema(row)

        missing = [f for f in ("access_token", "refresh_token", "token_expires_at") if not fields.get(f)]
        if missing:
            raise ValueError(f"New credential requires: {', '.join(missing)}")

        row = GoogleCalendarCredential(owner_id=owner_id, scope="")
        self._apply(row, fields)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Another request inserted the owner's row first; update that one
            db.rollback()
            logger.info(f"🔄 Credential for owner {owner_id} inserted concurrently, updating")
            row = self._get_row(db, owner_id)
            self._apply(row, fields)
            db.commit()
        db.refresh(row)
        return self._to_schema(row)

    def delete(self, db: Session, owner_id: int) -> bool:
        """Delete the owner's credential. Returns False if none was stored."""
        row = self._get_row(db, owner_id)
        if not row:
            return False
        db.delete(row)
        db.commit()
        return True
