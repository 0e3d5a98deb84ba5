"""
Security Utilities
Note encryption, OAuth token encryption at rest, and audit logging helpers
"""

import logging
import os
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ConfigurationError, DecryptionError
from .models import utcnow
from .schemas import UNAVAILABLE_NOTE_CONTENT, DecryptedNote, NoteEnvelope

logger = logging.getLogger(__name__)

NOTE_KEY_LENGTH = 32  # AES-256
NOTE_IV_LENGTH = 16


# ============================================================================
# SESSION NOTE ENCRYPTION
# ============================================================================


class NoteCipher:
    """
    AES-256-CBC cipher for session notes.

    Each call to encrypt() draws a fresh random IV. There is no
    authentication tag, so tampered ciphertext is only caught when it
    no longer unpads or decodes.
    """

    def __init__(self, key: Union[bytes, str]):
        if isinstance(key, str):
            key = key.encode("utf-8")
        if not key or len(key) != NOTE_KEY_LENGTH:
            raise ConfigurationError(f"Note encryption key must be {NOTE_KEY_LENGTH} bytes")
        self._key = key

    def encrypt(self, plain_text: str) -> NoteEnvelope:
        """Encrypt plain_text under a fresh IV"""
        iv = os.urandom(NOTE_IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plain_text.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()

        return NoteEnvelope(initialization_vector=iv.hex(), cipher_text=encrypted.hex())

    def decrypt(self, envelope: Union[str, NoteEnvelope]) -> str:
        """
        Decrypt a serialized or parsed envelope.

        Raises:
            DecryptionError: malformed envelope, wrong key, or corrupt ciphertext
        """
        if isinstance(envelope, str):
            envelope = NoteEnvelope.parse(envelope)

        try:
            iv = bytes.fromhex(envelope.initialization_vector)
            encrypted = bytes.fromhex(envelope.cipher_text)
            if len(iv) != NOTE_IV_LENGTH:
                raise ValueError(f"IV must be {NOTE_IV_LENGTH} bytes, got {len(iv)}")

            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(encrypted) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except ValueError as e:
            # Covers bad hex, block length, padding and UTF-8 failures
            raise DecryptionError(f"Unable to decrypt note: {e}") from e

    def decrypt_entry(
        self,
        raw: str,
        note_id: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> DecryptedNote:
        """Decrypt one stored entry, turning failure into the unavailable marker"""
        try:
            content = self.decrypt(raw)
        except DecryptionError as e:
            logger.error(f"❌ Decryption failed for note {note_id}: {e}")
            return DecryptedNote(
                id=note_id,
                content=UNAVAILABLE_NOTE_CONTENT,
                created_at=created_at,
                decryption_error=True,
            )
        return DecryptedNote(
            id=note_id,
            content=content,
            created_at=created_at,
            encrypted_content=raw,
        )

    def decrypt_many(self, envelopes: Iterable[Union[str, NoteEnvelope]]) -> list[DecryptedNote]:
        """Decrypt a list of envelopes; one bad entry never hides its siblings"""
        notes = []
        for envelope in envelopes:
            if isinstance(envelope, NoteEnvelope):
                notes.append(self.decrypt_entry(envelope.serialize(), created_at=envelope.created_at))
            else:
                notes.append(self.decrypt_entry(envelope))
        return notes


# ============================================================================
# OAUTH TOKEN ENCRYPTION
# ============================================================================


class TokenVault:
    """Fernet encryption for OAuth tokens stored in the database"""

    def __init__(self, key: Union[bytes, str]):
        if not key:
            raise ConfigurationError("Token encryption key is required")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ConfigurationError(f"Invalid token encryption key: {e}") from e

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise DecryptionError("Stored OAuth token could not be decrypted") from e


# ============================================================================
# AUDIT LOGGING
# ============================================================================


def log_security_event(
    event_type: str,
    user_id: Optional[Any] = None,
    details: Optional[dict[str, Any]] = None,
):
    """
    Log security-related events for audit trail

    Args:
        event_type: Type of security event (note_read, note_denied, calendar_connected, ...)
        user_id: Acting user identifier
        details: Additional event details (never note content or tokens)
    """
    log_entry = {
        "timestamp": utcnow().isoformat(),
        "event_type": event_type,
        "user_id": user_id,
        "details": details or {},
    }
    logger.info(f"SECURITY_EVENT: {log_entry}")
