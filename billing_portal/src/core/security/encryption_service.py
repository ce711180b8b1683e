import base64
import hashlib
import os
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config.settings import get_settings

logger = structlog.get_logger(__name__)

class EncryptionService:
    """
    AES-256-GCM encryption for PHI columns (date of birth, policy and member
    numbers).

    Every value is bound to its column through the GCM associated data, so a
    ciphertext copied from `insurance_cards.member_id` into
    `patients.date_of_birth` fails authentication instead of decrypting.
    Stored format: urlsafe-base64(nonce || ciphertext || tag).
    """
    NONCE_BYTES = 12
    TAG_BYTES = 16

    def __init__(self, encryption_key: Optional[str] = None):
        key_str = encryption_key if encryption_key else get_settings().APP_ENCRYPTION_KEY
        self.aesgcm = AESGCM(self._derive_key(key_str))
        logger.info("EncryptionService initialized.")

    @staticmethod
    def _derive_key(key_str: str) -> bytes:
        try:
            decoded = base64.urlsafe_b64decode(key_str)
            if len(decoded) == 32:
                return decoded
        except (ValueError, TypeError):
            pass
        logger.warn("APP_ENCRYPTION_KEY is not a base64-encoded 32-byte key; deriving one with SHA-256. "
                    "Acceptable for development only.")
        return hashlib.sha256(key_str.encode('utf-8')).digest()

    def encrypt(self, plaintext: Optional[str], field: str) -> Optional[str]:
        """Encrypts `plaintext` for column `field`. None and empty strings pass through as None."""
        if not plaintext:
            return None
        nonce = os.urandom(self.NONCE_BYTES)
        sealed = self.aesgcm.encrypt(nonce, plaintext.encode('utf-8'), field.encode('utf-8'))
        return base64.urlsafe_b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, token: Optional[str], field: str) -> Optional[str]:
        """
        Returns the plaintext, or None when the token is empty, malformed, was
        produced for another column, or fails authentication.
        """
        if not token:
            return None
        try:
            blob = base64.urlsafe_b64decode(token.encode('ascii'))
        except (ValueError, UnicodeEncodeError):
            logger.warn("Ciphertext is not valid base64.", field=field)
            return None

        if len(blob) < self.NONCE_BYTES + self.TAG_BYTES:
            logger.warn("Ciphertext too short.", field=field, length=len(blob))
            return None

        nonce, sealed = blob[:self.NONCE_BYTES], blob[self.NONCE_BYTES:]
        try:
            return self.aesgcm.decrypt(nonce, sealed, field.encode('utf-8')).decode('utf-8')
        except InvalidTag:
            logger.warn("Decryption failed: authentication tag mismatch.", field=field)
            return None
