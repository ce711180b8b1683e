"""
Password hashing and access-token handling for patient sessions.

Tokens are HS256 JWTs whose subject is the patient id. The portal trusts the
subject as the tenant boundary for every ownership check, so decoding fails
closed: any invalid, expired or malformed token yields None.
"""

import bcrypt
import jwt
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional
from pydantic import BaseModel

from ..config.settings import Settings, get_settings


class SessionTokenPayload(BaseModel):
    sub: str  # Patient id
    email: str
    auth_method: str  # "magic_link" or "password"
    needs_password_setup: bool = False
    iat: Optional[int] = None
    exp: Optional[int] = None


class AuthService:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @staticmethod
    def _prehash(password: str) -> bytes:
        # bcrypt only reads 72 bytes; SHA-256 first so long passphrases still count in full.
        return hashlib.sha256(password.encode('utf-8')).hexdigest().encode('ascii')

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.settings.BCRYPT_ROUNDS)
        return bcrypt.hashpw(self._prehash(password), salt).decode('utf-8')

    def verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(self._prehash(password), password_hash.encode('utf-8'))
        except ValueError:
            # Malformed stored hash
            return False

    def create_access_token(self, payload: SessionTokenPayload) -> str:
        now = datetime.now(timezone.utc)
        claims = payload.model_dump(exclude={"iat", "exp"})
        claims.update({
            "iat": now,
            "exp": now + timedelta(minutes=self.settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        })
        return jwt.encode(claims, self.settings.JWT_SECRET_KEY, algorithm=self.settings.JWT_ALGORITHM)

    def decode_access_token(self, token: str) -> Optional[SessionTokenPayload]:
        try:
            claims = jwt.decode(
                token,
                self.settings.JWT_SECRET_KEY,
                algorithms=[self.settings.JWT_ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
            return SessionTokenPayload(**claims)
        except jwt.InvalidTokenError:
            return None
        except ValueError:
            # Claims present but not the expected shape
            return None

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60
