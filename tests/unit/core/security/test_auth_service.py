import pytest
import jwt
from datetime import datetime, timedelta, timezone

from billing_portal.src.core.config.settings import Settings
from billing_portal.src.core.security.auth_service import AuthService, SessionTokenPayload


@pytest.fixture
def auth_service() -> AuthService:
    return AuthService(Settings(JWT_SECRET_KEY="unit-test-secret", BCRYPT_ROUNDS=4,
                                JWT_ACCESS_TOKEN_EXPIRE_MINUTES=30))


def test_password_hash_round_trip(auth_service: AuthService):
    password_hash = auth_service.hash_password("correct horse battery")
    assert password_hash != "correct horse battery"
    assert auth_service.verify_password("correct horse battery", password_hash) is True
    assert auth_service.verify_password("wrong horse battery", password_hash) is False


def test_long_passwords_are_compared_in_full(auth_service: AuthService):
    base = "x" * 80
    password_hash = auth_service.hash_password(base + "a")
    assert auth_service.verify_password(base + "b", password_hash) is False


@pytest.mark.parametrize("password, stored", [("", "$2b$04$abc"), ("secret", None), ("secret", "not-a-hash")])
def test_verify_password_fails_closed(auth_service: AuthService, password, stored):
    assert auth_service.verify_password(password, stored) is False


def test_access_token_round_trip(auth_service: AuthService):
    token = auth_service.create_access_token(SessionTokenPayload(
        sub="patient-1", email="a@example.com", auth_method="magic_link", needs_password_setup=True,
    ))
    payload = auth_service.decode_access_token(token)

    assert payload is not None
    assert payload.sub == "patient-1"
    assert payload.auth_method == "magic_link"
    assert payload.needs_password_setup is True
    assert payload.exp - payload.iat == 30 * 60
    assert auth_service.access_token_ttl_seconds == 1800


def test_token_signed_with_other_secret_is_rejected(auth_service: AuthService):
    other = AuthService(Settings(JWT_SECRET_KEY="someone-else"))
    token = other.create_access_token(SessionTokenPayload(sub="p", email="a@example.com", auth_method="password"))
    assert auth_service.decode_access_token(token) is None


def test_expired_token_is_rejected(auth_service: AuthService):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    token = jwt.encode(
        {"sub": "p", "email": "a@example.com", "auth_method": "password", "iat": past, "exp": past + timedelta(minutes=5)},
        "unit-test-secret", algorithm="HS256",
    )
    assert auth_service.decode_access_token(token) is None


@pytest.mark.parametrize("claims", [
    {"email": "a@example.com", "auth_method": "password"},  # No subject
    {"sub": "p", "auth_method": "password"},  # Missing email
])
def test_malformed_claims_are_rejected(auth_service: AuthService, claims):
    claims = dict(claims, exp=datetime.now(timezone.utc) + timedelta(minutes=5))
    token = jwt.encode(claims, "unit-test-secret", algorithm="HS256")
    assert auth_service.decode_access_token(token) is None


def test_garbage_token_is_rejected(auth_service: AuthService):
    assert auth_service.decode_access_token("not.a.jwt") is None
