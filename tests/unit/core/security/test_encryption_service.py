import pytest
from unittest.mock import patch
import base64
import os

from billing_portal.src.core.security.encryption_service import EncryptionService
from billing_portal.src.core.config.settings import Settings

# A valid 32-byte key, base64 URL-safe encoded (bytes 0x00..0x1f).
TEST_B64_KEY = "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8="
TEST_PLAINTEXT = "1985-03-15"
DEV_PLACEHOLDER_KEY = "must_be_32_bytes_long_for_aes256_key!"  # Settings default


@pytest.fixture
def service_with_b64_key() -> EncryptionService:
    return EncryptionService(encryption_key=TEST_B64_KEY)


@pytest.fixture
def service_with_dev_key_string() -> EncryptionService:
    # Non-base64 key from settings goes through SHA-256 derivation
    with patch('billing_portal.src.core.security.encryption_service.get_settings') as mock_get_settings:
        mock_get_settings.return_value = Settings(APP_ENCRYPTION_KEY=DEV_PLACEHOLDER_KEY)
        service = EncryptionService()
    return service


def test_encryption_decryption_round_trip_b64_key(service_with_b64_key: EncryptionService):
    encrypted = service_with_b64_key.encrypt(TEST_PLAINTEXT, "date_of_birth")
    assert encrypted is not None
    assert encrypted != TEST_PLAINTEXT
    assert service_with_b64_key.decrypt(encrypted, "date_of_birth") == TEST_PLAINTEXT


def test_encryption_decryption_round_trip_dev_key(service_with_dev_key_string: EncryptionService):
    encrypted = service_with_dev_key_string.encrypt(TEST_PLAINTEXT, "date_of_birth")
    assert service_with_dev_key_string.decrypt(encrypted, "date_of_birth") == TEST_PLAINTEXT


def test_same_plaintext_encrypts_differently(service_with_b64_key: EncryptionService):
    first = service_with_b64_key.encrypt("JD123456", "member_id")
    second = service_with_b64_key.encrypt("JD123456", "member_id")
    assert first != second  # Fresh nonce per value


def test_ciphertext_is_bound_to_its_column(service_with_b64_key: EncryptionService):
    encrypted = service_with_b64_key.encrypt("JD123456", "member_id")
    assert service_with_b64_key.decrypt(encrypted, "policy_number") is None
    assert service_with_b64_key.decrypt(encrypted, "member_id") == "JD123456"


def test_decrypt_with_other_key_fails(service_with_b64_key: EncryptionService):
    encrypted = service_with_b64_key.encrypt(TEST_PLAINTEXT, "date_of_birth")
    other = EncryptionService(encryption_key=base64.urlsafe_b64encode(os.urandom(32)).decode())
    assert other.decrypt(encrypted, "date_of_birth") is None


def test_decrypt_invalid_token(service_with_b64_key: EncryptionService):
    assert service_with_b64_key.decrypt("this_is_not_valid_base64_or_ciphertext!", "member_id") is None
    # Nonce (12) + tag (16) = 28 bytes minimum
    assert service_with_b64_key.decrypt(base64.urlsafe_b64encode(os.urandom(10)).decode(), "member_id") is None
    assert service_with_b64_key.decrypt(base64.urlsafe_b64encode(os.urandom(40)).decode(), "member_id") is None

    encrypted_real = service_with_b64_key.encrypt(TEST_PLAINTEXT, "member_id")
    blob = bytearray(base64.urlsafe_b64decode(encrypted_real))
    blob[-1] ^= 0x01
    tampered = base64.urlsafe_b64encode(bytes(blob)).decode()
    assert service_with_b64_key.decrypt(tampered, "member_id") is None


@pytest.mark.parametrize("empty", [None, ""])
def test_empty_values_pass_through(service_with_b64_key: EncryptionService, empty):
    assert service_with_b64_key.encrypt(empty, "member_id") is None
    assert service_with_b64_key.decrypt(empty, "member_id") is None
