"""
Encryption Security Testing

Validates the authenticated payload encryption used for encrypted request
bodies and responses.

Key Testing Coverage:
- Round trip for bytes, text and JSON payloads
- Fresh salt and IV per message
- Tamper detection on every region of the blob (salt, IV, tag, ciphertext)
- Truncated, misaligned and non-base64 input rejected as IntegrityFailure
- Wrong master key never yields plaintext
- Master key loading and work factor configuration
"""

import base64

import pytest

from request_guard.security.crypto import (
    DEFAULT_PBKDF2_ITERATIONS,
    HEADER_LENGTH,
    IV_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
    CryptoService,
)
from request_guard.security.exceptions import ConfigurationError, IntegrityFailure

from tests.conftest import TEST_ENCRYPTION_KEY, TEST_PBKDF2_ITERATIONS


def flip_byte(blob: bytes, index: int) -> bytes:
    tampered = bytearray(blob)
    tampered[index] ^= 0x01
    return bytes(tampered)


class TestEncryptionRoundTrip:

    @pytest.mark.security
    def test_bytes_round_trip(self, crypto_service):
        plaintext = b'account=12345;balance=100.00'
        assert crypto_service.decrypt(crypto_service.encrypt(plaintext)) == plaintext

    @pytest.mark.security
    def test_empty_plaintext_round_trip(self, crypto_service):
        blob = crypto_service.encrypt(b'')
        assert len(blob) == HEADER_LENGTH + 16
        assert crypto_service.decrypt(blob) == b''

    @pytest.mark.security
    def test_text_and_json_helpers(self, crypto_service):
        assert crypto_service.decrypt_text(crypto_service.encrypt_text('héllo wörld')) == 'héllo wörld'
        payload = {'name': 'Quarterly plan', 'tags': ['a', 'b'], 'budget': 1200}
        assert crypto_service.decrypt_json(crypto_service.encrypt_json(payload)) == payload

    @pytest.mark.security
    def test_blob_layout_and_fresh_randomness(self, crypto_service):
        first = crypto_service.encrypt(b'same message')
        second = crypto_service.encrypt(b'same message')
        assert first != second
        assert first[:SALT_LENGTH] != second[:SALT_LENGTH]
        assert first[SALT_LENGTH:SALT_LENGTH + IV_LENGTH] != second[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        assert (len(first) - HEADER_LENGTH) % 16 == 0


class TestTamperDetection:

    @pytest.mark.security
    @pytest.mark.parametrize('region_offset', [
        0,
        SALT_LENGTH,
        SALT_LENGTH + IV_LENGTH,
        SALT_LENGTH + IV_LENGTH + TAG_LENGTH,
    ], ids=['salt', 'iv', 'tag', 'ciphertext'])
    def test_any_flipped_bit_is_detected(self, crypto_service, region_offset):
        blob = crypto_service.encrypt(b'{"amount": 10}')
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt(flip_byte(blob, region_offset))
        assert exc_info.value.metadata['reason'] == 'tag_mismatch'
        assert exc_info.value.http_status == 400

    @pytest.mark.security
    def test_last_ciphertext_byte_is_covered(self, crypto_service):
        blob = crypto_service.encrypt(b'payload')
        with pytest.raises(IntegrityFailure):
            crypto_service.decrypt(flip_byte(blob, len(blob) - 1))

    @pytest.mark.security
    @pytest.mark.parametrize('length', [0, 1, HEADER_LENGTH - 1, HEADER_LENGTH, HEADER_LENGTH + 15])
    def test_truncated_blob_is_malformed(self, crypto_service, length):
        blob = crypto_service.encrypt(b'x' * 40)
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt(blob[:length])
        assert exc_info.value.metadata['reason'] == 'malformed_blob'

    @pytest.mark.security
    def test_misaligned_ciphertext_is_malformed(self, crypto_service):
        blob = crypto_service.encrypt(b'x' * 40)
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt(blob + b'\x00')
        assert exc_info.value.metadata['reason'] == 'malformed_blob'

    @pytest.mark.security
    def test_non_bytes_blob_is_malformed(self, crypto_service):
        with pytest.raises(IntegrityFailure):
            crypto_service.decrypt('not bytes')

    @pytest.mark.security
    def test_wrong_master_key_is_rejected(self, crypto_service):
        other = CryptoService(b'k' * 32, iterations=TEST_PBKDF2_ITERATIONS)
        blob = crypto_service.encrypt(b'confidential')
        with pytest.raises(IntegrityFailure) as exc_info:
            other.decrypt(blob)
        assert exc_info.value.metadata['reason'] == 'tag_mismatch'

    @pytest.mark.security
    def test_invalid_base64_token(self, crypto_service):
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt_text('***not base64***')
        assert exc_info.value.metadata['reason'] == 'invalid_base64'

    @pytest.mark.security
    def test_non_json_plaintext_is_rejected(self, crypto_service):
        token = crypto_service.encrypt_text('plain words, not json')
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt_json(token)
        assert exc_info.value.metadata['reason'] == 'invalid_json'

    @pytest.mark.security
    def test_non_utf8_plaintext_is_rejected(self, crypto_service):
        token = base64.b64encode(crypto_service.encrypt(b'\xff\xfe\xfa')).decode('ascii')
        with pytest.raises(IntegrityFailure) as exc_info:
            crypto_service.decrypt_text(token)
        assert exc_info.value.metadata['reason'] == 'invalid_utf8'


class TestKeyManagement:

    @pytest.mark.security
    def test_default_work_factor(self):
        service = CryptoService.from_hex(TEST_ENCRYPTION_KEY)
        assert service.iterations == DEFAULT_PBKDF2_ITERATIONS == 100000

    @pytest.mark.security
    def test_derived_key_depends_on_salt(self, crypto_service):
        first = crypto_service.derive_key(b'\x00' * SALT_LENGTH)
        second = crypto_service.derive_key(b'\x01' * SALT_LENGTH)
        assert len(first) == 32
        assert first != second
        assert crypto_service.derive_key(b'\x00' * SALT_LENGTH) == first

    @pytest.mark.security
    @pytest.mark.parametrize('key_hex', [None, '', 'zz' * 32, 'abc'])
    def test_unusable_hex_key_is_configuration_error(self, key_hex):
        with pytest.raises(ConfigurationError):
            CryptoService.from_hex(key_hex)

    @pytest.mark.security
    def test_short_master_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            CryptoService(b'short')

    @pytest.mark.security
    def test_non_positive_iterations_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            CryptoService(b'k' * 32, iterations=0)

    @pytest.mark.security
    def test_from_config(self, security_config):
        service = CryptoService.from_config(security_config.crypto)
        assert service.iterations == TEST_PBKDF2_ITERATIONS
        assert service.decrypt_text(service.encrypt_text('ok')) == 'ok'
