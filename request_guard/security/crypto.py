"""
Cryptographic Services

Authenticated payload encryption, CSRF tokens, password strength scoring and
API key format checks, built on cryptography 41.0+.

Encrypted Blob Layout:
    salt (32 bytes) || iv (16 bytes) || tag (32 bytes) || ciphertext

Each message gets a fresh salt and IV. A 32-byte key is derived per message
from the master key and salt with PBKDF2-HMAC-SHA256 (100 000 iterations);
the plaintext is encrypted with AES-256-CBC and PKCS7 padding, and an
HMAC-SHA256 tag is computed under the same derived key over
salt || iv || ciphertext. decrypt() verifies the tag in constant time before
any ciphertext is interpreted.

Key Features:
- encrypt/decrypt on bytes, plus base64 text and JSON transport helpers
- IntegrityFailure for any tampered, truncated or malformed blob
- CSRF token issue/verify with constant-time comparison
- Password strength scoring with per-rule feedback
- Master key loaded from ENCRYPTION_KEY (hex); ConfigurationError if unusable

Dependencies:
- cryptography 41.0+: PBKDF2HMAC, AES-CBC, PKCS7 padding, HMAC
- prometheus-client 0.17+: Encrypt/decrypt outcome counters
"""

import base64
import binascii
import hmac
import json
import re
import secrets
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from request_guard.config.settings import CryptoConfig, get_security_config
from request_guard.monitoring.metrics import security_metrics
from request_guard.security.audit import SecurityEventType
from request_guard.security.exceptions import ConfigurationError, IntegrityFailure


logger = structlog.get_logger("security.crypto")

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 32
KEY_LENGTH = 32
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
MIN_BLOB_LENGTH = HEADER_LENGTH + algorithms.AES.block_size // 8
DEFAULT_PBKDF2_ITERATIONS = 100000
MIN_MASTER_KEY_LENGTH = 16

CSRF_TOKEN_BYTES = 32
API_KEY_PATTERN = re.compile(r'^[a-fA-F0-9]{64}$')


def _integrity_failure(reason: str) -> IntegrityFailure:
    security_metrics['crypto_operations'].labels(operation='decrypt', outcome='integrity_failure').inc()
    return IntegrityFailure(
        "Encrypted payload failed verification",
        metadata={'event_type': SecurityEventType.INTEGRITY_FAILURE.value, 'reason': reason}
    )


class CryptoService:
    """
    Authenticated encryption under a process-wide master key.

    Args:
        master_key: Raw master key bytes, at least 16 bytes
        iterations: PBKDF2 work factor per message

    Example:
        crypto = CryptoService.from_config()
        blob = crypto.encrypt(b'secret')
        assert crypto.decrypt(blob) == b'secret'
    """

    def __init__(self, master_key: bytes, iterations: int = DEFAULT_PBKDF2_ITERATIONS) -> None:
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"Master encryption key must be at least {MIN_MASTER_KEY_LENGTH} bytes"
            )
        if iterations < 1:
            raise ConfigurationError("PBKDF2 iterations must be positive")
        self._master_key = bytes(master_key)
        self.iterations = iterations

    @classmethod
    def from_hex(cls, key_hex: Optional[str], iterations: int = DEFAULT_PBKDF2_ITERATIONS) -> 'CryptoService':
        if not key_hex:
            raise ConfigurationError("ENCRYPTION_KEY is not configured")
        try:
            master_key = bytes.fromhex(key_hex.strip())
        except ValueError as e:
            raise ConfigurationError("ENCRYPTION_KEY must be a hex string") from e
        return cls(master_key, iterations=iterations)

    @classmethod
    def from_config(cls, config: Optional[CryptoConfig] = None) -> 'CryptoService':
        config = config or get_security_config().crypto
        return cls.from_hex(config.encryption_key_hex, iterations=config.pbkdf2_iterations)

    def derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._master_key)

    @staticmethod
    def _tag(key: bytes, salt: bytes, iv: bytes, ciphertext: bytes) -> crypto_hmac.HMAC:
        mac = crypto_hmac.HMAC(key, hashes.SHA256())
        mac.update(salt)
        mac.update(iv)
        mac.update(ciphertext)
        return mac

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt and authenticate plaintext.

        Returns:
            salt || iv || tag || ciphertext
        """
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = self.derive_key(salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        tag = self._tag(key, salt, iv, ciphertext).finalize()
        security_metrics['crypto_operations'].labels(operation='encrypt', outcome='success').inc()
        return salt + iv + tag + ciphertext

    def decrypt(self, blob: bytes) -> bytes:
        """
        Verify and decrypt a blob produced by encrypt().

        Raises:
            IntegrityFailure: Malformed blob or tag mismatch; nothing is
                decrypted in either case
        """
        if not isinstance(blob, (bytes, bytearray)) or len(blob) < MIN_BLOB_LENGTH:
            raise _integrity_failure('malformed_blob')
        ciphertext_length = len(blob) - HEADER_LENGTH
        if ciphertext_length % IV_LENGTH:
            raise _integrity_failure('malformed_blob')

        salt = bytes(blob[:SALT_LENGTH])
        iv = bytes(blob[SALT_LENGTH:SALT_LENGTH + IV_LENGTH])
        tag = bytes(blob[SALT_LENGTH + IV_LENGTH:HEADER_LENGTH])
        ciphertext = bytes(blob[HEADER_LENGTH:])

        key = self.derive_key(salt)
        try:
            self._tag(key, salt, iv, ciphertext).verify(tag)
        except InvalidSignature:
            logger.warning("Encrypted payload tag mismatch", blob_length=len(blob))
            raise _integrity_failure('tag_mismatch') from None

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise _integrity_failure('invalid_padding') from None

        security_metrics['crypto_operations'].labels(operation='decrypt', outcome='success').inc()
        return plaintext

    def encrypt_text(self, plaintext: str) -> str:
        """Encrypt UTF-8 text into the base64 transport form."""
        return base64.b64encode(self.encrypt(plaintext.encode('utf-8'))).decode('ascii')

    def decrypt_text(self, token: str) -> str:
        if isinstance(token, (bytes, bytearray)):
            token = token.decode('ascii', errors='replace')
        try:
            blob = base64.b64decode(token.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise _integrity_failure('invalid_base64') from None
        try:
            return self.decrypt(blob).decode('utf-8')
        except UnicodeDecodeError:
            raise _integrity_failure('invalid_utf8') from None

    def encrypt_json(self, data: Any) -> str:
        return self.encrypt_text(json.dumps(data, separators=(',', ':'), default=str))

    def decrypt_json(self, token: str) -> Any:
        text = self.decrypt_text(token)
        try:
            return json.loads(text)
        except RecursionError:
            raise _integrity_failure('max_depth_exceeded') from None
        except ValueError:
            raise _integrity_failure('invalid_json') from None


def issue_csrf_token() -> str:
    """64 hex characters from 32 random bytes."""
    return secrets.token_hex(CSRF_TOKEN_BYTES)


def verify_csrf_token(presented: Any, expected: Any) -> bool:
    """Constant-time comparison; missing or non-string input is never valid."""
    if not isinstance(presented, str) or not isinstance(expected, str):
        return False
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode('utf-8'), expected.encode('utf-8'))


def validate_api_key(api_key: Any) -> bool:
    """Format check for API keys: exactly 64 hex characters."""
    return isinstance(api_key, str) and API_KEY_PATTERN.match(api_key) is not None


@dataclass(frozen=True)
class PasswordStrengthResult:
    score: int
    is_valid: bool
    feedback: Tuple[str, ...]


_SYMBOLS = re.compile(r"[!@#$%^&*(),.?\":{}|<>\[\]\\/;'`~_+=-]")
_REPEATED_RUN = re.compile(r'(.)\1{2,}')
_WEAK_SUBSTRING = re.compile(r'123|abc|qwe|password|letmein', re.IGNORECASE)

PASSWORD_MAX_SCORE = 8
PASSWORD_MIN_VALID_SCORE = 6

# (predicate, feedback when the predicate fails), one point per satisfied rule
PASSWORD_RULES: List[Tuple[Callable[[str], bool], str]] = [
    (lambda p: len(p) >= 8, 'Password should be at least 8 characters long'),
    (lambda p: len(p) >= 12, 'Use at least 12 characters for a stronger password'),
    (lambda p: re.search(r'[a-z]', p) is not None, 'Include lowercase letters'),
    (lambda p: re.search(r'[A-Z]', p) is not None, 'Include uppercase letters'),
    (lambda p: re.search(r'\d', p) is not None, 'Include numbers'),
    (lambda p: _SYMBOLS.search(p) is not None, 'Include special characters'),
    (lambda p: _REPEATED_RUN.search(p) is None, 'Avoid repeating characters'),
    (lambda p: _WEAK_SUBSTRING.search(p) is None, 'Avoid common patterns'),
]


def check_password_strength(password: str) -> PasswordStrengthResult:
    """
    Score a password against PASSWORD_RULES.

    Returns:
        PasswordStrengthResult with score 0..8, is_valid when the score is at
        least 6, and feedback for every unmet rule in rule order
    """
    score = 0
    feedback = []
    for predicate, message in PASSWORD_RULES:
        if predicate(password):
            score += 1
        else:
            feedback.append(message)
    score = min(score, PASSWORD_MAX_SCORE)
    return PasswordStrengthResult(
        score=score,
        is_valid=score >= PASSWORD_MIN_VALID_SCORE,
        feedback=tuple(feedback),
    )


__all__ = [
    'SALT_LENGTH',
    'IV_LENGTH',
    'TAG_LENGTH',
    'HEADER_LENGTH',
    'DEFAULT_PBKDF2_ITERATIONS',
    'CryptoService',
    'issue_csrf_token',
    'verify_csrf_token',
    'validate_api_key',
    'PasswordStrengthResult',
    'PASSWORD_RULES',
    'check_password_strength',
]
