import hmac
import json
import logging
import os
import secrets
from hashlib import sha256
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, ValidationError

from riskguard.config import Config
from riskguard.exceptions import DecryptionError, EncryptionError
from riskguard.timeutils import utcnow

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16


def canonical_json(data: Any) -> str:
    """Deterministic JSON used for hashing and encryption"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


class EncryptedPayload(BaseModel):
    encrypted_data: str
    iv: str
    tag: str
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


class EncryptionFramework:
    """
    Composes standard primitives from ``cryptography``: PBKDF2-HMAC-SHA512
    key derivation, AES-256-GCM with fixed associated data, HMAC-SHA256
    integrity hashes and constant-time verification.

    Failures surface as EncryptionError / DecryptionError; there is no
    plaintext fallback.
    """

    PIN_ITERATIONS = 50000
    HASH_LENGTH = 64

    def __init__(self, iterations: Optional[int] = None, key_length: int = Config.KEY_LENGTH,
                 associated_data: bytes = Config.ASSOCIATED_DATA):
        self.iterations = iterations or Config.PBKDF2_ITERATIONS
        self.key_length = key_length
        self.associated_data = associated_data

    @staticmethod
    def generate_salt() -> str:
        return os.urandom(32).hex()

    def _pbkdf2(self, secret: str, salt: str, iterations: int, length: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=length,
            salt=salt.encode(),
            iterations=iterations,
        )
        return kdf.derive(secret.encode())

    def derive_key(self, password: str, salt: str) -> bytes:
        return self._pbkdf2(password, salt, self.iterations, self.key_length)

    def encrypt_transaction_data(self, data: Any, password: str, salt: str) -> EncryptedPayload:
        """
        Encrypt a JSON-serialisable object with a password-derived key.

        Args:
            data: Object to encrypt
            password: Secret the key is derived from
            salt: Per-record salt

        Returns:
            EncryptedPayload with hex ciphertext, nonce and tag
        """
        try:
            plaintext = json.dumps(data).encode()
            key = self.derive_key(password, salt)
            iv = os.urandom(NONCE_BYTES)
            sealed = AESGCM(key).encrypt(iv, plaintext, self.associated_data)
        except (TypeError, ValueError) as e:
            logger.error(f"Encryption failed: {type(e).__name__}")
            raise EncryptionError("Failed to encrypt transaction data") from e

        return EncryptedPayload(
            encrypted_data=sealed[:-TAG_BYTES].hex(),
            iv=iv.hex(),
            tag=sealed[-TAG_BYTES:].hex(),
        )

    def decrypt_transaction_data(self, encrypted: EncryptedPayload, password: str, salt: str) -> Any:
        try:
            key = self.derive_key(password, salt)
            sealed = bytes.fromhex(encrypted.encrypted_data) + bytes.fromhex(encrypted.tag)
            plaintext = AESGCM(key).decrypt(bytes.fromhex(encrypted.iv), sealed, self.associated_data)
            return json.loads(plaintext.decode())
        except (InvalidTag, ValueError) as e:
            logger.error("Decryption failed: authentication or format error")
            raise DecryptionError("Failed to decrypt transaction data") from e

    def encrypt_offline_data(self, data: Any, device_secret: str, salt: str) -> str:
        """Seal an offline record with a key derived from the device secret"""
        return self.encrypt_transaction_data(data, device_secret, salt).model_dump_json()

    def decrypt_offline_data(self, sealed: str, device_secret: str, salt: str) -> Any:
        try:
            payload = EncryptedPayload.model_validate_json(sealed)
        except ValidationError as e:
            raise DecryptionError("Malformed offline payload") from e
        return self.decrypt_transaction_data(payload, device_secret, salt)

    @staticmethod
    def generate_secure_hash(data: str, key: str) -> str:
        return hmac.new(key.encode(), data.encode(), sha256).hexdigest()

    def verify_data_integrity(self, data: str, expected_hash: str, key: str) -> bool:
        return hmac.compare_digest(self.generate_secure_hash(data, key), expected_hash)

    @staticmethod
    def generate_secure_pin() -> str:
        return f"{secrets.randbelow(10000):04d}"

    def hash_pin(self, pin: str, salt: str) -> str:
        return self._pbkdf2(pin, salt, self.PIN_ITERATIONS, self.HASH_LENGTH).hex()

    def verify_pin(self, pin: str, expected_hash: str, salt: str) -> bool:
        return hmac.compare_digest(self.hash_pin(pin, salt), expected_hash)

    def hash_password(self, password: str, salt: str) -> str:
        return self._pbkdf2(password, salt, self.iterations, self.HASH_LENGTH).hex()

    def verify_password(self, password: str, expected_hash: str, salt: str) -> bool:
        return hmac.compare_digest(self.hash_password(password, salt), expected_hash)
