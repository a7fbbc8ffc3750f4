"""Encryption of stored OTP secrets with a per-value IV and salt.

Each secret gets its own random salt (for key derivation) and IV (the AES-GCM
nonce), mirroring how the three ``encrypted_otp_secret*`` columns are stored.
"""

from __future__ import annotations

import os
from typing import NamedTuple, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

PBKDF2_ITERATIONS_DEFAULT: int = 200_000
PBKDF2_SALT_LEN: int = 16
AES_GCM_NONCE_LEN: int = 12


class OtpConfigurationError(Exception):
    """Raised when the secret encryption key is not configured."""


class DecryptionError(ValueError):
    """Raised when a stored secret cannot be decrypted with the configured key."""


class EncryptedSecret(NamedTuple):
    ciphertext: bytes
    iv: bytes
    salt: bytes


class SecretCipher(Protocol):
    """Boundary for the service that encrypts OTP secrets at rest."""

    def encrypt(self, plaintext: str, key: str) -> EncryptedSecret: ...

    def decrypt(self, ciphertext: bytes, iv: bytes, salt: bytes, key: str) -> str: ...


def derive_key(key: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS_DEFAULT) -> bytes:
    """Derive a 256-bit AES key from the configured key material and a salt."""

    if not key:
        raise OtpConfigurationError("OTP secret encryption key is not configured.")
    if len(salt) != PBKDF2_SALT_LEN:
        raise ValueError("Salt must be exactly 16 bytes.")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,  # AES-256
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(key.encode("utf-8"))


class AesGcmCipher:
    """Default :class:`SecretCipher` using PBKDF2-HMAC-SHA256 and AES-256-GCM."""

    def __init__(self, iterations: int = PBKDF2_ITERATIONS_DEFAULT) -> None:
        self.iterations = iterations

    def encrypt(self, plaintext: str, key: str) -> EncryptedSecret:
        salt = os.urandom(PBKDF2_SALT_LEN)
        iv = os.urandom(AES_GCM_NONCE_LEN)
        aesgcm = AESGCM(derive_key(key, salt, self.iterations))
        ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), associated_data=None)
        return EncryptedSecret(ciphertext=ciphertext, iv=iv, salt=salt)

    def decrypt(self, ciphertext: bytes, iv: bytes, salt: bytes, key: str) -> str:
        aesgcm = AESGCM(derive_key(key, salt, self.iterations))
        try:
            plaintext = aesgcm.decrypt(iv, ciphertext, associated_data=None)
        except InvalidTag as exc:
            raise DecryptionError("OTP secret could not be decrypted. Key or stored value incorrect.") from exc
        return plaintext.decode("utf-8")
