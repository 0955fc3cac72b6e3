"""
Encryption of provider API keys at rest.

Keys are sealed with AES-256-GCM under a key derived from the operator's
secret with scrypt. The stored form is base64 of
``salt | nonce | tag | ciphertext``, with a fresh salt and nonce per value.
"""

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENCRYPTION_SECRET_ENV_VAR = "API_KEY_ENCRYPTION_SECRET"
MIN_SECRET_LENGTH = 32

SALT_LENGTH = 32
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

# scrypt cost parameters
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def validate_secret(secret: Optional[str]) -> str:
    """Return ``secret`` if it is usable as an encryption secret.

    Raises:
        ConfigurationError: If the secret is missing or too short
    """
    if not secret:
        raise ConfigurationError(f"{ENCRYPTION_SECRET_ENV_VAR} is not set")
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"{ENCRYPTION_SECRET_ENV_VAR} must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return secret


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def encrypt_api_key(api_key: str, secret: Optional[str]) -> str:
    """Seal an API key for storage.

    Args:
        api_key: Plaintext provider key
        secret: Operator encryption secret

    Returns:
        Base64 text safe to store in a TEXT column

    Raises:
        ConfigurationError: If the secret is missing or too short
    """
    secret = validate_secret(secret)
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)

    sealed = AESGCM(_derive_key(secret, salt)).encrypt(nonce, api_key.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")


def decrypt_api_key(stored: str, secret: Optional[str]) -> str:
    """Open a value produced by ``encrypt_api_key``.

    Raises:
        ConfigurationError: If the secret is unusable, or the value was
            sealed under another secret or has been tampered with
    """
    secret = validate_secret(secret)
    try:
        combined = base64.b64decode(stored, validate=True)
    except binascii.Error:
        raise ConfigurationError("Stored API key is not valid base64") from None

    salt = combined[:SALT_LENGTH]
    nonce = combined[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
    tag = combined[SALT_LENGTH + NONCE_LENGTH:SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH]
    ciphertext = combined[SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH:]

    try:
        plaintext = AESGCM(_derive_key(secret, salt)).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise ConfigurationError("Stored API key does not match the configured encryption secret") from None
    return plaintext.decode("utf-8")


def is_encrypted_api_key(value: str) -> bool:
    """Whether ``value`` has the shape of an encrypted key.

    Provider keys contain characters outside the base64 alphabet, so a
    plaintext key never passes.
    """
    try:
        decoded = base64.b64decode(value, validate=True)
    except binascii.Error:
        return False
    return len(decoded) >= SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH + 1


def reveal_api_key(stored: str, secret: Optional[str]) -> str:
    """Plaintext of a stored key, accepting legacy unencrypted values.

    Raises:
        ConfigurationError: If an encrypted value cannot be decrypted
    """
    if not is_encrypted_api_key(stored):
        logger.warning("API key is stored unencrypted; re-save it to encrypt it at rest")
        return stored
    return decrypt_api_key(stored, secret)
