"""Symmetric encryption for stored credentials.

WHAT:
    Fernet wrapper used by the file-backed credential store to keep API keys
    and attribution tokens out of plaintext on disk.

WHY:
    - The credential file sits in the user's Application Support folder.
    - Keys must never land on disk or in logs unencrypted.

REFERENCES:
    - subbuddy/services/credential_store.py (EncryptedFileCredentialStore)
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def build_cipher(encryption_key: Optional[str]) -> Fernet:
    """Validate the configured key and return a Fernet cipher.

    Raises:
        RuntimeError: If the key is missing or not a 32-byte URL-safe base64 string.
    """
    if not encryption_key:
        raise RuntimeError(
            "CREDENTIAL_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
            "or add it to .env."
        )

    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(encryption_key.encode("utf-8"))
        return Fernet(encryption_key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "CREDENTIAL_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(cipher: Fernet, plaintext: str, *, context: str) -> str:
    """Encrypt a secret before persisting.

    Args:
        cipher:    Fernet instance from `build_cipher`.
        plaintext: Raw secret to encrypt (e.g., RevenueCat API key).
        context:   Friendly label for logs (storage key).

    Returns:
        URL-safe base64 ciphertext suitable for the credential file.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(cipher: Fernet, ciphertext: str, *, context: str) -> str:
    """Reverse `encrypt_secret` using the same cipher.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
