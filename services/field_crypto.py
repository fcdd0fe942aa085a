"""Fernet helpers for secrets that must be readable again (TOTP seeds, pending binding codes)."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.auth.settings import get_auth_settings
from core.logging import get_logger

logger = get_logger(__name__)


class FieldCryptoError(RuntimeError):
    """Raised when encryption is not configured or a ciphertext cannot be opened."""


@lru_cache(maxsize=4)
def _cipher(key: str) -> Fernet:
    try:
        return Fernet(key.encode("utf-8"))
    except (ValueError, TypeError) as exc:
        raise FieldCryptoError("AUTH_ENCRYPTION_KEY is not a valid Fernet key.") from exc


def _resolve_cipher(key: Optional[str]) -> Fernet:
    effective = key or get_auth_settings().encryption_key
    if not effective:
        raise FieldCryptoError("AUTH_ENCRYPTION_KEY is not configured.")
    return _cipher(effective)


def encrypt_text(value: str, *, key: Optional[str] = None) -> str:
    return _resolve_cipher(key).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_text(token: str, *, key: Optional[str] = None) -> str:
    try:
        return _resolve_cipher(key).decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        logger.warning("Unable to decrypt field with configured key.")
        raise FieldCryptoError("Encrypted field could not be decrypted.") from exc


__all__ = ["FieldCryptoError", "decrypt_text", "encrypt_text"]
