from __future__ import annotations

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings


class DecryptionError(ValueError):
    """Stored secret could not be decrypted with the configured key."""


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


@lru_cache
def _get_fernet(secret: str) -> Fernet:
    return Fernet(_derive_key(secret))


def encrypt_secret(plain: str, *, key: str | None = None) -> str:
    token = _get_fernet(key or settings.encryption_key).encrypt(plain.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: str | bytes, *, key: str | None = None) -> str:
    if not token:
        raise DecryptionError("Encrypted secret is empty")
    raw_token = token.encode("utf-8") if isinstance(token, str) else token
    try:
        decrypted = _get_fernet(key or settings.encryption_key).decrypt(raw_token)
    except InvalidToken as exc:
        raise DecryptionError("Invalid encrypted payload: key mismatch or corrupted data") from exc
    return decrypted.decode("utf-8")
