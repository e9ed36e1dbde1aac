from __future__ import annotations
import base64
import hashlib
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from flask import current_app


def _configured_keys() -> list[bytes]:
    # TWO_FACTOR_ENCRYPTION_KEY may list several comma separated keys: the
    # first one encrypts, all of them decrypt (key rotation)
    raw = current_app.config.get("TWO_FACTOR_ENCRYPTION_KEY") or ""
    keys = [k.strip().encode() for k in raw.split(",") if k.strip()]
    if keys:
        return keys
    # fallback: derive from SECRET_KEY (not ideal for production)
    secret = str(current_app.config.get("SECRET_KEY", "change-me-in-production")).encode()
    return [base64.urlsafe_b64encode(hashlib.sha256(secret).digest())]


def _cipher() -> MultiFernet:
    return MultiFernet([Fernet(k) for k in _configured_keys()])


def encrypt_value(value: str) -> str:
    return _cipher().encrypt(value.encode()).decode()


def decrypt_value(token: str | None) -> Optional[str]:
    if not token:
        return None
    try:
        return _cipher().decrypt(token.encode()).decode()
    except InvalidToken:
        current_app.logger.error("Could not decrypt a stored two-factor secret (unknown key?)")
        return None


def rotate_value(token: str) -> str:
    """Re-encrypt ``token`` with the current primary key."""
    return _cipher().rotate(token.encode()).decode()
