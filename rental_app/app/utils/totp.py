"""TOTP helpers: secrets, provisioning URIs, QR images and code verification."""
from __future__ import annotations

import base64
import hmac
import io
import re
import time

import pyotp
import qrcode

CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """Return an otpauth:// URI for authenticator apps."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


def qr_data_uri(uri: str) -> str:
    """Render ``uri`` as a PNG QR code wrapped in a data URI."""
    buf = io.BytesIO()
    img = qrcode.make(uri, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=4, border=1)
    img.save(buf, "PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def verify_code(
    secret: str,
    code: str,
    last_used_step: int | None = None,
    valid_window: int = 1,
    for_time: float | None = None,
) -> tuple[bool, int | None]:
    """Verify a 6-digit TOTP code with replay prevention.

    Returns (is_valid, time_step_or_None). The caller should persist the step
    as ``last_used_step`` on success.
    """
    code = (code or "").strip()
    if not CODE_PATTERN.match(code):
        return False, None
    totp = pyotp.TOTP(secret)
    now = time.time() if for_time is None else for_time
    for offset in range(-valid_window, valid_window + 1):
        ts = now + offset * totp.interval
        if hmac.compare_digest(totp.at(ts), code):
            step = int(ts // totp.interval)
            if last_used_step is not None and step <= last_used_step:
                # replay of an already used (or older) time step
                return False, None
            return True, step
    return False, None
