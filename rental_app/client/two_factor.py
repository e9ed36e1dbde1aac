"""Two-factor enrollment wizard: generate -> verify -> show backup codes."""
from __future__ import annotations

import base64
import binascii
import enum
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import qrcode

from .auth import AuthState, CODE_LENGTH, sanitize_code
from .http import ApiClient, Err, Ok, OkNoBody, GENERIC_FAILURE

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
SETUP_PATH = "/api/auth/2fa/setup"
VERIFY_PATH = "/api/auth/2fa/verify"
PNG_DATA_URI_PREFIX = "data:image/png;base64,"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

INVALID_CODE_MESSAGE = "Invalid code. Check that you entered the code shown by your authenticator app."
INCOMPLETE_SETUP_MESSAGE = "Incomplete response from the server. Please try again."
INVALID_FORMAT_MESSAGE = "The server answered in an unexpected format. Please try again later."
MISSING_BACKUP_CODES_MESSAGE = "The backup codes are missing from the response. Contact an administrator."


class SetupStep(enum.Enum):
    LOGIN_REQUIRED = "login_required"
    GENERATING = "generating"
    AWAITING_CODE = "awaiting_code"
    ENROLLED = "enrolled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SetupFailure(enum.Enum):
    TRANSPORT = "transport"
    HTTP = "http"
    INCOMPLETE = "incomplete"
    INVALID_FORMAT = "invalid_format"


@dataclass(frozen=True)
class RetryPolicy:
    """Automatic retries of an incomplete setup response."""

    attempts: int = 2
    delay: float = 1.0


def safe_qr_image(payload) -> Optional[str]:
    """Return ``payload`` only if it is a base64 PNG data URI, else None.

    The server controls this string; anything that is not a plain PNG image
    (markup, scripts, other schemes) is discarded rather than displayed.
    """
    if not isinstance(payload, str) or not payload.startswith(PNG_DATA_URI_PREFIX):
        return None
    try:
        raw = base64.b64decode(payload[len(PNG_DATA_URI_PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        return None
    return payload if raw.startswith(PNG_SIGNATURE) else None


def render_qr_ascii(uri: str, invert: bool = False) -> str:
    """Render an otpauth URI as a terminal QR code."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(uri)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=invert)
    return out.getvalue()


class TwoFactorSetupWizard:
    """Client side of the enrollment protocol.

    ``start`` asks the server for a fresh secret, ``enter_code`` /
    ``submit_code`` confirm it, and ``acknowledge`` closes the flow once the
    user has saved the backup codes. Every network call carries a ticket; a
    response whose ticket was superseded by ``start`` or ``cancel`` is ignored.
    """

    def __init__(
        self,
        api: ApiClient,
        state: AuthState,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api = api
        self.state = state
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self._ticket = 0
        self.step = SetupStep.GENERATING
        self.redirect_to: Optional[str] = None
        self._reset()

    def _reset(self) -> None:
        self.secret: Optional[str] = None
        self.qr_image: Optional[str] = None
        self.provisioning_uri: Optional[str] = None
        self.code = ""
        self.backup_codes: tuple[str, ...] = ()
        self.error: Optional[str] = None
        self.failure: Optional[SetupFailure] = None
        self.retries_used = 0
        self.busy = False

    def _next_ticket(self) -> int:
        self._ticket += 1
        return self._ticket

    @property
    def completed(self) -> bool:
        return self.step is SetupStep.COMPLETED

    @property
    def can_submit(self) -> bool:
        return self.step is SetupStep.AWAITING_CODE and not self.busy and len(self.code) == CODE_LENGTH

    def qr_ascii(self) -> Optional[str]:
        if not self.provisioning_uri:
            return None
        return render_qr_ascii(self.provisioning_uri)

    def start(self) -> SetupStep:
        """Begin (or restart) enrollment; any previous secret is discarded."""
        ticket = self._next_ticket()
        self._reset()
        if not self.state.is_authenticated:
            self.step = SetupStep.LOGIN_REQUIRED
            self.redirect_to = LOGIN_PATH
            return self.step
        self.redirect_to = None
        self.step = SetupStep.GENERATING
        while True:
            self.busy = True
            try:
                result = self.api.post(SETUP_PATH)
            finally:
                if ticket == self._ticket:
                    self.busy = False
            if ticket != self._ticket:
                logger.info("Ignored a superseded 2FA setup response")
                return self.step
            if isinstance(result, Err):
                self._fail(SetupFailure.TRANSPORT if result.transport else SetupFailure.HTTP, result.message)
                return self.step
            if isinstance(result, OkNoBody):
                # a non-JSON answer is terminal, no automatic retry
                self._fail(SetupFailure.INVALID_FORMAT, INVALID_FORMAT_MESSAGE)
                return self.step
            data = result.data
            if isinstance(data, dict) and data.get("qrCode") and data.get("secret"):
                self.secret = str(data["secret"])
                self.provisioning_uri = data.get("uri") if isinstance(data.get("uri"), str) else None
                self.qr_image = safe_qr_image(data["qrCode"])
                if self.qr_image is None:
                    logger.warning("Discarded a QR payload that is not a PNG data URI")
                self.step = SetupStep.AWAITING_CODE
                return self.step
            logger.error("2FA setup response is missing qrCode or secret")
            if self.retries_used >= self.retry.attempts:
                self._fail(SetupFailure.INCOMPLETE, INCOMPLETE_SETUP_MESSAGE)
                return self.step
            self.retries_used += 1
            self.sleep(self.retry.delay)
            if ticket != self._ticket:
                return self.step

    def _fail(self, failure: SetupFailure, message: str) -> None:
        self.failure = failure
        self.error = message
        self.step = SetupStep.FAILED
        logger.info("2FA setup failed (%s): %s", failure.value, message)

    def enter_code(self, raw: str) -> str:
        self.code = sanitize_code(raw)
        return self.code

    def submit_code(self) -> bool:
        """Send the typed code; True when the enrollment got confirmed."""
        if not self.can_submit:
            return False
        ticket = self._next_ticket()
        self.error = None
        self.busy = True
        try:
            result = self.api.post(VERIFY_PATH, {"token": self.code})
        finally:
            if ticket == self._ticket:
                self.busy = False
        if ticket != self._ticket:
            logger.info("Ignored a superseded 2FA verify response")
            return False
        if isinstance(result, Err):
            if result.transport:
                self.error = GENERIC_FAILURE
            else:
                self.error = result.detail or INVALID_CODE_MESSAGE
            return False
        data = result.data if isinstance(result, Ok) else None
        codes = data.get("backupCodes") if isinstance(data, dict) else None
        if not isinstance(codes, list) or not all(isinstance(c, str) for c in codes):
            self.error = MISSING_BACKUP_CODES_MESSAGE
            return False
        # a new enrollment replaces the previous list, never extends it
        self.backup_codes = tuple(codes)
        self.secret = None
        self.step = SetupStep.ENROLLED
        logger.info("Two-factor enrollment confirmed, %s backup codes issued", len(codes))
        return True

    def copy_backup_code(self, index: int, clipboard: Callable[[str], None] | None = None) -> str:
        if self.step is not SetupStep.ENROLLED:
            raise RuntimeError("Backup codes are only available right after enrollment")
        code = self.backup_codes[index]
        if clipboard is not None:
            clipboard(code)
        return code

    def acknowledge(self) -> bool:
        """The user confirms the backup codes are saved; the only way to complete."""
        if self.step is not SetupStep.ENROLLED:
            return False
        self.backup_codes = ()
        self.step = SetupStep.COMPLETED
        return True

    def retry_setup(self) -> SetupStep:
        if self.step is not SetupStep.FAILED:
            return self.step
        return self.start()

    def cancel(self) -> None:
        self._next_ticket()
        self._reset()
        self.step = SetupStep.CANCELLED
