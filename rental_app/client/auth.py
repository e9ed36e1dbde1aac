"""Session/user context and step-up login verification."""
from __future__ import annotations

import enum
import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .http import ApiClient, ApiResult, Err, Ok, OkNoBody, GENERIC_FAILURE

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


def sanitize_code(raw: str | None) -> str:
    """Keep only the digits of ``raw``, at most six of them."""
    return re.sub(r"\D", "", raw or "")[:CODE_LENGTH]


def normalize_backup_code(raw: str | None) -> str:
    return re.sub(r"\s+", "", raw or "").upper()


@dataclass(frozen=True)
class Principal:
    id: int
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "user"
    two_factor_enabled: bool = False
    two_factor_setup_required: bool = False
    password_expired: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_payload(cls, data) -> Optional["Principal"]:
        if not isinstance(data, dict) or data.get("id") is None or not data.get("username"):
            return None
        return cls(
            id=int(data["id"]),
            username=str(data["username"]),
            email=data.get("email"),
            full_name=data.get("fullName"),
            role=data.get("role") or "user",
            two_factor_enabled=bool(data.get("twoFactorEnabled")),
            two_factor_setup_required=bool(data.get("twoFactorSetupRequired")),
            password_expired=bool(data.get("passwordExpired")),
        )


@dataclass(frozen=True)
class PendingChallenge:
    user_id: int
    username: str
    password_expired: bool = False


class AuthState:
    """Owner of the session slot and of the pending step-up challenge.

    Writers take a generation ticket with :meth:`begin_attempt` before they go
    to the network and hand it back when they write; a ticket that is no
    longer current means a newer attempt (or a logout) happened meanwhile and
    the write is dropped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._principal: Optional[Principal] = None
        self._pending: Optional[PendingChallenge] = None
        self._generation = 0
        self._listeners: list[Callable[["AuthState"], None]] = []

    @property
    def principal(self) -> Optional[Principal]:
        return self._principal

    @property
    def pending_challenge(self) -> Optional[PendingChallenge]:
        return self._pending

    @property
    def is_authenticated(self) -> bool:
        return self._principal is not None

    def subscribe(self, listener: Callable[["AuthState"], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Auth state listener %r failed", listener)

    def begin_attempt(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def authenticate(self, principal: Principal, ticket: int) -> bool:
        with self._lock:
            if ticket != self._generation:
                return False
            self._principal = principal
            self._pending = None
        self._notify()
        return True

    def require_step_up(self, challenge: PendingChallenge, ticket: int) -> bool:
        with self._lock:
            if ticket != self._generation:
                return False
            self._principal = None
            self._pending = challenge
        self._notify()
        return True

    def drop_challenge(self) -> None:
        with self._lock:
            if self._pending is None:
                return
            self._pending = None
        self._notify()

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._principal = None
            self._pending = None
        self._notify()


class LoginStatus(enum.Enum):
    AUTHENTICATED = "authenticated"
    CHALLENGE = "challenge"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class LoginOutcome:
    status: LoginStatus
    principal: Optional[Principal] = None
    challenge: Optional[PendingChallenge] = None
    message: Optional[str] = None


class AuthService:
    """Login, step-up verification, logout and registration against the API.

    The session slot of ``state`` is written from two places only: a login
    answered with a principal and a successful step-up verification.
    """

    LOGIN_PATH = "/api/login"
    STEP_UP_PATH = "/api/login/2fa"
    LOGOUT_PATH = "/api/logout"
    REGISTER_PATH = "/api/register"
    SESSION_SETTINGS_PATH = "/api/settings/session"
    CHANGE_PASSWORD_PATH = "/api/user/change-password"

    def __init__(self, api: ApiClient, state: AuthState | None = None):
        self.api = api
        self.state = state or AuthState()

    def _accept_principal(self, data, ticket: int) -> LoginOutcome:
        principal = Principal.from_payload(data)
        if principal is None:
            logger.error("Login answered with an unusable principal payload")
            return LoginOutcome(LoginStatus.REJECTED, message=GENERIC_FAILURE)
        if not self.state.authenticate(principal, ticket):
            logger.info("Discarded a superseded login response for %s", principal.username)
            return LoginOutcome(LoginStatus.SUPERSEDED)
        logger.info("Signed in as %s", principal.username)
        return LoginOutcome(LoginStatus.AUTHENTICATED, principal=principal)

    def login(self, username: str, password: str) -> LoginOutcome:
        ticket = self.state.begin_attempt()
        result = self.api.post(self.LOGIN_PATH, {"username": username, "password": password})
        if isinstance(result, Err):
            return LoginOutcome(LoginStatus.REJECTED, message=result.message)
        if isinstance(result, OkNoBody):
            logger.error("Login answered without a body")
            return LoginOutcome(LoginStatus.REJECTED, message=GENERIC_FAILURE)
        data = result.data
        if isinstance(data, dict) and data.get("requiresTwoFactor"):
            # correct password, second factor still outstanding: not a failure
            try:
                challenge = PendingChallenge(
                    user_id=int(data["userId"]),
                    username=str(data.get("username") or username),
                    password_expired=bool(data.get("passwordExpired")),
                )
            except (KeyError, TypeError, ValueError):
                logger.error("Step-up response without a usable userId")
                return LoginOutcome(LoginStatus.REJECTED, message=GENERIC_FAILURE)
            if not self.state.require_step_up(challenge, ticket):
                return LoginOutcome(LoginStatus.SUPERSEDED)
            logger.info("Two-factor verification required for %s", challenge.username)
            return LoginOutcome(LoginStatus.CHALLENGE, challenge=challenge)
        return self._accept_principal(data, ticket)

    def verify_step_up(self, token: str, use_backup_code: bool = False) -> LoginOutcome:
        challenge = self.state.pending_challenge
        if challenge is None:
            return LoginOutcome(LoginStatus.REJECTED, message="No verification in progress.")
        if use_backup_code:
            code = normalize_backup_code(token)
            if not code:
                return LoginOutcome(LoginStatus.REJECTED, challenge=challenge, message="Enter a backup code.")
        else:
            code = sanitize_code(token)
            if len(code) != CODE_LENGTH:
                return LoginOutcome(LoginStatus.REJECTED, challenge=challenge, message="The code must be exactly 6 digits.")
        ticket = self.state.begin_attempt()
        result = self.api.post(
            self.STEP_UP_PATH,
            {"userId": challenge.user_id, "token": code, "isBackupCode": use_backup_code},
        )
        if isinstance(result, Ok):
            return self._accept_principal(result.data, ticket)
        # the challenge stays so the user can retry without the password
        message = result.message if isinstance(result, Err) else GENERIC_FAILURE
        return LoginOutcome(LoginStatus.REJECTED, challenge=challenge, message=message)

    def abandon_challenge(self) -> None:
        self.state.begin_attempt()
        self.state.drop_challenge()

    def logout(self) -> ApiResult:
        result = self.api.post(self.LOGOUT_PATH)
        # the local session ends whatever the server answered
        self.state.clear()
        self.api.reset_csrf()
        return result

    def change_password(self, current_password: str, new_password: str) -> ApiResult:
        """Replace the password of the signed-in user; a fresh principal replaces the old one."""
        if not self.state.is_authenticated:
            return Err("Not signed in.")
        ticket = self.state.begin_attempt()
        result = self.api.post(
            self.CHANGE_PASSWORD_PATH,
            {"currentPassword": current_password, "newPassword": new_password},
        )
        if isinstance(result, Ok):
            principal = Principal.from_payload(result.data)
            if principal is not None:
                self.state.authenticate(principal, ticket)
        return result

    def register(self, username: str, email: str, password: str, full_name: str | None = None) -> ApiResult:
        payload = {"username": username, "email": email, "password": password}
        if full_name:
            payload["fullName"] = full_name
        return self.api.post(self.REGISTER_PATH, payload)

    def fetch_idle_minutes(self) -> int:
        """Idle threshold configured by the administrators, 0 when disabled or unknown."""
        if not self.state.is_authenticated:
            return 0
        result = self.api.get(self.SESSION_SETTINGS_PATH)
        if isinstance(result, Ok) and isinstance(result.data, dict):
            try:
                return max(int(result.data.get("autoLogoutMinutes") or 0), 0)
            except (TypeError, ValueError):
                return 0
        return 0
