from __future__ import annotations
import json
import re
import secrets
from datetime import datetime, timedelta
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin
from flask import current_app
from . import db
from .utils.crypto import encrypt_value, decrypt_value

ROLE_ADMIN = "admin"
ROLE_USER = "user"


class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)
    # linkage for accounts created through a social login provider
    external_provider = db.Column(db.String(64), nullable=True)
    external_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    two_factor = db.relationship(
        "TwoFactorCredential", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def two_factor_active(self) -> bool:
        return self.two_factor is not None and self.two_factor.verified

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "fullName": self.full_name,
            "role": self.role,
            "twoFactorEnabled": self.two_factor_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[^0-9A-Za-z]", "", code or "").upper()


class TwoFactorCredential(db.Model):
    """TOTP secret and backup codes of a single user.

    A row with ``verified = False`` is a pending enrollment: it never makes a
    second factor mandatory at login. Only the verify step flips it to active.
    """

    __tablename__ = "two_factor_credentials"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)
    # Fernet token of the base32 secret
    secret_encrypted = db.Column(db.Text, nullable=False)
    verified = db.Column(db.Boolean, default=False, nullable=False)
    # JSON-encoded list of hashed backup codes (one-time use)
    backup_codes = db.Column(db.Text, nullable=True)
    # last accepted TOTP time step, codes from this step or older are refused
    last_used_step = db.Column(db.BigInteger, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    verified_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User", back_populates="two_factor")

    @property
    def secret(self) -> str | None:
        return decrypt_value(self.secret_encrypted)

    def reset_pending(self, secret: str) -> None:
        """Replace the secret and drop back to an unverified enrollment."""
        self.secret_encrypted = encrypt_value(secret)
        self.verified = False
        self.verified_at = None
        self.backup_codes = None
        self.last_used_step = None
        self.created_at = datetime.utcnow()

    def pending_expired(self, ttl_minutes: int, now: datetime | None = None) -> bool:
        if self.verified or ttl_minutes <= 0:
            return False
        now = now or datetime.utcnow()
        return now - self.created_at > timedelta(minutes=ttl_minutes)

    def generate_backup_codes(self, count: int = 8) -> list[str]:
        """Generate one-time backup codes, store their hashed forms and return the plaintext codes.

        The plaintext codes are only returned once to display to the user. Any
        previously issued set is discarded.
        """
        codes = []
        for _ in range(count):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        hashed = [generate_password_hash(normalize_backup_code(c)) for c in codes]
        self.backup_codes = json.dumps(hashed)
        return codes

    def _hashed_codes(self) -> list[str]:
        if not self.backup_codes:
            return []
        try:
            return list(json.loads(self.backup_codes))
        except ValueError:
            current_app.logger.error("Corrupt backup code list for user %s", self.user_id)
            return []

    @property
    def backup_codes_remaining(self) -> int:
        return len(self._hashed_codes())

    def verify_and_consume_backup_code(self, code: str) -> bool:
        """Verify a provided backup code and remove it from the valid set if it matches."""
        candidate = normalize_backup_code(code)
        if not candidate:
            return False
        hashed_list = self._hashed_codes()
        for i, h in enumerate(hashed_list):
            if check_password_hash(h, candidate):
                hashed_list.pop(i)
                self.backup_codes = json.dumps(hashed_list) if hashed_list else None
                return True
        return False


class SecuritySettings(db.Model):
    __tablename__ = "security_settings"
    id = db.Column(db.Integer, primary_key=True)
    # 0 disables the client idle watcher
    auto_logout_minutes = db.Column(db.Integer, nullable=False, default=0)
    require_two_factor = db.Column(db.Boolean, nullable=False, default=False)
    # 0 disables the lockout
    failed_login_attempts = db.Column(db.Integer, nullable=False, default=5)
    lockout_duration_minutes = db.Column(db.Integer, nullable=False, default=15)
    # 0 disables expiry / the reuse check
    password_expiry_days = db.Column(db.Integer, nullable=False, default=90)
    password_history_count = db.Column(db.Integer, nullable=False, default=5)
    min_password_length = db.Column(db.Integer, nullable=False, default=8)
    require_uppercase = db.Column(db.Boolean, nullable=False, default=True)
    require_lowercase = db.Column(db.Boolean, nullable=False, default=True)
    require_number = db.Column(db.Boolean, nullable=False, default=True)
    require_special_char = db.Column(db.Boolean, nullable=False, default=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @classmethod
    def current(cls) -> "SecuritySettings":
        settings = cls.query.order_by(cls.id).first()
        if settings is None:
            settings = cls()
            settings.auto_logout_minutes = current_app.config.get("DEFAULT_AUTO_LOGOUT_MINUTES", 0)
            settings.require_two_factor = False
            settings.failed_login_attempts = current_app.config.get("DEFAULT_FAILED_LOGIN_ATTEMPTS", 5)
            settings.lockout_duration_minutes = current_app.config.get("DEFAULT_LOCKOUT_DURATION_MINUTES", 15)
            settings.password_expiry_days = current_app.config.get("DEFAULT_PASSWORD_EXPIRY_DAYS", 90)
            settings.password_history_count = current_app.config.get("DEFAULT_PASSWORD_HISTORY_COUNT", 5)
            settings.min_password_length = current_app.config.get("DEFAULT_MIN_PASSWORD_LENGTH", 8)
            settings.require_uppercase = True
            settings.require_lowercase = True
            settings.require_number = True
            settings.require_special_char = True
            db.session.add(settings)
            db.session.commit()
        return settings

    def to_dict(self) -> dict:
        return {
            "autoLogoutMinutes": self.auto_logout_minutes,
            "requireTwoFactor": self.require_two_factor,
            "failedLoginAttempts": self.failed_login_attempts,
            "lockoutDurationMinutes": self.lockout_duration_minutes,
            "passwordExpiryDays": self.password_expiry_days,
            "passwordHistoryCount": self.password_history_count,
            "minPasswordLength": self.min_password_length,
            "requireUppercase": self.require_uppercase,
            "requireLowercase": self.require_lowercase,
            "requireNumber": self.require_number,
            "requireSpecialChar": self.require_special_char,
        }


class PasswordHistory(db.Model):
    __tablename__ = "password_history"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class AccountLockout(db.Model):
    __tablename__ = "account_lockouts"
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), primary_key=True)
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_failed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User")


class ActivityLog(db.Model):
    __tablename__ = "activity_logs"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    action = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
