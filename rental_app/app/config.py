import os
from typing import Final

basedir = os.path.abspath(os.path.dirname(__file__))

class Config:
    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-production")
    try:
        SQLALCHEMY_DATABASE_URI: Final[str] = os.environ["DATABASE_URL"]
    except KeyError:
        raise RuntimeError("DATABASE_URL environment variable is required (no sqlite fallback)")
    SQLALCHEMY_TRACK_MODIFICATIONS: Final[bool] = False
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    SESSION_COOKIE_HTTPONLY: Final[bool] = True
    SESSION_COOKIE_SECURE: Final[bool] = os.getenv("FLASK_ENV") == "production"
    SESSION_COOKIE_SAMESITE: Final[str] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    REMEMBER_COOKIE_HTTPONLY: Final[bool] = True
    REMEMBER_COOKIE_SECURE: Final[bool] = os.getenv("FLASK_ENV") == "production"
    # Flask-WTF CSRF settings. API clients send the token in the X-CSRFToken header.
    WTF_CSRF_TIME_LIMIT: Final[int] = int(os.getenv("WTF_CSRF_TIME_LIMIT", "86400"))
    WTF_CSRF_SECRET_KEY: Final[str] = os.getenv("WTF_CSRF_SECRET_KEY", SECRET_KEY)
    # Locales offered by the back-office
    BABEL_DEFAULT_LOCALE: Final[str] = os.getenv("BABEL_DEFAULT_LOCALE", "it")
    LANGUAGES: Final[tuple] = ("it", "en")
    # Two-factor authentication
    TWO_FACTOR_ISSUER: Final[str] = os.getenv("TWO_FACTOR_ISSUER", "o2o Mobility")
    # Fernet key(s) for TOTP secrets at rest, comma separated, newest first. Falls back to a key derived from SECRET_KEY.
    TWO_FACTOR_ENCRYPTION_KEY: Final[str] = os.getenv("TWO_FACTOR_ENCRYPTION_KEY", "")
    # Accepted clock drift, in 30 second steps, on either side of "now"
    TOTP_VALID_WINDOW: Final[int] = int(os.getenv("TOTP_VALID_WINDOW", "1"))
    # A pending (unverified) secret must be confirmed within this many minutes
    TWO_FACTOR_PENDING_TTL_MINUTES: Final[int] = int(os.getenv("TWO_FACTOR_PENDING_TTL_MINUTES", "15"))
    BACKUP_CODE_COUNT: Final[int] = int(os.getenv("BACKUP_CODE_COUNT", "8"))
    # Defaults used when the security_settings row is created
    DEFAULT_AUTO_LOGOUT_MINUTES: Final[int] = int(os.getenv("DEFAULT_AUTO_LOGOUT_MINUTES", "0"))
    DEFAULT_FAILED_LOGIN_ATTEMPTS: Final[int] = int(os.getenv("DEFAULT_FAILED_LOGIN_ATTEMPTS", "5"))
    DEFAULT_LOCKOUT_DURATION_MINUTES: Final[int] = int(os.getenv("DEFAULT_LOCKOUT_DURATION_MINUTES", "15"))
    DEFAULT_PASSWORD_EXPIRY_DAYS: Final[int] = int(os.getenv("DEFAULT_PASSWORD_EXPIRY_DAYS", "90"))
    DEFAULT_PASSWORD_HISTORY_COUNT: Final[int] = int(os.getenv("DEFAULT_PASSWORD_HISTORY_COUNT", "5"))
    DEFAULT_MIN_PASSWORD_LENGTH: Final[int] = int(os.getenv("DEFAULT_MIN_PASSWORD_LENGTH", "8"))
