"""Password policy: complexity, history and expiry, all driven by SecuritySettings."""
from __future__ import annotations
import re
from datetime import datetime, timedelta
from flask import current_app
from werkzeug.security import check_password_hash
from .. import db
from ..models import PasswordHistory, SecuritySettings, User


def complexity_errors(password: str, settings: SecuritySettings | None = None) -> list[str]:
    settings = settings or SecuritySettings.current()
    password = password or ""
    errors = []
    if settings.min_password_length and len(password) < settings.min_password_length:
        errors.append(f"at least {settings.min_password_length} characters")
    if settings.require_uppercase and not re.search(r"[A-Z]", password):
        errors.append("an uppercase letter")
    if settings.require_lowercase and not re.search(r"[a-z]", password):
        errors.append("a lowercase letter")
    if settings.require_number and not re.search(r"[0-9]", password):
        errors.append("a digit")
    if settings.require_special_char and not re.search(r"[^A-Za-z0-9]", password):
        errors.append("a special character")
    return errors


def _history(user: User) -> list[PasswordHistory]:
    return (
        PasswordHistory.query.filter_by(user_id=user.id)
        .order_by(PasswordHistory.created_at.desc(), PasswordHistory.id.desc())
        .all()
    )


def is_password_expired(user: User, now: datetime | None = None) -> bool:
    """True once the latest recorded password is older than ``password_expiry_days``.

    Accounts without any history entry never expire.
    """
    settings = SecuritySettings.current()
    if not settings.password_expiry_days:
        return False
    history = _history(user)
    if not history:
        return False
    now = now or datetime.utcnow()
    return now > history[0].created_at + timedelta(days=settings.password_expiry_days)


def is_password_previously_used(user: User, candidate: str) -> bool:
    settings = SecuritySettings.current()
    if not settings.password_history_count:
        return False
    recent = _history(user)[: settings.password_history_count]
    return any(check_password_hash(entry.password_hash, candidate) for entry in recent)


def apply_new_password(user: User, password: str) -> None:
    """Set the password and record it in the history. Left uncommitted.

    The history is trimmed to ``password_history_count`` entries but always
    keeps the newest one, which dates the password for expiry.
    """
    settings = SecuritySettings.current()
    user.set_password(password)
    if user.id is None:
        db.session.add(user)
        db.session.flush()
    entry = PasswordHistory()
    entry.user_id = user.id
    entry.password_hash = user.password_hash
    entry.created_at = datetime.utcnow()
    db.session.add(entry)
    db.session.flush()

    keep = max(settings.password_history_count or 0, 1)
    stale = _history(user)[keep:]
    for old in stale:
        db.session.delete(old)
    if stale:
        current_app.logger.debug("Pruned %s password history entries for %s", len(stale), user.username)
