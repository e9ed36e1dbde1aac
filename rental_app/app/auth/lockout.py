from __future__ import annotations
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from flask import current_app
from .. import db
from ..models import AccountLockout, SecuritySettings, User


@dataclass
class LockoutStatus:
    locked_out: bool
    remaining_minutes: int = 0
    remaining_attempts: int | None = None


def _record_for(user: User) -> AccountLockout:
    record = db.session.get(AccountLockout, user.id)
    if record is None:
        record = AccountLockout()
        record.user_id = user.id
        record.failed_attempts = 0
        db.session.add(record)
    return record


def check_lockout(user: User, now: datetime | None = None) -> LockoutStatus:
    """Report whether ``user`` is currently locked out. An elapsed lock is cleared."""
    now = now or datetime.utcnow()
    record = db.session.get(AccountLockout, user.id)
    if record is None or record.locked_until is None:
        return LockoutStatus(False)
    if now < record.locked_until:
        remaining = math.ceil((record.locked_until - now).total_seconds() / 60)
        return LockoutStatus(True, remaining_minutes=max(remaining, 1))
    record.locked_until = None
    record.failed_attempts = 0
    db.session.commit()
    return LockoutStatus(False)


def register_failed_attempt(user: User, now: datetime | None = None) -> LockoutStatus:
    settings = SecuritySettings.current()
    if not settings.failed_login_attempts:
        return LockoutStatus(False)
    now = now or datetime.utcnow()
    record = _record_for(user)
    record.failed_attempts = (record.failed_attempts or 0) + 1
    record.last_failed_at = now
    if record.failed_attempts >= settings.failed_login_attempts:
        record.locked_until = now + timedelta(minutes=settings.lockout_duration_minutes)
        db.session.commit()
        current_app.logger.warning("Account %s locked for %s minutes", user.username, settings.lockout_duration_minutes)
        return LockoutStatus(True, remaining_minutes=settings.lockout_duration_minutes)
    db.session.commit()
    return LockoutStatus(False, remaining_attempts=settings.failed_login_attempts - record.failed_attempts)


def reset_failed_attempts(user: User) -> None:
    record = db.session.get(AccountLockout, user.id)
    if record is not None and (record.failed_attempts or record.locked_until):
        record.failed_attempts = 0
        record.locked_until = None
        db.session.commit()
