from __future__ import annotations
from datetime import datetime, timedelta

from flask import current_app

from . import db
from .models import AccountLockout, TwoFactorCredential


# Job decorator for scheduler auto-discovery
def job(**meta):
    """Decorator to mark a function as a scheduled job.

    Example:
        @job(schedule='interval', minutes=15, id='purge_stale_enrollments')
        def purge_stale_enrollments():
            ...
    Supported meta keys: schedule (e.g. 'interval'), id, minutes, seconds, hours
    """

    def _decorator(fn):
        setattr(fn, "job_meta", meta)
        return fn

    return _decorator


@job(schedule="interval", minutes=15, id="purge_stale_enrollments")
def purge_stale_enrollments(now: datetime | None = None) -> int:
    """Delete pending two-factor secrets that were never confirmed within the TTL."""
    ttl = current_app.config.get("TWO_FACTOR_PENDING_TTL_MINUTES", 15)
    if ttl <= 0:
        return 0
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=ttl)
    q = TwoFactorCredential.query.filter(
        TwoFactorCredential.verified == False,  # noqa: E712
        TwoFactorCredential.created_at < cutoff,
    )
    count = q.count()
    if count:
        current_app.logger.info("purge_stale_enrollments: deleting %s pending secrets", count)
        q.delete(synchronize_session=False)
        db.session.commit()
    else:
        current_app.logger.info("purge_stale_enrollments: nothing to delete")
    return count


@job(schedule="interval", minutes=5, id="clear_expired_lockouts")
def clear_expired_lockouts(now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    rows = AccountLockout.query.filter(AccountLockout.locked_until != None, AccountLockout.locked_until <= now).all()  # noqa: E711
    for row in rows:
        row.locked_until = None
        row.failed_attempts = 0
    if rows:
        db.session.commit()
        current_app.logger.info("clear_expired_lockouts: released %s accounts", len(rows))
    return len(rows)


def run_due_jobs() -> None:
    """Run every maintenance job once (used by the CronJob style runner)."""
    purge_stale_enrollments()
    clear_expired_lockouts()
