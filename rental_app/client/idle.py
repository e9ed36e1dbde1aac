"""Auto-logout after a period without user activity."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset({"mousedown", "mousemove", "keydown", "scroll", "touchstart"})
CHECK_INTERVAL_SECONDS = 30
JOB_ID = "auto-logout"


class AutoLogoutWatcher:
    """Calls ``on_timeout`` once the user has been idle for too long.

    The periodic check only exists while the watcher is armed, i.e. while a
    user is authenticated and the configured threshold is above zero.
    """

    def __init__(
        self,
        on_timeout: Callable[[], None],
        scheduler: Optional[BackgroundScheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        interval: int = CHECK_INTERVAL_SECONDS,
    ):
        self.on_timeout = on_timeout
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)
        self.clock = clock
        self.interval = interval
        self.minutes = 0
        self.last_activity = clock()
        self._lock = threading.Lock()

    @property
    def armed(self) -> bool:
        return self.scheduler.get_job(JOB_ID) is not None

    def sync(self, authenticated: bool, minutes: int) -> None:
        """Arm or disarm according to the session and the configured minutes."""
        if authenticated and minutes > 0:
            self._arm(minutes)
        else:
            self.disarm()

    def _arm(self, minutes: int) -> None:
        with self._lock:
            self.minutes = minutes
            self.last_activity = self.clock()
        if not self.scheduler.running:
            self.scheduler.start()
        self.scheduler.add_job(
            self.check,
            "interval",
            seconds=self.interval,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Auto-logout armed after %s idle minutes", minutes)

    def disarm(self) -> None:
        if self.scheduler.get_job(JOB_ID) is not None:
            self.scheduler.remove_job(JOB_ID)
            logger.info("Auto-logout disarmed")
        self.minutes = 0

    def record_activity(self, event_type: str) -> bool:
        if event_type not in ACTIVITY_EVENTS:
            return False
        with self._lock:
            self.last_activity = self.clock()
        return True

    def check(self) -> bool:
        """Run one idle check; True when the logout was triggered."""
        with self._lock:
            minutes = self.minutes
            idle_for = self.clock() - self.last_activity
        if minutes <= 0 or idle_for < minutes * 60:
            return False
        logger.info("Idle for %.0f seconds, logging out", idle_for)
        self.disarm()
        self.on_timeout()
        return True

    def shutdown(self) -> None:
        self.disarm()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


def watch_session(service, watcher: AutoLogoutWatcher | None = None) -> AutoLogoutWatcher:
    """Keep a watcher in step with the session held by an ``AuthService``.

    The threshold is re-read from the server whenever the session changes;
    a timeout goes through the regular ``service.logout()``.
    """
    if watcher is None:
        watcher = AutoLogoutWatcher(on_timeout=service.logout)

    def on_change(state):
        watcher.sync(state.is_authenticated, service.fetch_idle_minutes())

    service.state.subscribe(on_change)
    on_change(service.state)
    return watcher
