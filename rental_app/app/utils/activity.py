from __future__ import annotations
from flask import request, current_app
from .. import db
from ..models import ActivityLog


def log_activity(user_id: int | None, action: str, entity_type: str, details: str = "", entity_id: int | None = None) -> None:
    """Append an activity log row to the current session.

    The caller commits; the row is part of the same transaction as the change it describes.
    """
    entry = ActivityLog()
    entry.user_id = user_id
    entry.action = action
    entry.entity_type = entity_type
    entry.entity_id = entity_id if entity_id is not None else user_id
    entry.details = details
    entry.ip_address = request.remote_addr or "unknown"
    entry.user_agent = (request.headers.get("User-Agent") or "unknown")[:512]
    db.session.add(entry)
    current_app.logger.info("activity user=%s action=%s entity=%s %s", user_id, action, entity_type, details)
