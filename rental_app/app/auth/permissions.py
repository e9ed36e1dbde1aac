from functools import wraps
from flask import abort, current_app
from flask_babel import gettext as _
from flask_login import current_user
from ..models import ROLE_ADMIN


def role_required(role_name: str):
    """401 for anonymous callers, 403 unless the signed-in user has ``role_name``."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401, _("Authentication required"))
            if current_user.role != role_name:
                current_app.logger.warning("User %s denied access to %s", current_user.id, view.__name__)
                abort(403, _("Access denied"))
            return view(*args, **kwargs)
        return wrapped
    return decorator


admin_required = role_required(ROLE_ADMIN)
