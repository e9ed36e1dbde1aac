from __future__ import annotations
from flask import Blueprint, jsonify, current_app
from flask_babel import gettext as _
from flask_login import login_required, current_user
from .. import db
from ..models import User, TwoFactorCredential, SecuritySettings
from ..forms import SecuritySettingsForm
from ..utils.activity import log_activity
from ..auth.permissions import admin_required

admin_bp = Blueprint("admin", __name__, url_prefix="/api")


@admin_bp.route("/settings/session", methods=["GET"])
@login_required
def session_settings():
    # the only setting the client needs outside the back-office: the idle threshold
    settings = SecuritySettings.current()
    return jsonify({"autoLogoutMinutes": settings.auto_logout_minutes})


@admin_bp.route("/admin/settings/security", methods=["GET"])
@admin_required
def get_security_settings():
    return jsonify(SecuritySettings.current().to_dict())


@admin_bp.route("/admin/settings/security", methods=["PUT"])
@admin_required
def update_security_settings():
    settings = SecuritySettings.current()
    form = SecuritySettingsForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    changed = []
    for field, attr in (
        (form.auto_logout_minutes, "auto_logout_minutes"),
        (form.require_two_factor, "require_two_factor"),
        (form.failed_login_attempts, "failed_login_attempts"),
        (form.lockout_duration_minutes, "lockout_duration_minutes"),
        (form.password_expiry_days, "password_expiry_days"),
        (form.password_history_count, "password_history_count"),
        (form.min_password_length, "min_password_length"),
        (form.require_uppercase, "require_uppercase"),
        (form.require_lowercase, "require_lowercase"),
        (form.require_number, "require_number"),
        (form.require_special_char, "require_special_char"),
    ):
        if field.raw_data:
            setattr(settings, attr, field.data)
            changed.append(field.name)
    if changed:
        log_activity(current_user.id, "update", "security_settings", "Updated " + ", ".join(changed), entity_id=settings.id)
        db.session.commit()
    return jsonify(settings.to_dict())


@admin_bp.route("/admin/two-factor/status", methods=["GET"])
@admin_required
def two_factor_stats():
    total_users = User.query.count()
    enabled_count = TwoFactorCredential.query.filter_by(verified=True).count()
    settings = SecuritySettings.current()
    return jsonify({
        "requireTwoFactor": settings.require_two_factor,
        "totalUsers": total_users,
        "enabledCount": enabled_count,
        "percentageEnabled": round(enabled_count * 100 / total_users) if total_users else 0,
    })


@admin_bp.route("/admin/two-factor/reset/<int:user_id>", methods=["POST"])
@admin_required
def reset_user_two_factor(user_id: int):
    user = db.session.get(User, user_id)
    if user is None:
        return jsonify({"message": _("User not found")}), 404
    if user.two_factor is not None:
        db.session.delete(user.two_factor)
    log_activity(current_user.id, "reset", "two_factor", f"Two-factor reset for {user.username}", entity_id=user.id)
    db.session.commit()
    current_app.logger.info("[2FA Admin] reset for user %s by admin %s", user.id, current_user.id)
    return jsonify({"message": _("Two-factor authentication was reset for %(username)s", username=user.username)})


@admin_bp.route("/admin/two-factor/reset-all", methods=["POST"])
@admin_required
def reset_all_two_factor():
    count = TwoFactorCredential.query.delete(synchronize_session=False)
    log_activity(current_user.id, "reset", "two_factor", f"Global two-factor reset ({count} credentials)", entity_id=0)
    db.session.commit()
    current_app.logger.info("[2FA Admin] global reset by admin %s, %s credentials removed", current_user.id, count)
    return jsonify({"message": _("Two-factor authentication was reset for all users"), "count": count})
