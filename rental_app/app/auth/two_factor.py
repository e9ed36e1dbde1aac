"""Two-factor enrollment endpoints for the signed-in user.

Enrollment is a two request protocol: ``setup`` stores a pending secret and
hands it out once, ``verify`` turns it active after one correct code and
issues the backup codes. Any later ``setup`` call while the credential is
still pending overwrites the secret, so a stale QR code can never verify.
"""
from __future__ import annotations
from flask import Blueprint, jsonify, current_app
from flask_babel import gettext as _
from flask_login import login_required, current_user
from .. import db
from ..models import TwoFactorCredential
from ..forms import TokenForm, DisableTwoFactorForm
from ..utils.activity import log_activity
from ..utils.crypto import encrypt_value
from ..utils.totp import generate_secret, provisioning_uri, qr_data_uri, verify_code
from .routes import verify_second_factor

two_factor_bp = Blueprint("two_factor", __name__, url_prefix="/api/auth/2fa")


@two_factor_bp.route("/setup", methods=["POST"])
@login_required
def setup():
    credential = current_user.two_factor
    if credential is not None and credential.verified:
        return jsonify({"message": _("Two-factor authentication is already active for this account")}), 409

    secret = generate_secret()
    if credential is None:
        credential = TwoFactorCredential()
        credential.user_id = current_user.id
        credential.secret_encrypted = encrypt_value(secret)
        credential.verified = False
        db.session.add(credential)
        current_app.logger.info("[2FA] Created pending secret for user %s", current_user.id)
    else:
        credential.reset_pending(secret)
        current_app.logger.info("[2FA] Replaced pending secret for user %s", current_user.id)

    account_name = current_user.email or current_user.username
    uri = provisioning_uri(secret, account_name, current_app.config.get("TWO_FACTOR_ISSUER", "o2o Mobility"))
    qr_code = qr_data_uri(uri)
    log_activity(current_user.id, "setup", "two_factor", "Two-factor setup started")
    db.session.commit()
    return jsonify({"qrCode": qr_code, "secret": secret, "uri": uri})


@two_factor_bp.route("/verify", methods=["POST"])
@login_required
def verify():
    form = TokenForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    credential = current_user.two_factor
    if credential is None or credential.verified:
        return jsonify({"message": _("No pending two-factor setup. Start the setup again.")}), 400
    if credential.pending_expired(current_app.config.get("TWO_FACTOR_PENDING_TTL_MINUTES", 15)):
        return jsonify({"message": _("The setup code has expired. Start the setup again.")}), 400
    secret = credential.secret
    if not secret:
        return jsonify({"message": _("No pending two-factor setup. Start the setup again.")}), 400

    ok, step = verify_code(secret, form.token.data, valid_window=current_app.config.get("TOTP_VALID_WINDOW", 1))
    if not ok:
        current_app.logger.info("[2FA] Invalid setup code for user %s", current_user.id)
        return jsonify({"message": _("Invalid code. Please try again.")}), 400

    credential.verified = True
    credential.verified_at = db.func.now()
    credential.last_used_step = step
    codes = credential.generate_backup_codes(current_app.config.get("BACKUP_CODE_COUNT", 8))
    log_activity(current_user.id, "verify", "two_factor", "Two-factor setup completed")
    db.session.commit()
    return jsonify({"backupCodes": codes})


@two_factor_bp.route("/status", methods=["GET"])
@login_required
def status():
    credential = current_user.two_factor
    return jsonify({
        "enabled": bool(credential and credential.verified),
        "pending": bool(credential and not credential.verified),
        "backupCodesRemaining": credential.backup_codes_remaining if credential and credential.verified else 0,
    })


@two_factor_bp.route("/backup-codes", methods=["POST"])
@login_required
def regenerate_backup_codes():
    credential = current_user.two_factor
    if credential is None or not credential.verified:
        return jsonify({"message": _("Two-factor authentication is not fully configured")}), 400
    codes = credential.generate_backup_codes(current_app.config.get("BACKUP_CODE_COUNT", 8))
    log_activity(current_user.id, "update", "two_factor", "Backup codes regenerated")
    db.session.commit()
    return jsonify({"backupCodes": codes})


@two_factor_bp.route("/disable", methods=["POST"])
@login_required
def disable():
    form = DisableTwoFactorForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    if not current_user.check_password(form.password.data):
        return jsonify({"message": _("Incorrect password")}), 400
    credential = current_user.two_factor
    if credential is None or not credential.verified:
        return jsonify({"message": _("Two-factor authentication is not active")}), 400
    token = form.token.data
    # a 6 digit token is a TOTP code, anything else is tried as a backup code
    is_backup = not (token.isdigit() and len(token) == 6)
    if not verify_second_factor(current_user, token, is_backup):
        db.session.rollback()
        return jsonify({"message": _("Invalid verification code")}), 400
    db.session.delete(credential)
    log_activity(current_user.id, "disable", "two_factor", "Two-factor authentication disabled")
    db.session.commit()
    return jsonify({"enabled": False})
