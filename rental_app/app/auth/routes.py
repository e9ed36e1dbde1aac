from __future__ import annotations
from flask import Blueprint, jsonify, current_app, session
from flask_babel import gettext as _
from flask_login import login_user, logout_user, current_user, login_required
from flask_wtf.csrf import generate_csrf
from sqlalchemy.exc import IntegrityError
from .. import db
from ..models import User, SecuritySettings
from ..forms import RegisterForm, LoginForm, StepUpForm, LanguageForm, ChangePasswordForm
from ..utils.activity import log_activity
from ..utils.totp import verify_code
from .lockout import check_lockout, register_failed_attempt, reset_failed_attempts
from .passwords import apply_new_password, is_password_expired, is_password_previously_used

auth_bp = Blueprint("auth", __name__, url_prefix="/api")

PENDING_KEY = "pending_2fa_user"


def principal_payload(user: User) -> dict:
    data = user.to_dict()
    settings = SecuritySettings.current()
    data["twoFactorSetupRequired"] = bool(settings.require_two_factor and not user.two_factor_active)
    data["passwordExpired"] = is_password_expired(user)
    return data


def verify_second_factor(user: User, token: str, is_backup_code: bool) -> bool:
    """Check a TOTP code or consume a backup code of an active credential.

    Mutations (consumed backup code, last used step) are left uncommitted.
    """
    credential = user.two_factor
    if credential is None or not credential.verified:
        return False
    if is_backup_code:
        return credential.verify_and_consume_backup_code(token)
    secret = credential.secret
    if not secret:
        return False
    ok, step = verify_code(
        secret,
        token,
        last_used_step=credential.last_used_step,
        valid_window=current_app.config.get("TOTP_VALID_WINDOW", 1),
    )
    if ok:
        credential.last_used_step = step
    return ok


@auth_bp.route("/csrf", methods=["GET"])
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})


@auth_bp.route("/language", methods=["POST"])
def set_language():
    form = LanguageForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    if form.lang.data not in current_app.config.get("LANGUAGES", ("it", "en")):
        return jsonify({"message": _("Unsupported language")}), 400
    session["lang"] = form.lang.data
    return jsonify({"lang": form.lang.data})


@auth_bp.route("/register", methods=["POST"])
def register():
    form = RegisterForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    existing = User.query.filter((User.username == form.username.data) | (User.email == form.email.data)).first()
    if existing:
        return jsonify({"message": _("Username or email already in use")}), 400
    user = User()
    user.username = form.username.data
    user.email = form.email.data
    user.full_name = form.full_name.data or None
    try:
        apply_new_password(user, form.password.data)
        log_activity(user.id, "register", "user", "Account created")
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.exception("User commit failed, possible race on unique constraint")
        return jsonify({"message": _("Username or email already in use")}), 400
    # registration never opens a session: the new user goes through the normal login
    return jsonify(user.to_dict()), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    # a new password attempt always discards a previous pending challenge
    session.pop(PENDING_KEY, None)
    user = User.query.filter_by(username=form.username.data).first()
    if user is not None:
        lock = check_lockout(user)
        if lock.locked_out:
            return jsonify({"message": _("Account locked. Try again in %(minutes)s minutes.", minutes=lock.remaining_minutes)}), 423
    if user is None or not user.check_password(form.password.data):
        if user is not None:
            lock = register_failed_attempt(user)
            if lock.locked_out:
                return jsonify({"message": _("Account locked. Try again in %(minutes)s minutes.", minutes=lock.remaining_minutes)}), 423
        return jsonify({"message": _("Invalid username or password")}), 401
    reset_failed_attempts(user)

    # If 2FA is active, store pending login and ask for the second factor
    if user.two_factor_active:
        # whoever was signed in before stays signed out until the challenge is met
        if current_user.is_authenticated:
            logout_user()
        session[PENDING_KEY] = user.id
        current_app.logger.info("Login for %s requires two-factor verification", user.username)
        return jsonify({
            "requiresTwoFactor": True,
            "userId": user.id,
            "username": user.username,
            "passwordExpired": is_password_expired(user),
        })

    login_user(user)
    log_activity(user.id, "login", "auth", "Login successful")
    db.session.commit()
    return jsonify(principal_payload(user))


@auth_bp.route("/login/2fa", methods=["POST"])
def login_two_factor():
    form = StepUpForm()
    if not form.validate_on_submit():
        return jsonify({"message": _("Missing parameters")}), 400
    pending_id = session.get(PENDING_KEY)
    if not pending_id or pending_id != form.user_id.data:
        return jsonify({"message": _("No verification in progress for this user")}), 401
    user = db.session.get(User, pending_id)
    if user is None:
        session.pop(PENDING_KEY, None)
        return jsonify({"message": _("User not found")}), 401

    lock = check_lockout(user)
    if lock.locked_out:
        session.pop(PENDING_KEY, None)
        return jsonify({"message": _("Account locked. Try again in %(minutes)s minutes.", minutes=lock.remaining_minutes)}), 423

    if not verify_second_factor(user, form.token.data, bool(form.is_backup_code.data)):
        db.session.rollback()
        current_app.logger.info("Rejected second factor for %s", user.username)
        lock = register_failed_attempt(user)
        if lock.locked_out:
            # a locked account has to start over from the password
            session.pop(PENDING_KEY, None)
            return jsonify({"message": _("Account locked. Try again in %(minutes)s minutes.", minutes=lock.remaining_minutes)}), 423
        return jsonify({"message": _("Invalid verification code")}), 401

    session.pop(PENDING_KEY, None)
    reset_failed_attempts(user)
    login_user(user)
    details = "Login with backup code" if form.is_backup_code.data else "Login with two-factor authentication"
    log_activity(user.id, "login", "two_factor", details)
    db.session.commit()
    return jsonify(principal_payload(user))


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.pop(PENDING_KEY, None)
    if current_user.is_authenticated:
        log_activity(current_user.id, "logout", "auth", "Logout")
        db.session.commit()
        logout_user()
    return "", 204


@auth_bp.route("/user", methods=["GET"])
def current_principal():
    if not current_user.is_authenticated:
        return jsonify({"message": _("Authentication required")}), 401
    return jsonify(principal_payload(current_user))


@auth_bp.route("/user/change-password", methods=["POST"])
@login_required
def change_password():
    form = ChangePasswordForm()
    if not form.validate_on_submit():
        return jsonify({"message": form.first_error()}), 400
    user = current_user._get_current_object()
    if not user.check_password(form.current_password.data):
        return jsonify({"message": _("Current password is incorrect")}), 400
    if is_password_previously_used(user, form.new_password.data):
        return jsonify({"message": _("A recent password cannot be reused")}), 400
    apply_new_password(user, form.new_password.data)
    log_activity(user.id, "password_change", "user", "Password changed", entity_id=user.id)
    db.session.commit()
    current_app.logger.info("Password changed for %s", user.username)
    return jsonify(principal_payload(user))
