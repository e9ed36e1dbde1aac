from __future__ import annotations
from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, IntegerField, BooleanField
from wtforms.validators import DataRequired, Length, Email, Optional, Regexp, NumberRange, ValidationError
from .auth.passwords import complexity_errors

USERNAME_RULE = Regexp(r"^[A-Za-z0-9_.-]+$", message="Username may only contain letters, digits and _ . -")


def _as_text(value):
    # JSON bodies may carry numbers where text is expected (e.g. a TOTP token)
    if value is None:
        return None
    return str(value).strip()


def password_complexity(form, field):
    # the rules come from the security settings
    errors = complexity_errors(field.data or "")
    if errors:
        raise ValidationError("Password must contain " + ", ".join(errors))


class ApiForm(FlaskForm):
    """Form bound to a JSON request body.

    CSRF is enforced globally by CSRFProtect through the X-CSRFToken header,
    so the per-form hidden token is switched off.
    """

    class Meta:
        csrf = False

    def first_error(self) -> str:
        for field in self:
            if field.errors:
                return f"{field.name}: {field.errors[0]}"
        return "Invalid request"


class RegisterForm(ApiForm):
    username = StringField("username", validators=[DataRequired(), Length(min=3, max=80), USERNAME_RULE])
    email = StringField("email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("password", validators=[DataRequired(), password_complexity])
    full_name = StringField("fullName", name="fullName", validators=[Optional(), Length(max=255)])


class LoginForm(ApiForm):
    username = StringField("username", validators=[DataRequired(), Length(min=3, max=80), USERNAME_RULE])
    password = PasswordField("password", validators=[DataRequired()])


class ChangePasswordForm(ApiForm):
    current_password = PasswordField("currentPassword", name="currentPassword", validators=[DataRequired()])
    new_password = PasswordField("newPassword", name="newPassword", validators=[DataRequired(), password_complexity])


class TokenForm(ApiForm):
    token = StringField(
        "token",
        filters=[_as_text],
        validators=[DataRequired(), Regexp(r"^\d{6}$", message="The code must be exactly 6 digits")],
    )


class StepUpForm(ApiForm):
    user_id = IntegerField("userId", name="userId", validators=[DataRequired()])
    token = StringField("token", filters=[_as_text], validators=[DataRequired(), Length(max=32)])
    is_backup_code = BooleanField("isBackupCode", name="isBackupCode")


class DisableTwoFactorForm(ApiForm):
    password = PasswordField("password", validators=[DataRequired()])
    token = StringField("token", filters=[_as_text], validators=[DataRequired(), Length(max=32)])


class SecuritySettingsForm(ApiForm):
    # every field is optional: only the keys present in the body are updated
    auto_logout_minutes = IntegerField(
        "autoLogoutMinutes", name="autoLogoutMinutes", validators=[Optional(), NumberRange(min=0, max=1440)]
    )
    require_two_factor = BooleanField("requireTwoFactor", name="requireTwoFactor")
    failed_login_attempts = IntegerField(
        "failedLoginAttempts", name="failedLoginAttempts", validators=[Optional(), NumberRange(min=0, max=100)]
    )
    lockout_duration_minutes = IntegerField(
        "lockoutDurationMinutes", name="lockoutDurationMinutes", validators=[Optional(), NumberRange(min=1, max=1440)]
    )
    password_expiry_days = IntegerField(
        "passwordExpiryDays", name="passwordExpiryDays", validators=[Optional(), NumberRange(min=0, max=3650)]
    )
    password_history_count = IntegerField(
        "passwordHistoryCount", name="passwordHistoryCount", validators=[Optional(), NumberRange(min=0, max=24)]
    )
    min_password_length = IntegerField(
        "minPasswordLength", name="minPasswordLength", validators=[Optional(), NumberRange(min=4, max=128)]
    )
    require_uppercase = BooleanField("requireUppercase", name="requireUppercase")
    require_lowercase = BooleanField("requireLowercase", name="requireLowercase")
    require_number = BooleanField("requireNumber", name="requireNumber")
    require_special_char = BooleanField("requireSpecialChar", name="requireSpecialChar")


class LanguageForm(ApiForm):
    lang = StringField("lang", validators=[DataRequired(), Length(max=8)])
