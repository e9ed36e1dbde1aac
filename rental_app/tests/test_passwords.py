from datetime import datetime, timedelta

from conftest import PASSWORD, login, enroll, next_code, make_user
from rental_app.app import db
from rental_app.app.auth.passwords import (
    apply_new_password, complexity_errors, is_password_expired, is_password_previously_used,
)
from rental_app.app.models import ActivityLog, PasswordHistory, SecuritySettings, User

NEW_PASSWORD = "Fresh#4567"


def age_password(user, days):
    for entry in PasswordHistory.query.filter_by(user_id=user.id):
        entry.created_at = datetime.utcnow() - timedelta(days=days)
    db.session.commit()


def record_password(user, password=PASSWORD):
    apply_new_password(user, password)
    db.session.commit()


def test_complexity_follows_settings(app):
    settings = SecuritySettings.current()
    assert complexity_errors("short", settings) == [
        "at least 8 characters", "an uppercase letter", "a digit", "a special character",
    ]
    assert complexity_errors(PASSWORD, settings) == []

    settings.min_password_length = 12
    settings.require_special_char = False
    db.session.commit()
    assert complexity_errors("Abcdefgh1234") == []
    assert complexity_errors("Abc1") == ["at least 12 characters"]


def test_register_uses_configured_rules_and_records_history(client):
    settings = SecuritySettings.current()
    settings.min_password_length = 12
    db.session.commit()

    rv = client.post('/api/register', json={'username': 'newbie', 'email': 'newbie@example.com', 'password': PASSWORD})
    assert rv.status_code == 400
    assert '12 characters' in rv.get_json()['message']

    rv = client.post('/api/register', json={'username': 'newbie', 'email': 'newbie@example.com', 'password': 'Longer#Secret1'})
    assert rv.status_code == 201
    user = User.query.filter_by(username='newbie').one()
    assert PasswordHistory.query.filter_by(user_id=user.id).count() == 1


def test_expiry_needs_history_and_a_period(app, user):
    # no history entry: never expired
    assert not is_password_expired(user)

    record_password(user)
    assert not is_password_expired(user)
    age_password(user, 91)
    assert is_password_expired(user)

    SecuritySettings.current().password_expiry_days = 0
    db.session.commit()
    assert not is_password_expired(user)


def test_login_reports_expired_password(client, user):
    record_password(user)
    assert login(client).get_json()['passwordExpired'] is False
    client.post('/api/logout')

    age_password(user, 120)
    body = login(client).get_json()
    assert body['username'] == 'mario'
    assert body['passwordExpired'] is True
    assert client.get('/api/user').get_json()['passwordExpired'] is True


def test_challenge_and_step_up_report_expired_password(client, app, user):
    other = app.test_client()
    login(other)
    secret, _codes = enroll(other)
    other.post('/api/logout')
    record_password(user)
    age_password(user, 120)

    body = login(client).get_json()
    assert body['requiresTwoFactor'] is True
    assert body['passwordExpired'] is True

    rv = client.post('/api/login/2fa', json={'userId': user.id, 'token': next_code(secret)})
    assert rv.status_code == 200
    assert rv.get_json()['passwordExpired'] is True


def test_change_password(client, user):
    record_password(user)
    age_password(user, 120)
    login(client)

    rv = client.post('/api/user/change-password', json={'currentPassword': 'Wrong#123', 'newPassword': NEW_PASSWORD})
    assert rv.status_code == 400
    assert rv.get_json()['message'] == 'Current password is incorrect'

    rv = client.post('/api/user/change-password', json={'currentPassword': PASSWORD, 'newPassword': 'weak'})
    assert rv.status_code == 400

    rv = client.post('/api/user/change-password', json={'currentPassword': PASSWORD, 'newPassword': PASSWORD})
    assert rv.status_code == 400
    assert rv.get_json()['message'] == 'A recent password cannot be reused'

    rv = client.post('/api/user/change-password', json={'currentPassword': PASSWORD, 'newPassword': NEW_PASSWORD})
    assert rv.status_code == 200
    assert rv.get_json()['passwordExpired'] is False
    assert ActivityLog.query.filter_by(action='password_change').count() == 1

    client.post('/api/logout')
    assert login(client).status_code == 401
    assert login(client, password=NEW_PASSWORD).status_code == 200


def test_change_password_requires_login(client, user):
    rv = client.post('/api/user/change-password', json={'currentPassword': PASSWORD, 'newPassword': NEW_PASSWORD})
    assert rv.status_code == 401


def test_history_is_trimmed_to_the_configured_count(app, user):
    settings = SecuritySettings.current()
    settings.password_history_count = 2
    db.session.commit()

    for password in (PASSWORD, "Second#123", "Third#1234"):
        record_password(user, password)

    assert PasswordHistory.query.filter_by(user_id=user.id).count() == 2
    assert not is_password_previously_used(user, PASSWORD)
    assert is_password_previously_used(user, "Second#123")

    settings.password_history_count = 0
    db.session.commit()
    record_password(user, "Fourth#1234")
    # the newest entry stays to date the password
    assert PasswordHistory.query.filter_by(user_id=user.id).count() == 1
    assert not is_password_previously_used(user, "Fourth#1234")


def test_admin_updates_password_policy(client, admin):
    login(client, 'admin')
    rv = client.put('/api/admin/settings/security', json={
        'passwordExpiryDays': 30,
        'passwordHistoryCount': 3,
        'minPasswordLength': 10,
        'requireSpecialChar': False,
    })
    assert rv.status_code == 200
    body = rv.get_json()
    assert body['passwordExpiryDays'] == 30
    assert body['passwordHistoryCount'] == 3
    assert body['minPasswordLength'] == 10
    assert body['requireSpecialChar'] is False
    assert body['requireUppercase'] is True

    rv = client.put('/api/admin/settings/security', json={'minPasswordLength': 2})
    assert rv.status_code == 400


def test_cli_create_admin_records_history(app):
    runner = app.test_cli_runner()
    rv = runner.invoke(args=['users', 'create-admin', 'boss', 'boss@example.com', '--password', PASSWORD])
    assert rv.exit_code == 0, rv.output
    boss = User.query.filter_by(username='boss').one()
    assert PasswordHistory.query.filter_by(user_id=boss.id).count() == 1


def test_make_user_has_no_history(app):
    user = make_user('plain')
    assert PasswordHistory.query.filter_by(user_id=user.id).count() == 0
