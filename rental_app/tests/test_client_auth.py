import json

import pytest

from conftest import PASSWORD, login, enroll, next_code
from rental_app.client.auth import (
    AuthService, AuthState, LoginStatus, PendingChallenge, Principal, normalize_backup_code, sanitize_code,
)
from rental_app.client.http import Err, Ok


@pytest.fixture
def enrolled(app, user):
    """``user`` with an active second factor; returns (secret, backup codes)."""
    other = app.test_client()
    login(other)
    secret, codes = enroll(other)
    other.post('/api/logout')
    return secret, codes


def test_sanitize_code_keeps_six_digits():
    assert sanitize_code("12a3 45-678") == "123456"
    assert sanitize_code("") == ""
    assert sanitize_code(None) == ""
    assert normalize_backup_code(" abcd-1234 ") == "ABCD-1234"


def test_direct_login_populates_session(live_api, user):
    service = AuthService(live_api)
    seen = []
    service.state.subscribe(lambda s: seen.append(s.principal))

    outcome = service.login("mario", PASSWORD)
    assert outcome.status is LoginStatus.AUTHENTICATED
    assert service.state.principal == outcome.principal
    assert outcome.principal.username == "mario"
    assert seen == [outcome.principal]


def test_wrong_password_leaves_session_empty(live_api, user):
    service = AuthService(live_api)
    outcome = service.login("mario", "Wrong#123")
    assert outcome.status is LoginStatus.REJECTED
    assert outcome.message == "Invalid username or password"
    assert service.state.principal is None
    assert service.state.pending_challenge is None


def test_step_up_happy_path(live_api, user, enrolled):
    secret, _codes = enrolled
    service = AuthService(live_api)

    outcome = service.login("mario", PASSWORD)
    assert outcome.status is LoginStatus.CHALLENGE
    assert outcome.challenge == PendingChallenge(user_id=user.id, username="mario")
    assert service.state.principal is None

    outcome = service.verify_step_up(next_code(secret))
    assert outcome.status is LoginStatus.AUTHENTICATED
    assert service.state.principal.id == user.id
    assert service.state.principal.two_factor_enabled
    assert service.state.pending_challenge is None


def test_step_up_failure_keeps_challenge_for_retry(live_api, user, enrolled):
    secret, _codes = enrolled
    service = AuthService(live_api)
    service.login("mario", PASSWORD)

    outcome = service.verify_step_up("000000")
    assert outcome.status is LoginStatus.REJECTED
    assert outcome.message == "Invalid verification code"
    assert service.state.pending_challenge is not None
    assert service.state.principal is None

    assert service.verify_step_up(next_code(secret)).status is LoginStatus.AUTHENTICATED


def test_step_up_with_backup_code(live_api, user, enrolled):
    _secret, codes = enrolled
    service = AuthService(live_api)
    service.login("mario", PASSWORD)
    outcome = service.verify_step_up(" " + codes[0].lower() + " ", use_backup_code=True)
    assert outcome.status is LoginStatus.AUTHENTICATED


def test_step_up_local_validation(stub, stub_api):
    state = AuthState()
    service = AuthService(stub_api, state)
    state.require_step_up(PendingChallenge(1, "mario"), state.begin_attempt())

    outcome = service.verify_step_up("12 3")
    assert outcome.status is LoginStatus.REJECTED
    assert outcome.challenge is not None
    assert service.verify_step_up("   ", use_backup_code=True).status is LoginStatus.REJECTED
    assert stub.calls_to("/api/login/2fa") == []


def test_abandon_challenge(live_api, user, enrolled):
    service = AuthService(live_api)
    service.login("mario", PASSWORD)
    service.abandon_challenge()
    assert service.state.pending_challenge is None
    assert service.verify_step_up("123456").status is LoginStatus.REJECTED


def test_registration_never_populates_session(live_api):
    service = AuthService(live_api)
    result = service.register("newbie", "newbie@example.com", PASSWORD, full_name="New Bie")
    assert isinstance(result, Ok)
    assert result.status == 201
    assert service.state.principal is None
    assert not service.state.is_authenticated


def test_logout_clears_state_even_when_server_fails(stub, stub_api):
    stub.add("POST", "/api/login", json={"id": 3, "username": "mario"})
    stub.add("POST", "/api/logout", status=500, json={"message": "boom"})
    service = AuthService(stub_api)
    service.login("mario", "pw")
    assert service.state.is_authenticated

    service.logout()
    assert service.state.principal is None


def test_late_login_response_is_dropped(stub, stub_api):
    state = AuthState()
    service = AuthService(stub_api, state)
    # the user logs out while the login request is in flight
    stub.add("POST", "/api/login", json={"id": 3, "username": "mario"}, before=state.clear)

    outcome = service.login("mario", "pw")
    assert outcome.status is LoginStatus.SUPERSEDED
    assert state.principal is None


def test_late_step_up_response_is_dropped(stub, stub_api):
    state = AuthState()
    service = AuthService(stub_api, state)
    state.require_step_up(PendingChallenge(3, "mario"), state.begin_attempt())
    stub.add("POST", "/api/login/2fa", json={"id": 3, "username": "mario"}, before=service.abandon_challenge)

    outcome = service.verify_step_up("123456")
    assert outcome.status is LoginStatus.SUPERSEDED
    assert state.principal is None


def test_unusable_principal_is_rejected(stub, stub_api):
    stub.add("POST", "/api/login", json={"ok": True})
    service = AuthService(stub_api)
    assert service.login("mario", "pw").status is LoginStatus.REJECTED
    assert service.state.principal is None


def test_principal_from_payload():
    principal = Principal.from_payload({"id": "7", "username": "anna", "role": "admin", "fullName": "Anna"})
    assert principal.id == 7
    assert principal.is_admin
    assert principal.full_name == "Anna"
    assert Principal.from_payload(None) is None
    assert Principal.from_payload({"username": "x"}) is None


def test_fetch_idle_minutes(live_api, user, admin):
    service = AuthService(live_api)
    assert service.fetch_idle_minutes() == 0

    service.login("admin", PASSWORD)
    live_api.put("/api/admin/settings/security", {"autoLogoutMinutes": 12})
    assert service.fetch_idle_minutes() == 12


def test_dropping_the_challenge_notifies_listeners(stub, stub_api):
    state = AuthState()
    service = AuthService(stub_api, state)
    seen = []
    state.require_step_up(PendingChallenge(1, "mario"), state.begin_attempt())
    state.subscribe(lambda s: seen.append(s.pending_challenge))

    service.abandon_challenge()
    assert seen == [None]
    # nothing pending: no change to report
    service.abandon_challenge()
    assert seen == [None]


def test_principal_carries_password_expiry():
    principal = Principal.from_payload({"id": 1, "username": "mario", "passwordExpired": True})
    assert principal.password_expired
    assert not Principal.from_payload({"id": 1, "username": "mario"}).password_expired


def test_change_password_replaces_principal(stub, stub_api):
    state = AuthState()
    state.authenticate(Principal(id=1, username="mario", password_expired=True), state.begin_attempt())
    service = AuthService(stub_api, state)
    stub.add("POST", "/api/user/change-password", json={"id": 1, "username": "mario", "passwordExpired": False})

    result = service.change_password("Old#12345", "New#12345")
    assert isinstance(result, Ok)
    assert not state.principal.password_expired
    assert json.loads(stub.calls_to("/api/user/change-password")[0][2]) == {
        "currentPassword": "Old#12345", "newPassword": "New#12345",
    }


def test_change_password_failure_keeps_principal(stub, stub_api):
    state = AuthState()
    principal = Principal(id=1, username="mario", password_expired=True)
    state.authenticate(principal, state.begin_attempt())
    service = AuthService(stub_api, state)
    stub.add("POST", "/api/user/change-password", status=400, json={"message": "A recent password cannot be reused"})

    result = service.change_password("Old#12345", "Old#12345")
    assert isinstance(result, Err)
    assert result.message == "A recent password cannot be reused"
    assert state.principal == principal


def test_change_password_needs_a_session(stub, stub_api):
    result = AuthService(stub_api).change_password("a", "b")
    assert isinstance(result, Err)
    assert stub.calls_to("/api/user/change-password") == []
