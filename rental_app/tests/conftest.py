import sys
import os
import time
from http import HTTPStatus
from urllib.parse import urlsplit

import pyotp
import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

# ensure repository root is on sys.path so `rental_app` package can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Ensure tests have a DATABASE_URL so importing app.config doesn't raise
os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
from flask import g
from rental_app.app import create_app, db
from rental_app.app.config import Config
from rental_app.app.models import User, ROLE_ADMIN, ROLE_USER
from rental_app.client.http import ApiClient

BASE_URL = "http://testserver"
PASSWORD = "Secret#123"


# Config carries Final annotations, so the test settings are a separate class
# rather than a subclass redeclaring them.
class TestConfig:
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    SECRET_KEY = getattr(Config, "SECRET_KEY", "test-secret")
    TWO_FACTOR_ENCRYPTION_KEY = "q0u4Zp0m7yVQ2r1ZzYx7b3dS1m2GmC7y5m1b9nqk3wE="
    TWO_FACTOR_ISSUER = "o2o Mobility Test"
    TWO_FACTOR_PENDING_TTL_MINUTES = 15
    BACKUP_CODE_COUNT = 8
    TOTP_VALID_WINDOW = 1


class CsrfTestConfig(TestConfig):
    WTF_CSRF_ENABLED = True


def _build_app(config):
    app = create_app(config)

    @app.before_request
    def _fresh_request_globals():
        # the fixture keeps one app context open, so g outlives a request
        g.pop("_login_user", None)
        g.pop("csrf_token", None)

    return app


@pytest.fixture
def app():
    app = _build_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def csrf_app():
    app = _build_app(CsrfTestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username="mario", password=PASSWORD, role=ROLE_USER, email=None):
    user = User()
    user.username = username
    user.email = email or f"{username}@example.com"
    user.full_name = username.title()
    user.role = role
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(app):
    return make_user()


@pytest.fixture
def admin(app):
    return make_user("admin", role=ROLE_ADMIN)


def login(client, username="mario", password=PASSWORD):
    return client.post("/api/login", json={"username": username, "password": password})


def enroll(client):
    """Enable 2FA for the logged-in user of ``client``; returns (secret, backup codes)."""
    rv = client.post("/api/auth/2fa/setup")
    assert rv.status_code == 200, rv.get_json()
    secret = rv.get_json()["secret"]
    rv = client.post("/api/auth/2fa/verify", json={"token": pyotp.TOTP(secret).now()})
    assert rv.status_code == 200, rv.get_json()
    return secret, rv.get_json()["backupCodes"]


def next_code(secret):
    # the step just used for enrollment is burnt, the next one is still inside the window
    return pyotp.TOTP(secret).at(time.time() + 30)


def _reason(status):
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def build_response(request, status, body=b"", headers=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.reason = _reason(status)
    resp.url = request.url
    resp.request = request
    resp.encoding = "utf-8"
    return resp


class FlaskAdapter(BaseAdapter):
    """requests transport that hands every request to a Flask test client."""

    def __init__(self, test_client):
        super().__init__()
        self.test_client = test_client

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        path = parts.path + ("?" + parts.query if parts.query else "")
        headers = {k: v for k, v in request.headers.items() if k.lower() != "content-length"}
        kwargs = {}
        if parts.scheme == "https":
            # only HTTPS needs the real host: Flask-WTF compares it with the Referer
            kwargs["base_url"] = f"https://{parts.netloc}/"
        rv = self.test_client.open(path, method=request.method, headers=headers, data=request.body, **kwargs)
        return build_response(request, rv.status_code, rv.get_data(), dict(rv.headers))

    def close(self):
        pass


class StubAdapter(BaseAdapter):
    """Scripted transport: each (method, path) answers from a queue of canned responses.

    The last response of a queue repeats. ``before`` runs just before a
    response is returned, which lets a test act while a call is in flight.
    """

    def __init__(self):
        super().__init__()
        self.routes = {}
        self.calls = []
        self.add("GET", "/api/csrf", json={"csrfToken": "stub-token"})

    def add(self, method, path, status=200, json=None, body=None, content_type=None, exc=None, before=None):
        import json as _json

        if json is not None:
            body = _json.dumps(json).encode()
            content_type = content_type or "application/json"
        canned = {
            "status": status,
            "body": body or b"",
            "content_type": content_type,
            "exc": exc,
            "before": before,
        }
        self.routes.setdefault((method.upper(), path), []).append(canned)
        return self

    def calls_to(self, path):
        return [c for c in self.calls if c[1] == path]

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        path = urlsplit(request.url).path
        self.calls.append((request.method, path, request.body, dict(request.headers)))
        queue = self.routes.get((request.method, path))
        if not queue:
            raise AssertionError(f"unexpected request {request.method} {path}")
        canned = queue.pop(0) if len(queue) > 1 else queue[0]
        if canned["before"] is not None:
            canned["before"]()
        if canned["exc"] is not None:
            raise canned["exc"]
        headers = {"Content-Type": canned["content_type"]} if canned["content_type"] else {}
        return build_response(request, canned["status"], canned["body"], headers)

    def close(self):
        pass


@pytest.fixture
def live_api(client):
    """ApiClient talking to the in-process Flask app."""
    session = requests.Session()
    session.mount(BASE_URL + "/", FlaskAdapter(client))
    return ApiClient(BASE_URL, session=session)


@pytest.fixture
def stub():
    return StubAdapter()


@pytest.fixture
def stub_api(stub):
    session = requests.Session()
    session.mount(BASE_URL + "/", stub)
    return ApiClient(BASE_URL, session=session)
