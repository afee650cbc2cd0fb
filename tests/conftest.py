import json
import re

import pytest
from pywebpush import WebPushException

from app import create_app
from auth_guard import issue_token
from config import TestingConfig
from db import db
from models.user import User

_CODE_RE = re.compile(r"Your code is (\d{6})")


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """
    App on a file-backed SQLite database with the production async paths on:
    separate connections per session and push/mail off the caller's thread.
    """
    config = type("FileBackedConfig", (TestingConfig,), {
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'core.db'}",
        "PUSH_ASYNC": True,
        "MAIL_ASYNC": True,
    })
    app = create_app(config)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username: str, email: str, role: str = "user") -> User:
    user = User(username=username, email=email, role=role, first_name=username.title())
    user.set_password("secret123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def user(app):
    return make_user("volunteer1", "volunteer1@example.com")


@pytest.fixture
def other_user(app):
    return make_user("volunteer2", "volunteer2@example.com")


def auth_header(user: User) -> dict:
    return {"Authorization": f"Bearer {issue_token(user)}"}


@pytest.fixture
def auth_headers(user):
    return auth_header(user)


# ── Mail ────────────────────────────────────────────────────────────────────
@pytest.fixture
def outbox(monkeypatch):
    """Captures every outgoing email instead of talking SMTP."""
    sent = []

    def _fake_send_email(*, to, subject, html="", text=""):
        sent.append({"to": to, "subject": subject, "html": html, "text": text})

    monkeypatch.setattr("utils.mail.send_email", _fake_send_email)
    return sent


def last_code(outbox, to: str | None = None) -> str:
    for mail in reversed(outbox):
        if to is None or mail["to"] == to:
            m = _CODE_RE.search(mail["text"])
            if m:
                return m.group(1)
    raise AssertionError("no OTP email captured")


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


# ── Web push ────────────────────────────────────────────────────────────────
class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code
        self.text = ""


class FakeWebPush:
    """
    Stands in for pywebpush.webpush. `script[endpoint]` is a list of outcomes
    consumed one per call: an int status raises WebPushException with that
    response, an exception instance is raised as is. Empty script means 201.
    """

    def __init__(self):
        self.calls = []
        self.script = {}

    def __call__(self, subscription_info, data=None, **kwargs):
        endpoint = subscription_info["endpoint"]
        self.calls.append({"endpoint": endpoint, "data": json.loads(data), **kwargs})
        outcomes = self.script.get(endpoint)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            raise WebPushException(f"Push failed: {outcome}", response=FakeResponse(outcome))
        return FakeResponse(201)

    def endpoints(self):
        return [c["endpoint"] for c in self.calls]


@pytest.fixture
def webpush(monkeypatch):
    fake = FakeWebPush()
    monkeypatch.setattr("utils.push.webpush", fake)
    return fake


KEYS = {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM", "auth": "tBHItJI5svbpez7KI4CCXg"}


def endpoint(n: int) -> str:
    return f"https://fcm.googleapis.com/fcm/send/device-{n}"
