import threading
import time

import pytest

from models.otp_challenge import OtpChallenge
from services.notify import create_notification
from services.otp import request_challenge, subject_key, verify_challenge
from services.push_registry import active_subscriptions, subscribe
from utils.mail import send_email_async

from conftest import KEYS, FakeWebPush, endpoint, last_code, make_user


class BlockingWebPush(FakeWebPush):
    """FakeWebPush whose `held` endpoints wait for `release` before answering."""

    def __init__(self):
        super().__init__()
        self.held = set()
        self.release = threading.Event()
        self.done = {endpoint(n): threading.Event() for n in range(1, 4)}
        self.threads = []

    def __call__(self, subscription_info, data=None, **kwargs):
        ep = subscription_info["endpoint"]
        self.threads.append(threading.current_thread().name)
        try:
            if ep in self.held:
                self.release.wait(5)
            return super().__call__(subscription_info, data=data, **kwargs)
        finally:
            self.done[ep].set()


@pytest.fixture
def slow_webpush(monkeypatch):
    fake = BlockingWebPush()
    monkeypatch.setattr("utils.push.webpush", fake)
    yield fake
    fake.release.set()


def _wait_until(check, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(0.02)
    return check()


def test_create_returns_while_an_endpoint_hangs(file_app, slow_webpush, outbox):
    user = make_user("volunteer1", "volunteer1@example.com")
    subscribe(user.id, endpoint(1), KEYS)
    subscribe(user.id, endpoint(2), KEYS)
    slow_webpush.held.add(endpoint(1))

    row, created = create_notification(user.id, "event_reminder", {"eventTitle": "Food Drive"})

    assert created is True
    assert not slow_webpush.done[endpoint(1)].is_set()
    # the fast device is served while the slow one is still stuck
    assert slow_webpush.done[endpoint(2)].wait(5)
    assert not slow_webpush.done[endpoint(1)].is_set()

    slow_webpush.release.set()
    assert slow_webpush.done[endpoint(1)].wait(5)
    assert sorted(slow_webpush.endpoints()) == [endpoint(1), endpoint(2)]
    assert all(name.startswith("push") for name in slow_webpush.threads)
    assert threading.current_thread().name not in slow_webpush.threads


def test_gone_endpoint_revoked_by_worker(file_app, slow_webpush, outbox):
    user = make_user("volunteer1", "volunteer1@example.com")
    subscribe(user.id, endpoint(3), KEYS)
    slow_webpush.script[endpoint(3)] = [410]

    create_notification(user.id, "event_created", {"eventTitle": "X"})

    assert slow_webpush.done[endpoint(3)].wait(5)
    assert _wait_until(lambda: active_subscriptions(user.id) == [])


@pytest.fixture
def slow_mail(monkeypatch):
    release = threading.Event()
    sent = []

    def _slow_send_email(*, to, subject, html="", text=""):
        release.wait(5)
        sent.append({"to": to, "subject": subject, "text": text, "thread": threading.current_thread().name})

    monkeypatch.setattr("utils.mail.send_email", _slow_send_email)
    yield release, sent
    release.set()


def test_send_email_async_does_not_wait_for_smtp(file_app, slow_mail):
    release, sent = slow_mail

    send_email_async(to="a@example.com", subject="Hi", text="hello")
    assert sent == []

    release.set()
    assert _wait_until(lambda: len(sent) == 1)
    assert sent[0]["thread"] != threading.current_thread().name


def test_otp_request_stores_code_before_mail_goes_out(file_app, slow_mail):
    release, sent = slow_mail

    request_challenge("volunteer1@example.com")
    assert sent == []
    assert OtpChallenge.query.filter_by(
        subject_key=subject_key("volunteer1@example.com", "verify_email")
    ).count() == 1

    release.set()
    assert _wait_until(lambda: len(sent) == 1)
    code = last_code([dict(sent[0], html="")])
    verify_challenge("volunteer1@example.com", "verify_email", code)
