import pytest
import requests

from models.notification import Notification
from models.push_subscription import PushSubscription
from services.errors import NotConfigured, ValidationError
from services.notify import create_notification
from services.push_registry import active_subscriptions, get_public_key, subscribe, unsubscribe
from utils.push import FAILED, GONE, SENT, build_payload, deliver, mask_endpoint

from conftest import KEYS, endpoint


def test_subscribe_twice_keeps_one_row(app, user):
    first = subscribe(user.id, endpoint(1), KEYS, device_info="Firefox")
    second = subscribe(user.id, endpoint(1), {"p256dh": "new-key", "auth": "new-auth"})

    assert first.id == second.id
    assert PushSubscription.query.count() == 1
    assert second.p256dh == "new-key"
    assert second.device_info == "Firefox"


def test_resubscribe_reactivates_and_rebinds(app, user, other_user):
    subscribe(user.id, endpoint(1), KEYS)
    unsubscribe(user.id, endpoint(1))
    assert active_subscriptions(user.id) == []

    sub = subscribe(other_user.id, endpoint(1), KEYS)
    assert sub.active
    assert sub.user_id == other_user.id
    assert PushSubscription.query.count() == 1


@pytest.mark.parametrize("ep,keys", [
    ("http://insecure.example.com/push", KEYS),
    ("", KEYS),
    ("https://push.example.com/x", {"p256dh": "abc"}),
    ("https://push.example.com/x", "not-an-object"),
])
def test_subscribe_validation(app, user, ep, keys):
    with pytest.raises(ValidationError):
        subscribe(user.id, ep, keys)


def test_unsubscribe_one_or_all(app, user):
    for n in (1, 2, 3):
        subscribe(user.id, endpoint(n), KEYS)

    assert unsubscribe(user.id, endpoint(2)) == 1
    assert [s.endpoint for s in active_subscriptions(user.id)] == [endpoint(1), endpoint(3)]
    assert unsubscribe(user.id) == 2
    assert unsubscribe(user.id) == 0
    # rows kept, just revoked
    assert PushSubscription.query.count() == 3


def test_unsubscribe_only_touches_own_rows(app, user, other_user):
    subscribe(user.id, endpoint(1), KEYS)
    assert unsubscribe(other_user.id, endpoint(1)) == 0
    assert len(active_subscriptions(user.id)) == 1


def test_public_key(app):
    assert get_public_key() == "BPublicTestKey"
    app.config["VAPID_PUBLIC_KEY"] = None
    with pytest.raises(NotConfigured):
        get_public_key()


def test_gone_endpoint_is_revoked(app, user, webpush, outbox):
    subscribe(user.id, endpoint(1), KEYS)
    subscribe(user.id, endpoint(2), KEYS)
    webpush.script[endpoint(1)] = [410]

    create_notification(user.id, "event_created", {"eventTitle": "X"})
    assert [s.endpoint for s in active_subscriptions(user.id)] == [endpoint(2)]

    webpush.calls.clear()
    create_notification(user.id, "event_updated", {"eventTitle": "X"})
    assert webpush.endpoints() == [endpoint(2)]


def test_404_also_counts_as_gone(app, user, webpush):
    sub = subscribe(user.id, endpoint(1), KEYS)
    webpush.script[endpoint(1)] = [404]
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})
    assert deliver(sub, row) == GONE
    assert active_subscriptions(user.id) == []


def test_transient_failure_is_retried(app, user, webpush):
    sub = subscribe(user.id, endpoint(1), KEYS)
    webpush.script[endpoint(1)] = [503, 429]
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})

    assert deliver(sub, row) == SENT
    assert len(webpush.calls) == 3


def test_network_error_is_retried(app, user, webpush):
    sub = subscribe(user.id, endpoint(1), KEYS)
    webpush.script[endpoint(1)] = [requests.ConnectionError("reset")]
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})

    assert deliver(sub, row) == SENT
    assert len(webpush.calls) == 2


def test_transient_failure_gives_up_after_budget(app, user, webpush):
    app.config["PUSH_MAX_RETRIES"] = 3
    sub = subscribe(user.id, endpoint(1), KEYS)
    webpush.script[endpoint(1)] = [503] * 10
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})

    assert deliver(sub, row) == FAILED
    assert len(webpush.calls) == 4
    # still active; only gone endpoints are revoked
    assert len(active_subscriptions(user.id)) == 1


def test_permanent_failure_is_not_retried(app, user, webpush):
    sub = subscribe(user.id, endpoint(1), KEYS)
    webpush.script[endpoint(1)] = [400]
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})

    assert deliver(sub, row) == FAILED
    assert len(webpush.calls) == 1


def test_webpush_gets_vapid_and_timeout(app, user, webpush):
    sub = subscribe(user.id, endpoint(1), KEYS)
    row = Notification(user_id=user.id, type="custom", title="t", message="m", payload={})
    deliver(sub, row)

    call = webpush.calls[0]
    assert call["vapid_private_key"] == "private-test-key"
    assert call["vapid_claims"] == {"sub": app.config["VAPID_SUBJECT"]}
    assert call["timeout"] == app.config["PUSH_TIMEOUT_S"]


def test_build_payload_shape(app, user):
    row = Notification(id="abc123", user_id=user.id, type="volunteer_invitation",
                       title="Volunteer invitation", message="m", payload={"eventId": 42})
    payload = build_payload(row)

    assert payload["data"]["url"] == "/user/events/42"
    assert payload["data"]["notificationId"] == "abc123"
    assert payload["requireInteraction"] is True
    assert [a["action"] for a in payload["actions"]] == ["accept", "view"]

    row.payload = {}
    row.type = "donation_received"
    payload = build_payload(row)
    assert payload["data"]["url"] == "/notifications"
    assert payload["actions"] == []


def test_mask_endpoint():
    long = "https://fcm.googleapis.com/fcm/send/" + "x" * 60
    masked = mask_endpoint(long)
    assert "..." in masked and len(masked) < len(long)
    assert mask_endpoint("https://a.b/c") == "https://a.b/c"
