# utils/push.py
import json
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Any, Dict, Iterable, Optional

import requests
from flask import current_app
from pywebpush import WebPushException, webpush

from db import db
from models.notification import Notification
from models.push_subscription import PushSubscription
from services.errors import UpstreamDeliveryFailure
from services.push_registry import revoke

__all__ = ["SENT", "GONE", "FAILED", "build_payload", "deliver", "deliver_async", "mask_endpoint"]

SENT, GONE, FAILED = "sent", "gone", "failed"

# endpoint permanently invalid (unsubscribed / expired on the push service)
_GONE_STATUSES = {404, 410}

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = Lock()


def _get_executor(max_workers: int) -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push")
        return _executor


def mask_endpoint(endpoint: str) -> str:
    if len(endpoint or "") > 40:
        return endpoint[:20] + "..." + endpoint[-10:]
    return endpoint or ""


def build_payload(notification: Notification) -> Dict[str, Any]:
    """Payload the service worker receives (shape of showNotification options)."""
    payload = dict(notification.payload or {})
    ntype = notification.type or "system"
    event_id = payload.get("eventId")
    return {
        "title": notification.title,
        "body": notification.message,
        "icon": "/logo.png",
        "badge": "/logo.png",
        "tag": ntype,
        "data": {
            **payload,
            "url": f"/user/events/{event_id}" if event_id else "/notifications",
            "notificationId": notification.id,
            "type": ntype,
        },
        "requireInteraction": ntype in {"volunteer_invitation", "feedback_deadline"},
        "actions": (
            [{"action": "accept", "title": "Accept"}, {"action": "view", "title": "View Event"}]
            if ntype == "volunteer_invitation" else []
        ),
    }


def _send_once(subscription: PushSubscription, data: Dict[str, Any]) -> None:
    cfg = current_app.config
    try:
        webpush(
            subscription_info=subscription.subscription_info(),
            data=json.dumps(data),
            vapid_private_key=cfg["VAPID_PRIVATE_KEY"],
            vapid_claims={"sub": cfg["VAPID_SUBJECT"]},
            timeout=cfg["PUSH_TIMEOUT_S"],
            ttl=cfg["PUSH_TTL_S"],
        )
    except WebPushException as e:
        status = e.response.status_code if e.response is not None else None
        if status in _GONE_STATUSES:
            raise UpstreamDeliveryFailure(str(e), status=status, gone=True) from e
        transient = status is None or status == 429 or status >= 500
        raise UpstreamDeliveryFailure(str(e), status=status, transient=transient) from e
    except requests.RequestException as e:
        # connect/read timeouts, resets, DNS
        raise UpstreamDeliveryFailure(repr(e), transient=True) from e


def _deliver_payload(subscription: PushSubscription, data: Dict[str, Any]) -> str:
    cfg = current_app.config
    if not (cfg.get("VAPID_PUBLIC_KEY") and cfg.get("VAPID_PRIVATE_KEY")):
        current_app.logger.info("[push] not configured; skipping %s", mask_endpoint(subscription.endpoint))
        return FAILED

    max_retries = int(cfg.get("PUSH_MAX_RETRIES", 3))
    backoff = float(cfg.get("PUSH_BACKOFF_S", 0.5))

    for attempt in range(max_retries + 1):
        t0 = time.perf_counter()
        try:
            _send_once(subscription, data)
        except UpstreamDeliveryFailure as e:
            if e.gone:
                revoke(subscription.id)
                current_app.logger.warning(
                    "[push] endpoint gone status=%s sub=%s; revoked",
                    e.status, subscription.id,
                )
                return GONE
            if not e.transient or attempt == max_retries:
                current_app.logger.error(
                    "[push] dropped sub=%s endpoint=%s status=%s attempts=%d error=%s",
                    subscription.id, mask_endpoint(subscription.endpoint), e.status, attempt + 1, e.message,
                )
                return FAILED
            delay = backoff * (2 ** attempt)
            current_app.logger.warning(
                "[push] transient failure sub=%s status=%s; retry %d/%d in %.2fs",
                subscription.id, e.status, attempt + 1, max_retries, delay,
            )
            if delay:
                time.sleep(delay)
            continue

        dt_ms = int((time.perf_counter() - t0) * 1000)
        current_app.logger.info("[push] sent sub=%s in=%dms", subscription.id, dt_ms)
        return SENT

    return FAILED


def deliver(subscription: PushSubscription, notification: Notification) -> str:
    """
    Deliver one notification to one subscription.
    Returns SENT, GONE (subscription revoked) or FAILED (dropped after retries).
    Never raises for transport problems.
    """
    return _deliver_payload(subscription, build_payload(notification))


def deliver_async(subscription_ids: Iterable[int], notification: Notification) -> int:
    """
    Fan a notification out to the given subscriptions. Each subscription is its
    own unit of work on the bounded pool, with its own app context, so one slow
    or dead endpoint never holds up the others. Returns the number scheduled.
    """
    app = current_app._get_current_object()
    data = build_payload(notification)
    ids = list(subscription_ids)

    def _one(sub_id: int):
        try:
            sub = db.session.get(PushSubscription, sub_id)
            if sub is None or not sub.active:
                return None
            return _deliver_payload(sub, data)
        except Exception:
            app.logger.exception("[push_async] failure sub=%s", sub_id)
            return FAILED

    def _run(sub_id: int):
        with app.app_context():
            return _one(sub_id)

    if not app.config.get("PUSH_ASYNC", True):
        for sub_id in ids:
            _one(sub_id)
        return len(ids)

    pool = _get_executor(int(app.config.get("PUSH_MAX_WORKERS", 8)))
    for sub_id in ids:
        pool.submit(_run, sub_id)
    return len(ids)
