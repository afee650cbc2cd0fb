# services/push_registry.py
from __future__ import annotations

from typing import List, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from db import db
from models.push_subscription import PushSubscription
from services.errors import NotConfigured, ValidationError
from utils.timeutil import now_utc

__all__ = ["get_public_key", "subscribe", "unsubscribe", "active_subscriptions", "revoke"]


def get_public_key() -> str:
    """VAPID application server key for the browser, or NotConfigured."""
    key = current_app.config.get("VAPID_PUBLIC_KEY")
    if not key or not current_app.config.get("VAPID_PRIVATE_KEY"):
        raise NotConfigured("Push notifications are not configured")
    return key


def _clean_keys(keys) -> tuple[str, str]:
    if not isinstance(keys, dict):
        raise ValidationError("keys must be an object with p256dh and auth")
    p256dh = (keys.get("p256dh") or "").strip()
    auth = (keys.get("auth") or "").strip()
    if not p256dh or not auth:
        raise ValidationError("Invalid subscription data")
    return p256dh, auth


def subscribe(
    user_id: int,
    endpoint: str,
    keys: dict,
    device_info: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> PushSubscription:
    """
    Upsert keyed by endpoint. The same endpoint re-subscribed (by this or any
    other user, e.g. a shared browser) updates the one row and re-activates it.
    """
    endpoint = (endpoint or "").strip()
    if not endpoint.startswith("https://"):
        raise ValidationError("endpoint must be an https URL")
    p256dh, auth = _clean_keys(keys)
    now = now_utc()

    row = PushSubscription.query.filter_by(endpoint=endpoint).first()
    if row is None:
        row = PushSubscription(
            user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth,
            device_info=device_info, user_agent=user_agent,
            created_at=now, updated_at=now,
        )
        db.session.add(row)
        try:
            db.session.commit()
            current_app.logger.info("[push] subscribed uid=%s sub=%s", user_id, row.id)
            return row
        except IntegrityError:
            # same endpoint registered concurrently; fall through to the update
            db.session.rollback()
            row = PushSubscription.query.filter_by(endpoint=endpoint).one()

    row.user_id = user_id
    row.p256dh = p256dh
    row.auth = auth
    row.device_info = device_info or row.device_info
    row.user_agent = user_agent or row.user_agent
    row.updated_at = now
    row.revoked_at = None
    db.session.commit()
    current_app.logger.info("[push] subscription updated uid=%s sub=%s", user_id, row.id)
    return row


def unsubscribe(user_id: int, endpoint: Optional[str] = None) -> int:
    """
    Revoke the caller's subscription for `endpoint`, or all of them when no
    endpoint is given. Rows are kept for audit. Returns how many were revoked.
    """
    stmt = (
        update(PushSubscription)
        .where(PushSubscription.user_id == user_id, PushSubscription.revoked_at.is_(None))
        .values(revoked_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    endpoint = (endpoint or "").strip()
    if endpoint:
        stmt = stmt.where(PushSubscription.endpoint == endpoint)
    res = db.session.execute(stmt)
    db.session.commit()
    current_app.logger.info(
        "[push] unsubscribed uid=%s scope=%s revoked=%s",
        user_id, "endpoint" if endpoint else "all", res.rowcount,
    )
    return res.rowcount


def revoke(subscription_id: int) -> bool:
    res = db.session.execute(
        update(PushSubscription)
        .where(PushSubscription.id == subscription_id, PushSubscription.revoked_at.is_(None))
        .values(revoked_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount == 1


def active_subscriptions(user_id: int) -> List[PushSubscription]:
    return (
        PushSubscription.query
        .filter(PushSubscription.user_id == user_id, PushSubscription.revoked_at.is_(None))
        .order_by(PushSubscription.id)
        .all()
    )
