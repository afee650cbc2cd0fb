# services/notify.py
from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from flask import current_app
from markupsafe import escape
from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError

from db import db
from models.notification import Notification
from models.user import User
from services.errors import NotConfigured, NotFound, ValidationError
from services.preferences import email_allowed, get_preferences, in_quiet_hours, push_allowed
from services.push_registry import active_subscriptions, get_public_key
from utils.mail import send_email_async
from utils.push import deliver_async
from utils.timeutil import as_utc, now_utc

__all__ = [
    "create_notification",
    "notify_users",
    "get_notification",
    "list_notifications",
    "mark_read",
    "mark_all_read",
    "delete_notification",
]

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

# type -> (title, message); message fields come from the payload
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "event_created":        ("New event", "{eventTitle} has been posted."),
    "event_updated":        ("Event updated", "{eventTitle} has been updated."),
    "event_cancelled":      ("Event cancelled", "{eventTitle} has been cancelled."),
    "event_reminder":       ("Event reminder", "{eventTitle} starts at {startDate}."),
    "event_approved":       ("Event Approved", 'Your event "{eventTitle}" has been approved and is now active.'),
    "event_declined":       ("Event Declined", 'Your event "{eventTitle}" has been declined. Please review and resubmit.'),
    "volunteer_invitation": ("Volunteer invitation", "You have been invited to volunteer at {eventTitle}."),
    "volunteer_approved":   ("Volunteer application approved", "You are confirmed as a volunteer for {eventTitle}."),
    "volunteer_registered": ("New volunteer", "{volunteerName} registered to volunteer at {eventTitle}."),
    "volunteer_invitation_accepted": ("Invitation accepted", "{volunteerName} accepted your invitation to {eventTitle}."),
    "feedback_deadline":    ("Feedback due", "Please submit your feedback for {eventTitle} by {deadline}."),
    "attendance_recorded":  ("Attendance recorded", "Your attendance for {eventTitle} has been recorded."),
    "donation_received":    ("Donation received", "{donorName} donated {amount} to {eventTitle}."),
    "donation_success":     ("Thank you for your donation", "Your donation of {amount} to {eventTitle} was successful."),
    "comment_added":        ("New comment", "{authorName} commented on {eventTitle}."),
    "reaction_added":       ("New reaction", "{authorName} reacted to {eventTitle}."),
}

_FIELD_DEFAULTS = {
    "eventTitle": "an event",
    "volunteerName": "A volunteer",
    "donorName": "Someone",
    "authorName": "Someone",
    "amount": "a gift",
    "startDate": "the scheduled time",
    "deadline": "the deadline",
}


class _Fields(dict):
    def __missing__(self, key):
        return _FIELD_DEFAULTS.get(key, "")


def _title_body(ntype: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    tpl = TEMPLATES.get(ntype)
    if tpl:
        fields = _Fields({k: v for k, v in payload.items() if v not in (None, "")})
        title, body = tpl
        return title.format_map(fields), body.format_map(fields)

    # Fallback: generic title + listing of payload fields
    title = (payload.get("title") or ntype.replace("_", " ").strip().capitalize() or "Update")
    if payload.get("message"):
        return str(title), str(payload["message"])
    parts = [
        f"{k}: {v}" for k, v in payload.items()
        if k not in {"title", "message"} and isinstance(v, (str, int, float, bool))
    ]
    return str(title), ("; ".join(parts) or "You have a new notification")


def _dedupe_key(user_id: int, ntype: str, source_event: Optional[str]) -> Optional[str]:
    if source_event is None or str(source_event).strip() == "":
        return None
    return f"{int(user_id)}:{ntype}:{str(source_event).strip()}"[:255]


# ---------------------------------------------------------------------------
# Channels (best effort; never fail the in-app write)
# ---------------------------------------------------------------------------
def _push_channel(row: Notification, pref) -> int:
    if not push_allowed(pref, row.type):
        current_app.logger.info("[notify] push skipped by preference uid=%s type=%s", row.user_id, row.type)
        return 0
    if in_quiet_hours(pref):
        current_app.logger.info("[notify] push suppressed (quiet hours) uid=%s type=%s", row.user_id, row.type)
        return 0
    try:
        get_public_key()
    except NotConfigured:
        current_app.logger.info("[notify] push unavailable (not configured)")
        return 0

    ids = [s.id for s in active_subscriptions(row.user_id)]
    if not ids:
        current_app.logger.info("[notify] no active subscriptions uid=%s", row.user_id)
        return 0
    return deliver_async(ids, row)


def _email_channel(row: Notification, pref) -> bool:
    if not email_allowed(pref, row.type):
        return False
    user = db.session.get(User, row.user_id)
    if user is None or not user.email:
        return False
    html = f"""
      <div style="font-family:system-ui,Segoe UI,Roboto,Arial">
        <h2>{escape(row.title)}</h2>
        <p>{escape(row.message)}</p>
      </div>
    """
    send_email_async(to=user.email, subject=row.title, html=html, text=row.message)
    return True


def _dispatch_channels(row: Notification) -> None:
    try:
        pref = get_preferences(row.user_id)
        scheduled = _push_channel(row, pref)
        emailed = _email_channel(row, pref)
        current_app.logger.info(
            "[notify] fanout id=%s uid=%s type=%s push=%s email=%s",
            row.id, row.user_id, row.type, scheduled, emailed,
        )
    except Exception:
        db.session.rollback()
        current_app.logger.exception("[notify] channel fanout failed id=%s uid=%s", row.id, row.user_id)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_notification(
    user_id: int,
    ntype: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    source_event: Optional[str] = None,
    title: Optional[str] = None,
    message: Optional[str] = None,
) -> Tuple[Notification, bool]:
    """
    Record an unread in-app notification, then hand it to the push and email
    channels. The row is committed before any channel runs, and channel
    failures are logged and swallowed.

    With `source_event` set, creation is idempotent per (user, type, source
    event): a repeat returns the existing row and does not re-dispatch.

    Returns (notification, created).
    """
    ntype = (ntype or "").strip().lower() or "system"
    if len(ntype) > 64:
        raise ValidationError("type is too long")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    dedupe_key = _dedupe_key(user_id, ntype, source_event)
    if dedupe_key:
        existing = Notification.query.filter_by(dedupe_key=dedupe_key).first()
        if existing is not None:
            current_app.logger.info("[notify] duplicate suppressed key=%s", dedupe_key)
            return existing, False

    t, m = _title_body(ntype, payload)
    row = Notification(
        user_id=int(user_id),
        type=ntype,
        title=(title or t)[:200],
        message=message or m,
        payload=payload,
        dedupe_key=dedupe_key,
        created_at=now_utc(),
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if dedupe_key:
            existing = Notification.query.filter_by(dedupe_key=dedupe_key).first()
            if existing is not None:
                return existing, False
        raise

    current_app.logger.info("[notify] created id=%s uid=%s type=%s", row.id, row.user_id, row.type)
    _dispatch_channels(row)
    return row, True


def notify_users(
    user_ids: Iterable[int],
    ntype: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    source_event: Optional[str] = None,
) -> List[Notification]:
    """Fan one logical event out to several users; one user's failure does not stop the rest."""
    created: List[Notification] = []
    seen = set()
    for uid in user_ids:
        if uid is None or uid in seen:
            continue
        seen.add(uid)
        try:
            row, is_new = create_notification(uid, ntype, payload, source_event=source_event)
        except ValidationError:
            raise
        except Exception:
            db.session.rollback()
            current_app.logger.exception("[notify] create failed uid=%s type=%s", uid, ntype)
            continue
        if is_new:
            created.append(row)
    return created


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------
def _encode_cursor(row: Notification) -> str:
    raw = f"{as_utc(row.created_at).isoformat()}|{row.id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        ts, nid = raw.split("|", 1)
        return as_utc(datetime.fromisoformat(ts)), nid
    except (ValueError, binascii.Error, UnicodeError):
        raise ValidationError("Invalid cursor") from None


def get_notification(user_id: int, notification_id: str) -> Notification:
    row = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
    if row is None:
        raise NotFound("Notification not found")
    return row


def list_notifications(user_id: int, limit: int = DEFAULT_LIMIT, cursor: Optional[str] = None) -> dict:
    """
    Newest first, keyset-paginated on (created_at, id). Every id appears on at
    most one page even while new rows arrive.
    """
    limit = max(1, min(int(limit), MAX_LIMIT))
    q = Notification.query.filter(Notification.user_id == user_id)
    if cursor:
        ts, nid = _decode_cursor(cursor)
        q = q.filter(or_(
            Notification.created_at < ts,
            and_(Notification.created_at == ts, Notification.id < nid),
        ))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit + 1).all()

    has_more = len(rows) > limit
    rows = rows[:limit]
    unread = (
        db.session.query(func.count(Notification.id))
        .filter(Notification.user_id == user_id, Notification.read_at.is_(None))
        .scalar()
    )
    return {
        "notifications": rows,
        "next_cursor": _encode_cursor(rows[-1]) if has_more and rows else None,
        "unread_count": int(unread or 0),
    }


# ---------------------------------------------------------------------------
# Owner mutations (idempotent)
# ---------------------------------------------------------------------------
def mark_read(user_id: int, notification_id: str) -> int:
    res = db.session.execute(
        update(Notification)
        .where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
            Notification.read_at.is_(None),
        )
        .values(read_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount


def mark_all_read(user_id: int) -> int:
    res = db.session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read_at.is_(None))
        .values(read_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    current_app.logger.info("[notify] mark-all-read uid=%s changed=%s", user_id, res.rowcount)
    return res.rowcount


def delete_notification(user_id: int, notification_id: str) -> int:
    res = db.session.execute(
        delete(Notification)
        .where(Notification.id == notification_id, Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount
