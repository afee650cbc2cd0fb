# services/preferences.py
from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app
from sqlalchemy.exc import IntegrityError

from db import db
from models.notification_preference import CATEGORIES, EMAIL_FREQUENCIES, NotificationPreference
from services.errors import ValidationError
from utils.timeutil import now_utc

__all__ = [
    "TYPE_CATEGORIES",
    "category_for",
    "get_preferences",
    "update_preferences",
    "in_quiet_hours",
    "push_allowed",
    "email_allowed",
]

TYPE_CATEGORIES = {
    "event_created": "events",
    "event_updated": "events",
    "event_cancelled": "events",
    "event_reminder": "events",
    "event_approved": "events",
    "event_declined": "events",
    "volunteer_invitation": "volunteers",
    "volunteer_approved": "volunteers",
    "volunteer_registered": "volunteers",
    "volunteer_invitation_accepted": "volunteers",
    "feedback_deadline": "volunteers",
    "attendance_recorded": "volunteers",
    "donation_received": "donations",
    "donation_success": "donations",
    "comment_added": "social",
    "reaction_added": "social",
}

_HHMM = re.compile(r"([01]\d|2[0-3]):[0-5]\d")
_FIELDS = {"pushEnabled", "pushTypes", "emailEnabled", "emailTypes", "emailFrequency", "quietHours", "timezone"}


def category_for(ntype: str | None) -> str:
    return TYPE_CATEGORIES.get((ntype or "").lower(), "system")


def get_preferences(user_id: int) -> NotificationPreference:
    """Fetch the user's preferences, creating the all-enabled defaults on first access."""
    pref = NotificationPreference.query.filter_by(user_id=user_id).first()
    if pref is not None:
        return pref
    pref = NotificationPreference(user_id=user_id)
    db.session.add(pref)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        pref = NotificationPreference.query.filter_by(user_id=user_id).one()
    return pref


def _bool(data: dict, key: str) -> bool:
    val = data[key]
    if not isinstance(val, bool):
        raise ValidationError(f"{key} must be a boolean")
    return val


def _categories(val, key: str) -> list:
    # accept {"events": true, ...} (client shape) or ["events", ...]
    if isinstance(val, dict):
        chosen = [c for c, on in val.items() if on]
    elif isinstance(val, (list, tuple)):
        chosen = list(val)
    else:
        raise ValidationError(f"{key} must be an object or a list")
    unknown = set(chosen) - set(CATEGORIES)
    if unknown:
        raise ValidationError(f"{key} has unknown categories: {', '.join(sorted(unknown))}")
    return [c for c in CATEGORIES if c in chosen]


def update_preferences(user_id: int, data: dict) -> NotificationPreference:
    if not isinstance(data, dict):
        raise ValidationError("Body must be a JSON object")
    unknown = set(data) - _FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    pref = get_preferences(user_id)

    if "pushEnabled" in data:
        pref.push_enabled = _bool(data, "pushEnabled")
    if "emailEnabled" in data:
        pref.email_enabled = _bool(data, "emailEnabled")
    if "pushTypes" in data:
        pref.push_types = _categories(data["pushTypes"], "pushTypes")
    if "emailTypes" in data:
        pref.email_types = _categories(data["emailTypes"], "emailTypes")
    if "emailFrequency" in data:
        freq = str(data["emailFrequency"] or "").lower()
        if freq not in EMAIL_FREQUENCIES:
            raise ValidationError("emailFrequency must be one of: immediate, daily, weekly")
        pref.email_frequency = freq
    if "quietHours" in data:
        qh = data["quietHours"]
        if not isinstance(qh, dict):
            raise ValidationError("quietHours must be an object")
        if "enabled" in qh:
            pref.quiet_hours_enabled = _bool(qh, "enabled")
        for key, attr in (("start", "quiet_hours_start"), ("end", "quiet_hours_end")):
            if key in qh:
                val = str(qh[key] or "")
                if not _HHMM.fullmatch(val):
                    raise ValidationError(f"quietHours.{key} must be HH:MM")
                setattr(pref, attr, val)
    if "timezone" in data:
        tz = data["timezone"]
        if tz:
            try:
                ZoneInfo(str(tz))
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError("Unknown timezone") from None
        pref.timezone = tz or None

    db.session.commit()
    current_app.logger.info("[prefs] updated uid=%s fields=%s", user_id, sorted(data))
    return pref


def in_quiet_hours(pref: NotificationPreference, at: datetime | None = None) -> bool:
    """
    True when `at` (default: now) falls inside the user's quiet window, read in
    the user's timezone. Windows with start > end wrap past midnight.
    """
    if not pref.quiet_hours_enabled:
        return False
    start, end = pref.quiet_hours_start, pref.quiet_hours_end
    if start == end:
        return False
    tz = ZoneInfo(pref.timezone or current_app.config.get("APP_TIMEZONE") or "UTC")
    hhmm = (at or now_utc()).astimezone(tz).strftime("%H:%M")
    if start > end:
        return hhmm >= start or hhmm < end
    return start <= hhmm < end


def push_allowed(pref: NotificationPreference, ntype: str) -> bool:
    return bool(pref.push_enabled) and category_for(ntype) in set(pref.push_types or [])


def email_allowed(pref: NotificationPreference, ntype: str) -> bool:
    return (
        bool(pref.email_enabled)
        and pref.email_frequency == "immediate"
        and category_for(ntype) in set(pref.email_types or [])
    )
