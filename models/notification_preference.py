# models/notification_preference.py
from __future__ import annotations
from db import db

CATEGORIES = ("events", "volunteers", "donations", "social", "system")

DEFAULT_PUSH_TYPES  = list(CATEGORIES)
DEFAULT_EMAIL_TYPES = ["events", "volunteers", "donations", "system"]
EMAIL_FREQUENCIES   = ("immediate", "daily", "weekly")


class NotificationPreference(db.Model):
    __tablename__ = "notification_preferences"

    id                  = db.Column(db.Integer, primary_key=True)
    user_id             = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
                                    nullable=False, unique=True)
    push_enabled        = db.Column(db.Boolean, nullable=False, default=True)
    push_types          = db.Column(db.JSON, nullable=False, default=lambda: list(DEFAULT_PUSH_TYPES))
    email_enabled       = db.Column(db.Boolean, nullable=False, default=True)
    email_types         = db.Column(db.JSON, nullable=False, default=lambda: list(DEFAULT_EMAIL_TYPES))
    email_frequency     = db.Column(db.String(16), nullable=False, default="immediate")
    quiet_hours_enabled = db.Column(db.Boolean, nullable=False, default=False)
    quiet_hours_start   = db.Column(db.String(5), nullable=False, default="22:00")
    quiet_hours_end     = db.Column(db.String(5), nullable=False, default="08:00")
    timezone            = db.Column(db.String(64), nullable=True)  # None → APP_TIMEZONE

    def to_dict(self) -> dict:
        push_types = set(self.push_types or [])
        email_types = set(self.email_types or [])
        return {
            "pushEnabled": bool(self.push_enabled),
            "pushTypes": {c: c in push_types for c in CATEGORIES},
            "emailEnabled": bool(self.email_enabled),
            "emailTypes": {c: c in email_types for c in CATEGORIES},
            "emailFrequency": self.email_frequency,
            "quietHours": {
                "enabled": bool(self.quiet_hours_enabled),
                "start": self.quiet_hours_start,
                "end": self.quiet_hours_end,
            },
            "timezone": self.timezone,
        }
