# models/notification.py
from __future__ import annotations
import uuid
from db import db


def _new_id() -> str:
    return uuid.uuid4().hex


class Notification(db.Model):
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id         = db.Column(db.String(32), primary_key=True, default=_new_id)
    user_id    = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type       = db.Column(db.String(64), nullable=False, default="system")
    title      = db.Column(db.String(200), nullable=False, default="Update")
    message    = db.Column(db.Text, nullable=False, default="")
    payload    = db.Column(db.JSON, nullable=False, default=dict)
    # "<user_id>:<type>:<source_event>" when the caller names the source event
    dedupe_key = db.Column(db.String(255), nullable=True, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    read_at    = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def unread(self) -> bool:
        return self.read_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "payload": self.payload or {},
            "read": not self.unread,
            "unread": self.unread,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "readAt": self.read_at.isoformat() if self.read_at else None,
        }
