# models/push_subscription.py
from __future__ import annotations
from db import db


class PushSubscription(db.Model):
    __tablename__ = "push_subscriptions"
    __table_args__ = (
        db.Index("ix_push_subscriptions_user_revoked", "user_id", "revoked_at"),
    )

    id          = db.Column(db.Integer, primary_key=True)
    user_id     = db.Column(db.Integer,
                            db.ForeignKey("users.id", ondelete="CASCADE", onupdate="CASCADE"),
                            nullable=False, index=True)
    endpoint    = db.Column(db.String(768), unique=True, nullable=False)
    p256dh      = db.Column(db.String(255), nullable=False)
    auth        = db.Column(db.String(255), nullable=False)
    device_info = db.Column(db.String(255), nullable=True)
    user_agent  = db.Column(db.String(500), nullable=True)
    created_at  = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at  = db.Column(db.DateTime(timezone=True), nullable=False)
    revoked_at  = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def active(self) -> bool:
        return self.revoked_at is None

    def subscription_info(self) -> dict:
        """Shape expected by pywebpush."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "endpoint": self.endpoint,
            "deviceInfo": self.device_info,
            "active": self.active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
