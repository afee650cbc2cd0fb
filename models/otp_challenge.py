# models/otp_challenge.py
from __future__ import annotations
from db import db


class OtpChallenge(db.Model):
    """
    One row per subject key ("<purpose>:<identity>"). Issuing a new code
    rewrites the row in place, so at most one live code exists per subject.
    """
    __tablename__ = "otp_challenges"

    id                  = db.Column(db.Integer, primary_key=True, autoincrement=True)
    subject_key         = db.Column(db.String(300), nullable=False, unique=True)
    identity            = db.Column(db.String(254), nullable=False, index=True)  # email
    purpose             = db.Column(db.String(32), nullable=False)               # 'verify_email'
    code_hash           = db.Column(db.String(64), nullable=False)               # sha256 hex string
    issued_at           = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at          = db.Column(db.DateTime(timezone=True), nullable=False)
    resend_available_at = db.Column(db.DateTime(timezone=True), nullable=False)
    attempts_remaining  = db.Column(db.Integer, nullable=False, default=5)
    consumed_at         = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None
