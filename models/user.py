# models/user.py
from __future__ import annotations
from db import db
from sqlalchemy.sql import func
from werkzeug.security import generate_password_hash


class User(db.Model):
    __tablename__ = "users"

    id                = db.Column(db.Integer, primary_key=True, autoincrement=True)
    username          = db.Column(db.String(80), nullable=False, unique=True, index=True)
    email             = db.Column(db.String(254), nullable=True, unique=True, index=True)
    first_name        = db.Column(db.String(80), nullable=True)
    last_name         = db.Column(db.String(80), nullable=True)
    role              = db.Column(db.String(32), nullable=False, default="user", index=True)
    password_hash     = db.Column(db.String(255), nullable=False, default="")
    email_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at        = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at        = db.Column(db.DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # ── Helpers ─────────────────────────────────────────────────────────────
    def set_password(self, raw: str) -> None:
        self.password_hash = generate_password_hash(raw)
