# services/otp.py
from __future__ import annotations

import hashlib
import math
import re
import secrets
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from db import db
from models.otp_challenge import OtpChallenge
from models.user import User
from services.errors import (
    Exhausted,
    Expired,
    IncorrectCode,
    NotFound,
    RateLimited,
    ValidationError,
)
from utils.mail import mask_email, send_email_async
from utils.timeutil import as_utc, now_utc

__all__ = [
    "PURPOSES",
    "ACCOUNT_PURPOSES",
    "subject_key",
    "request_challenge",
    "verify_challenge",
    "resend_challenge",
]

PURPOSES = {"verify_email", "change_password", "reset_password"}
DEFAULT_PURPOSE = "verify_email"
# codes for these purposes are only sent to registered users
ACCOUNT_PURPOSES = {"change_password", "reset_password"}

_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
# a lost compare-and-set re-reads the row; more losses than this means heavy contention
_CAS_RETRIES = 5

_EMAIL_COPY = {
    "verify_email":    ("Verify your email", "Your verification code"),
    "change_password": ("Confirm your password change", "Your password change code"),
    "reset_password":  ("Reset your password", "Your password reset code"),
}


def _cfg(name: str) -> int:
    return int(current_app.config[name])


def _normalize(identity: str | None, purpose: str | None) -> tuple[str, str]:
    ident = (identity or "").strip().lower()
    purp = (purpose or DEFAULT_PURPOSE).strip().lower()
    if not ident:
        raise ValidationError("subjectKey is required")
    if not _EMAIL_RE.fullmatch(ident):
        raise ValidationError("subjectKey must be an email address")
    if purp not in PURPOSES:
        raise ValidationError("Invalid purpose")
    return ident, purp


def subject_key(identity: str, purpose: str) -> str:
    return f"{purpose}:{identity}"


def _gen_otp_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def _hash_code(code: str) -> str:
    return hashlib.sha256((current_app.config["OTP_PEPPER"] + code).encode("utf-8")).hexdigest()


def _load(key: str) -> OtpChallenge | None:
    return (
        OtpChallenge.query
        .filter_by(subject_key=key)
        .populate_existing()
        .first()
    )


def _fresh_fields(now: datetime, old_hash: str | None) -> tuple[dict, str]:
    """Column values for a brand-new code; never reuses the code behind `old_hash`."""
    code = _gen_otp_code()
    while old_hash is not None and secrets.compare_digest(old_hash, _hash_code(code)):
        code = _gen_otp_code()
    fields = dict(
        code_hash=_hash_code(code),
        issued_at=now,
        expires_at=now + timedelta(seconds=_cfg("OTP_TTL_SECONDS")),
        resend_available_at=now + timedelta(seconds=_cfg("OTP_RESEND_COOLDOWN_SEC")),
        attempts_remaining=_cfg("OTP_MAX_ATTEMPTS"),
        consumed_at=None,
    )
    return fields, code


def _issue(identity: str, purpose: str) -> tuple[OtpChallenge, str]:
    """
    Write a fresh code for the subject, replacing whatever was there.
    The prior hash is overwritten in the same statement, so the old code stops
    validating the moment this commits.
    """
    key = subject_key(identity, purpose)
    now = now_utc()
    row = _load(key)
    fields, code = _fresh_fields(now, row.code_hash if row is not None else None)

    if row is None:
        try:
            row = OtpChallenge(subject_key=key, identity=identity, purpose=purpose, **fields)
            db.session.add(row)
            db.session.commit()
            return row, code
        except IntegrityError:
            # a concurrent request created the row first; take it over below
            db.session.rollback()
            row = _load(key)

    db.session.execute(
        update(OtpChallenge)
        .where(OtpChallenge.id == row.id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return row, code


def _email_code(identity: str, purpose: str, code: str) -> None:
    heading, subject = _EMAIL_COPY[purpose]
    minutes = max(1, _cfg("OTP_TTL_SECONDS") // 60)
    html = f"""
      <div style="font-family:system-ui,Segoe UI,Roboto,Arial">
        <h2>{heading}</h2>
        <p>Your one-time code is:</p>
        <div style="font-size:24px;font-weight:700;letter-spacing:3px">{code}</div>
        <p>This code expires in {minutes} minutes.</p>
      </div>
    """
    # async: the caller's response depends only on the committed challenge
    send_email_async(to=identity, subject=subject, html=html, text=f"Your code is {code}")


def _issue_and_send(identity: str, purpose: str) -> OtpChallenge:
    row, code = _issue(identity, purpose)
    current_app.logger.info(
        "[otp] issued purpose=%s to=%s expires_at=%s",
        purpose, mask_email(identity), row.expires_at,
    )
    _email_code(identity, purpose, code)
    return row


def _check_cooldown(row: OtpChallenge | None, now: datetime, live_only: bool) -> None:
    if row is None:
        return
    if live_only and (row.is_consumed or now > as_utc(row.expires_at)):
        return
    wait = (as_utc(row.resend_available_at) - now).total_seconds()
    if wait > 0:
        raise RateLimited(retry_after=math.ceil(wait))


def _require_account(identity: str, purpose: str) -> None:
    if purpose in ACCOUNT_PURPOSES and User.query.filter_by(email=identity).first() is None:
        raise NotFound("No account with that email")


def request_challenge(identity: str, purpose: str | None = None) -> OtpChallenge:
    """
    Issue a new code for (identity, purpose), superseding any earlier one.
    While an unconsumed, unexpired code exists the resend cooldown applies here
    too, so a caller cannot flood an inbox or keep invalidating someone's code.
    """
    identity, purpose = _normalize(identity, purpose)
    _require_account(identity, purpose)
    _check_cooldown(_load(subject_key(identity, purpose)), now_utc(), live_only=True)
    return _issue_and_send(identity, purpose)


def resend_challenge(identity: str, purpose: str | None = None) -> OtpChallenge:
    """
    Same as request_challenge, but refused with RateLimited until the stored
    resend_available_at has passed. The existing challenge is left untouched then.
    """
    identity, purpose = _normalize(identity, purpose)
    _require_account(identity, purpose)
    _check_cooldown(_load(subject_key(identity, purpose)), now_utc(), live_only=False)
    return _issue_and_send(identity, purpose)


def _on_verified(identity: str, purpose: str, when: datetime) -> None:
    if purpose != "verify_email":
        return
    user = User.query.filter_by(email=identity).first()
    if user is not None and user.email_verified_at is None:
        user.email_verified_at = when


def _cas(row_id: int, seen_hash: str, seen_attempts: int, **values) -> bool:
    """UPDATE the challenge only if nobody changed it since we read it."""
    res = db.session.execute(
        update(OtpChallenge)
        .where(
            OtpChallenge.id == row_id,
            OtpChallenge.code_hash == seen_hash,
            OtpChallenge.attempts_remaining == seen_attempts,
            OtpChallenge.consumed_at.is_(None),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.session.rollback()
        return False
    return True


def verify_challenge(identity: str, purpose: str | None, code: str | None) -> OtpChallenge:
    """
    Check `code` against the live challenge.

    Order matters: missing/consumed → NotFound, then expiry (even for the right
    code) → Expired, then the comparison. Wrong codes decrement the attempt
    budget with a compare-and-set. The decrement that would reach zero instead
    rewrites the challenge with a fresh code in that same UPDATE, so the old
    code is dead the moment it commits, then mails the new code and raises
    Exhausted.
    """
    identity, purpose = _normalize(identity, purpose)
    code = (code or "").strip()
    if not code:
        raise ValidationError("code is required")

    key = subject_key(identity, purpose)
    submitted = _hash_code(code)

    for _ in range(_CAS_RETRIES):
        row = _load(key)
        if row is None or row.is_consumed:
            err = NotFound("No pending code. Please request a new one.")
            err.action_required = "resend_required"
            raise err

        now = now_utc()
        if now > as_utc(row.expires_at):
            raise Expired()

        seen_hash = row.code_hash
        seen_attempts = row.attempts_remaining

        if seen_attempts > 0 and secrets.compare_digest(seen_hash, submitted):
            if not _cas(row.id, seen_hash, seen_attempts, consumed_at=now):
                continue
            _on_verified(identity, purpose, now)
            db.session.commit()
            current_app.logger.info("[otp] verified purpose=%s to=%s", purpose, mask_email(identity))
            return row

        remaining = seen_attempts - 1
        if remaining > 0:
            if not _cas(row.id, seen_hash, seen_attempts, attempts_remaining=remaining):
                continue
            db.session.commit()
            current_app.logger.info(
                "[otp] incorrect code purpose=%s to=%s remaining=%s",
                purpose, mask_email(identity), remaining,
            )
            raise IncorrectCode(remaining_attempts=remaining)

        fields, new_code = _fresh_fields(now, seen_hash)
        if not _cas(row.id, seen_hash, seen_attempts, **fields):
            continue
        db.session.commit()
        current_app.logger.warning(
            "[otp] attempts exhausted purpose=%s to=%s; regenerated",
            purpose, mask_email(identity),
        )
        _email_code(identity, purpose, new_code)
        raise Exhausted(new_code_sent=True)

    raise RateLimited(retry_after=1, message="Too many concurrent attempts. Try again.")
