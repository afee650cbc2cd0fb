# auth_guard.py
from __future__ import annotations

import jwt
from functools import wraps
from datetime import datetime, timezone, timedelta

from flask import request, jsonify, g, current_app

from db import db
from models.user import User

__all__ = ["require_role", "authenticate", "issue_token"]


def issue_token(user: User, ttl_hours: int | None = None) -> str:
    hours = ttl_hours if ttl_hours is not None else int(current_app.config.get("JWT_TTL_HOURS", 24))
    return jwt.encode(
        {
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
        },
        current_app.config["SECRET_KEY"],
        algorithm="HS256",
    )


def authenticate():
    """
    Resolve the Bearer JWT on the current request.
    Returns (user, None) on success or (None, (response, status)) to return as is.
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None, (jsonify(error="Missing token"), 401)

    token = auth.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None, (jsonify(error="Token has expired"), 401)
    except jwt.InvalidTokenError:
        return None, (jsonify(error="Invalid token"), 401)

    uid = payload.get("user_id")
    user = db.session.get(User, uid) if uid is not None else None
    if not user:
        return None, (jsonify(error="User not found"), 401)
    return user, None


def require_role(*roles):
    """
    Usage:
      @require_role()                    -> any authenticated user
      @require_role("admin")             -> only admins
      @require_role("organizer", "staff") -> organizer or staff (or admin)

    The authenticated user is stashed on `g.user`; handlers pass `g.user.id`
    explicitly into the service layer.
    """
    # Support passing a single list/tuple as well
    if len(roles) == 1 and isinstance(roles[0], (list, tuple, set)):
        roles = tuple(roles[0])
    allowed = {str(r).lower() for r in roles if r}

    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            user, denied = authenticate()
            if denied:
                return denied

            role = (user.role or "").lower()
            g.user = user  # type: ignore[attr-defined]
            g.role = role  # type: ignore[attr-defined]

            current_app.logger.info(
                "[guard] %s %s uid=%s role=%s ip=%s",
                request.method, request.path, user.id, role, request.remote_addr,
            )

            # Role check (admin bypass)
            if allowed and role not in allowed and role != "admin":
                return jsonify(error="Insufficient permissions"), 403

            return f(*args, **kwargs)

        return wrapped

    return decorator
