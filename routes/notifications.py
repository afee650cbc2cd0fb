# routes/notifications.py
from flask import Blueprint, request, jsonify, g

from auth_guard import require_role
from services.errors import ValidationError
from services.notify import (
    DEFAULT_LIMIT,
    create_notification,
    delete_notification,
    get_notification,
    list_notifications,
    mark_all_read,
    mark_read,
)

notifications_bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@notifications_bp.route("", methods=["GET"])
@require_role()
def list_mine():
    raw_limit = request.args.get("limit", str(DEFAULT_LIMIT))
    try:
        limit = int(raw_limit)
    except ValueError:
        raise ValidationError("limit must be an integer") from None

    page = list_notifications(g.user.id, limit=limit, cursor=request.args.get("cursor") or None)
    return jsonify(
        notifications=[n.to_dict() for n in page["notifications"]],
        nextCursor=page["next_cursor"],
        unreadCount=page["unread_count"],
    ), 200


@notifications_bp.route("/<notification_id>", methods=["GET"])
@require_role()
def get_one(notification_id: str):
    return jsonify(get_notification(g.user.id, notification_id).to_dict()), 200


@notifications_bp.route("/<notification_id>/read", methods=["POST"])
@require_role()
def read_one(notification_id: str):
    changed = mark_read(g.user.id, notification_id)
    return jsonify(success=True, changed=changed), 200


@notifications_bp.route("/mark-all-read", methods=["POST"])
@require_role()
def read_all():
    changed = mark_all_read(g.user.id)
    return jsonify(success=True, changed=changed), 200


@notifications_bp.route("/<notification_id>", methods=["DELETE"])
@require_role()
def delete_one(notification_id: str):
    # deleting something already gone is still a success (double-tap / race)
    deleted = delete_notification(g.user.id, notification_id)
    return jsonify(success=True, deleted=deleted), 200


@notifications_bp.route("", methods=["POST"])
@require_role()
def create_mine():
    """
    Body: { "title"?, "message"?, "type"?, "payload"?, "sourceEvent"? }
    One of title/message is required. A repeated sourceEvent returns the
    existing notification with 200 instead of 201.
    """
    data = request.get_json(silent=True) or {}
    title = data.get("title")
    message = data.get("message")
    for key, val in (("title", title), ("message", message), ("type", data.get("type")),
                     ("sourceEvent", data.get("sourceEvent"))):
        if val is not None and not isinstance(val, str):
            raise ValidationError(f"{key} must be a string")
    if not (title or "").strip() and not (message or "").strip():
        raise ValidationError("Title or message is required")

    row, created = create_notification(
        g.user.id,
        data.get("type") or "system",
        data.get("payload") or {},
        source_event=data.get("sourceEvent"),
        title=title or message,
        message=message or title,
    )
    return jsonify(success=True, created=created, notification=row.to_dict()), (201 if created else 200)
