# routes/push.py
from flask import Blueprint, request, jsonify, g, current_app

from auth_guard import require_role
from services.errors import NotConfigured, ValidationError
from services.preferences import get_preferences, update_preferences
from services.push_registry import get_public_key, subscribe, unsubscribe

push_bp = Blueprint("push", __name__, url_prefix="/push")


@push_bp.route("/public-key", methods=["GET"])
def public_key():
    # push is optional: "not configured" is a normal answer, never an error
    try:
        key = get_public_key()
    except NotConfigured:
        return jsonify(
            publicKey=None,
            configured=False,
            message="Push notifications not configured. This is optional and does not affect other features.",
        ), 200
    return jsonify(publicKey=key, configured=True), 200


@push_bp.route("/subscribe", methods=["POST"])
@require_role()
def push_subscribe():
    data = request.get_json(silent=True) or {}
    device_info = data.get("deviceInfo")
    if device_info is not None and not isinstance(device_info, str):
        raise ValidationError("deviceInfo must be a string")

    sub = subscribe(
        g.user.id,
        data.get("endpoint"),
        data.get("keys"),
        device_info=device_info,
        user_agent=(data.get("userAgent") or request.headers.get("User-Agent") or "")[:500] or None,
    )
    current_app.logger.info("/push/subscribe uid=%s sub=%s", g.user.id, sub.id)
    return jsonify(success=True, message="Subscribed to push notifications", subscription=sub.to_dict()), 200


@push_bp.route("/unsubscribe", methods=["POST"])
@require_role()
def push_unsubscribe():
    data = request.get_json(silent=True) or {}
    revoked = unsubscribe(g.user.id, data.get("endpoint"))
    return jsonify(success=True, message="Unsubscribed from push notifications", revoked=revoked), 200


@push_bp.route("/preferences", methods=["GET"])
@require_role()
def preferences_get():
    return jsonify(preferences=get_preferences(g.user.id).to_dict()), 200


@push_bp.route("/preferences", methods=["PUT"])
@require_role()
def preferences_put():
    data = request.get_json(silent=True)
    pref = update_preferences(g.user.id, data)
    return jsonify(success=True, message="Notification preferences updated", preferences=pref.to_dict()), 200
