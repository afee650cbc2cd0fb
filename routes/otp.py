from flask import Blueprint, request, jsonify

from auth_guard import authenticate
from services.otp import request_challenge, resend_challenge, verify_challenge

otp_bp = Blueprint("otp", __name__, url_prefix="/otp")


@otp_bp.after_request
def add_no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _require_own_address(data: dict):
    """
    change_password codes go only to the signed-in user's own address.
    Returns an error response to send back, or None to carry on.
    """
    if str(data.get("purpose") or "").strip().lower() != "change_password":
        return None
    user, denied = authenticate()
    if denied:
        return denied
    if (user.email or "").lower() != str(data.get("subjectKey") or "").strip().lower():
        return jsonify(error="Insufficient permissions"), 403
    return None


@otp_bp.route("/request", methods=["POST"])
def otp_request():
    """
    Body: { "subjectKey": "a@x.com", "purpose": "verify_email" }
    Answers as soon as the challenge is stored; the email goes out in the background.
    Repeats inside the resend cooldown get 429 like /resend.
    """
    data = request.get_json(silent=True) or {}
    denied = _require_own_address(data)
    if denied:
        return denied
    request_challenge(data.get("subjectKey"), data.get("purpose"))
    return jsonify(success=True, message="Verification code sent"), 200


@otp_bp.route("/verify", methods=["POST"])
def otp_verify():
    """
    Body: { "subjectKey": "...", "purpose"?: "...", "code": "123456" }
    Failures come back through the CoreError handler with `actionRequired`
    (none | resend_required | code_regenerated) and `remainingAttempts`.
    """
    data = request.get_json(silent=True) or {}
    verify_challenge(data.get("subjectKey"), data.get("purpose"), str(data.get("code") or ""))
    return jsonify(success=True, actionRequired="none"), 200


@otp_bp.route("/resend", methods=["POST"])
def otp_resend():
    data = request.get_json(silent=True) or {}
    denied = _require_own_address(data)
    if denied:
        return denied
    resend_challenge(data.get("subjectKey"), data.get("purpose"))
    return jsonify(success=True, message="Verification code sent"), 200
