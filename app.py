# app.py
from __future__ import annotations

import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import get_config
from db import db, migrate
from services.errors import CoreError

# Models must be imported before migrations/create_all see the metadata
from models.user import User  # noqa: F401
from models.otp_challenge import OtpChallenge  # noqa: F401
from models.notification import Notification  # noqa: F401
from models.push_subscription import PushSubscription  # noqa: F401
from models.notification_preference import NotificationPreference  # noqa: F401

from routes.otp import otp_bp
from routes.notifications import notifications_bp
from routes.push import push_bp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(CoreError)
    def handle_core_error(e: CoreError):
        db.session.rollback()
        if e.status_code >= 500:
            app.logger.warning("[app] %s on %s %s: %s", e.kind, request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify(error="Not Found", path=request.path), 404

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify(error=e.description), e.code
        db.session.rollback()
        app.logger.exception("[app] unhandled error on %s %s", request.method, request.path)
        return jsonify(error="Internal server error"), 500


def _register_cli(app: Flask) -> None:
    @app.cli.command("generate-vapid-keys")
    def generate_vapid_keys_cmd():
        """Print a fresh VAPID key pair for the environment."""
        from utils.vapid import generate_vapid_keys

        private_key, public_key = generate_vapid_keys()
        print(f"VAPID_PUBLIC_KEY={public_key}")
        print(f"VAPID_PRIVATE_KEY={private_key}")


def create_app(config_object=None) -> Flask:
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[arg-type]

    app.config.from_object(config_object or get_config())
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    # browser clients on other origins call /otp and /push directly
    CORS(app, resources={r"/*": {"origins": app.config.get("CORS_ORIGINS", "*")}})
    db.init_app(app)
    migrate.init_app(app, db)

    if not (app.config.get("VAPID_PUBLIC_KEY") and app.config.get("VAPID_PRIVATE_KEY")):
        app.logger.warning("[app] VAPID keys not configured; push notifications disabled")
    if not (app.config.get("SMTP_USER") and app.config.get("SMTP_PASSWORD")):
        app.logger.warning("[app] SMTP credentials missing; OTP and notification emails will be skipped")

    @app.route("/")
    def health_check():
        return jsonify(status="ok", app=app.config.get("APP_NAME")), 200

    _register_error_handlers(app)
    _register_cli(app)

    app.register_blueprint(otp_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(push_bp)
    return app


if __name__ == "__main__":
    create_app().run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        debug=bool(os.environ.get("FLASK_DEBUG", "")),
    )
