from __future__ import annotations

import atexit
import threading
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_jwt_extended import JWTManager

from .admin import admin_bp
from .anonymous import anonymous_bp
from .auth import auth_bp
from .common.errors import ForbiddenError, error_payload, register_error_handlers
from .common.feature_flags import resolve_feature_flags
from .common.netutil import client_ip
from .common.throttle import install_throttles, throttle_request
from .config import Config, CoreSettings
from .download import download_bp
from .extensions import cors, db, jwt, migrate
from .files import files_bp
from .folders import folders_bp
from .janitor import start_janitor
from .models import IpBan
from .quota import users_bp
from .scanning.hook import ScanHook
from .shares import shares_bp
from .storage import StorageEngine
from .storage.crypto import load_metadata_key


load_dotenv()


def _register_jwt_handlers(jwt_manager: JWTManager) -> None:
    @jwt_manager.unauthorized_loader
    def unauthorized(reason: str):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("UNAUTHENTICATED", "Missing or invalid authentication token.", {"reason": reason})), 401

    @jwt_manager.invalid_token_loader
    def invalid_token(reason: str):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("INVALID_TOKEN", "Invalid token.", {"reason": reason})), 401

    @jwt_manager.expired_token_loader
    def expired_token(jwt_header, jwt_payload):  # type: ignore[no-untyped-def]
        return jsonify(error_payload("TOKEN_EXPIRED", "Token has expired.")), 401


def _reject_banned_ip() -> None:
    ip_address = client_ip()
    if not ip_address:
        return
    bans = IpBan.query.filter_by(ip_address=ip_address, is_active=True).all()
    if any(ban.is_effective() for ban in bans):
        raise ForbiddenError("Access from this address is blocked.", code="IP_BANNED")


def shutdown_background(app: Flask, wait: bool = True) -> None:
    """Stop the janitor and drain the scan hook of ``app``."""
    janitor = app.extensions.get("relayum.janitor")
    if janitor is not None:
        janitor.stop()
    app.extensions["relayum.scan_hook"].shutdown(wait=wait)


def create_app(config_override: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_override:
        app.config.update(config_override)

    settings = CoreSettings.from_mapping(app.config, load_metadata_key(app.config.get("METADATA_ENCRYPTION_KEY")))
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    app.config["FEATURE_FLAGS"] = resolve_feature_flags(app.config)

    app.extensions["relayum.settings"] = settings
    app.extensions["relayum.storage"] = StorageEngine.from_settings(settings)
    app.extensions["relayum.upload_gate"] = threading.BoundedSemaphore(settings.upload_concurrency)
    app.extensions["relayum.scan_hook"] = ScanHook(
        app,
        max_retries=settings.scan_max_retries,
        synchronous=settings.scan_synchronous,
    )
    install_throttles(app)

    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    _register_jwt_handlers(jwt)
    cors.init_app(app, resources={r"/*": {"origins": app.config["FRONTEND_ORIGINS"]}})

    app.register_blueprint(auth_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(folders_bp)
    app.register_blueprint(shares_bp)
    app.register_blueprint(download_bp)
    app.register_blueprint(anonymous_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(admin_bp)

    app.before_request(_reject_banned_ip)
    app.before_request(throttle_request)

    @app.get("/health")
    def healthcheck():
        return {"status": "ok"}

    register_error_handlers(app)

    app.extensions["relayum.janitor"] = start_janitor(app)
    atexit.register(shutdown_background, app, False)

    return app
