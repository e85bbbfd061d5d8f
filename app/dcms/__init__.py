import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

from app.dcms.config import load_config
from app.dcms.db import init_db, teardown_db_session
from app.dcms.errors import DomainError
from app.dcms.routes import bp as routes_bp
from app.dcms.auth import bp as auth_bp, load_current_user
from app.dcms.admin import bp as admin_bp
from app.dcms.modules.document_control.admin import bp as doc_control_bp
from app.dcms.modules.document_control.ledger import ControlCopyLedger
from app.dcms.modules.document_control.rendering import renderer_from_config

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.extensions["dcms_renderer"] = renderer_from_config(app.config)
    app.extensions["dcms_ledger"] = ControlCopyLedger(max_attempts=int(app.config["COPY_NUMBER_MAX_ATTEMPTS"]))

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/api")
    app.register_blueprint(doc_control_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(DomainError)
    def _domain_error(e: DomainError):
        log = app.logger.error if e.http_status >= 500 else app.logger.info
        log(
            "%s on %s %s: %s (request_id=%s)",
            e.kind,
            request.method,
            request.path,
            e.message,
            getattr(g, "request_id", None),
        )
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return jsonify({"error": "unauthorized", "message": "Login required"}), 401

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "access_denied", "message": "Forbidden", "context": {"permission": missing}}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found"}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "validation", "message": "Upload too large"}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal", "message": "Internal server error"}), 500

    logger.info("create_app() complete; app ready to serve")
    return app
