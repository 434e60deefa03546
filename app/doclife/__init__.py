import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv

from app.doclife.config import load_config
from app.doclife.db import init_db, teardown_db_session
from app.doclife.errors import DocLifeError
from app.doclife.routes import bp as routes_bp
from app.doclife.auth import bp as auth_bp, load_current_user
from app.doclife.modules.document_control.admin import bp as documents_bp
from app.doclife.modules.document_types.admin import bp as document_types_bp

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app.config.get("LOG_LEVEL") or "INFO")

    from app.doclife.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout are reachable without a token.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"ok": False, "error": {"code": "csrf_failed", "message": "CSRF token missing or invalid."}}), 400

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
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

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
    app.register_blueprint(documents_bp, url_prefix="/api")
    app.register_blueprint(document_types_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(DocLifeError)
    def _err_doclife(e: DocLifeError):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.warning(
            "%s on %s %s: %s (request_id=%s)",
            e.code,
            request.method,
            request.path,
            e.message,
            getattr(g, "request_id", None),
        )
        return jsonify({"ok": False, "error": e.to_dict()}), e.http_status

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"ok": False, "error": {"code": "internal_error", "message": "Internal server error.", "request_id": rid}}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"ok": False, "error": {"code": "forbidden", "message": "Forbidden.", "missing_permission": missing}}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"ok": False, "error": {"code": "not_found", "message": "Not found."}}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return jsonify({"ok": False, "error": {"code": "too_large", "message": f"File too large. Maximum size is {limit_mb}MB."}}), 413

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
