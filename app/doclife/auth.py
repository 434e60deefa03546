from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from app.doclife.audit import record_event
from app.doclife.db import db_session
from app.doclife.models import User
from app.doclife.rbac import is_tenant_admin
from app.doclife.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None
        return

    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def _user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "tenant_id": user.tenant_id,
        "is_admin": is_tenant_admin(user),
    }


@bp.post("/login")
def login():
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"ok": False, "error": {"code": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            tenant_id=user.tenant_id if user else None,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        current_app.logger.info("Login failed for %s (request_id=%s)", email, getattr(g, "request_id", None))
        return jsonify({"ok": False, "error": {"code": "invalid_credentials", "message": "Invalid credentials."}}), 401

    session["user_id"] = user.id
    _login_attempts[ip].clear()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({"ok": True, "user": _user_payload(user), "csrf_token": ensure_csrf_token()})


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"ok": False, "error": {"code": "login_required", "message": "Login required."}}), 401
    return jsonify({"ok": True, "user": _user_payload(user), "csrf_token": ensure_csrf_token()})
