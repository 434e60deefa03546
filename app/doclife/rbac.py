from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.doclife.models import User

ADMIN_ROLE_KEY = "admin"


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def is_tenant_admin(user: User | None) -> bool:
    if not user or not user.is_active:
        return False
    return any(role.key == ADMIN_ROLE_KEY for role in user.roles)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401 so API clients know to log in.
            if not user or not user.is_active:
                return jsonify({"ok": False, "error": {"code": "login_required", "message": "Login required."}}), 401
            # Authenticated but unauthorized -> 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
