from __future__ import annotations

from typing import Protocol

from app.doclife.errors import NotFound, PermissionDenied, ValidationError
from app.doclife.models import User
from app.doclife.rbac import is_tenant_admin


class _TenantScoped(Protocol):
    tenant_id: int


def clean_text(value: str | None, *, max_len: int | None = None, field: str = "value") -> str | None:
    """Strip form/JSON input; empty becomes None."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if max_len is not None and len(value) > max_len:
        raise ValidationError(f"{field} must be {max_len} characters or less.", details={"field": field})
    return value


def require_text(value: str | None, *, field: str, max_len: int | None = None) -> str:
    cleaned = clean_text(value, max_len=max_len, field=field)
    if not cleaned:
        raise ValidationError(f"{field} is required.", details={"field": field})
    return cleaned


def ensure_same_tenant(user: User, row: _TenantScoped | None, what: str) -> None:
    # Rows of another tenant are reported as missing so ids do not leak across tenants.
    if row is None or row.tenant_id != user.tenant_id:
        raise NotFound(f"{what} not found.")


def ensure_admin(user: User, action: str) -> None:
    if not is_tenant_admin(user):
        raise PermissionDenied(f"Only tenant administrators can {action}.")


def ensure_creator_or_admin(user: User, created_by_user_id: int | None, action: str) -> None:
    if user.id == created_by_user_id or is_tenant_admin(user):
        return
    raise PermissionDenied(f"Only the document creator or a tenant administrator can {action}.")
