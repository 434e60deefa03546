import os
import sys
from contextlib import contextmanager
from pathlib import Path

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.doclife.models import Permission, Role, Tenant, User  # noqa: E402

# (key, name) for every permission the HTTP layer checks.
PERMISSIONS: list[tuple[str, str]] = [
    ("docs.view", "Docs: view"),
    ("docs.create", "Docs: create / new version / promote"),
    ("docs.edit", "Docs: edit drafts, approvers, attachments"),
    ("docs.approve", "Docs: approve or reject"),
    ("docs.release", "Docs: release directly"),
    ("docs.delete", "Docs: delete drafts"),
    ("docs.download", "Docs: download attachments"),
    ("docs.override", "Docs: administrative override"),
    ("doc_types.view", "Document types: view"),
    ("doc_types.manage", "Document types: manage"),
]

# Everything except overrides and type management.
MEMBER_PERMISSIONS = {
    "docs.view",
    "docs.create",
    "docs.edit",
    "docs.approve",
    "docs.release",
    "docs.delete",
    "docs.download",
    "doc_types.view",
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def seed(s: Session, *, tenant_name: str, admin_email: str, admin_password: str) -> User:
    """
    Seed permissions, the admin/member roles, a tenant and its admin user.
    Idempotent; does NOT overwrite an existing admin user's password.
    """

    def ensure_perm(key: str, name: str) -> Permission:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        return p

    def ensure_role(key: str, name: str) -> Role:
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=name)
            s.add(r)
        return r

    perms = {key: ensure_perm(key, name) for key, name in PERMISSIONS}

    role_admin = ensure_role("admin", "Administrator")
    role_member = ensure_role("member", "Member")
    for key, p in perms.items():
        if p not in role_admin.permissions:
            role_admin.permissions.append(p)
        if key in MEMBER_PERMISSIONS and p not in role_member.permissions:
            role_member.permissions.append(p)

    tenant = s.query(Tenant).filter(Tenant.name == tenant_name).one_or_none()
    if not tenant:
        tenant = Tenant(name=tenant_name)
        s.add(tenant)
        s.flush()

    user = s.query(User).filter(User.email == admin_email).one_or_none()
    if not user:
        user = User(
            tenant_id=tenant.id,
            email=admin_email,
            password_hash=generate_password_hash(admin_password),
            is_active=True,
        )
        s.add(user)
    if role_admin not in user.roles:
        user.roles.append(role_admin)
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@doclife.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    tenant_name = (os.environ.get("TENANT_NAME") or "Default").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///doclife.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with _session_scope(db_url) as s:
        seed(s, tenant_name=tenant_name, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Tenant: {tenant_name}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
