from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.doclife import create_app
from app.doclife.db import session_scope
from app.doclife.models import Base, Role, User
from app.doclife.modules.document_types.service import create_document_type
from scripts.init_db import seed


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("LABEL_OVERFLOW", "ALLOCATE_MAX_RETRIES", "S3_ENDPOINT", "S3_BUCKET"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def unit(app):
    """Open one unit of work (app context + session, committed on exit)."""

    @contextmanager
    def _unit():
        with app.app_context(), session_scope(app) as s:
            yield s

    return _unit


def _add_member(s, tenant_id: int, email: str) -> User:
    member = s.query(Role).filter(Role.key == "member").one()
    u = User(tenant_id=tenant_id, email=email, password_hash=generate_password_hash("pw"), is_active=True)
    u.roles.append(member)
    s.add(u)
    s.flush()
    return u


@pytest.fixture()
def ids(unit):
    """Two tenants. Acme has an admin, an author and two approvers; Globex has its own admin."""
    with unit() as s:
        admin = seed(s, tenant_name="Acme", admin_email="admin@acme.test", admin_password="pw")
        other_admin = seed(s, tenant_name="Globex", admin_email="admin@globex.test", admin_password="pw")
        s.flush()
        author = _add_member(s, admin.tenant_id, "author@acme.test")
        a1 = _add_member(s, admin.tenant_id, "qa@acme.test")
        a2 = _add_member(s, admin.tenant_id, "eng@acme.test")
        outsider = _add_member(s, other_admin.tenant_id, "eng@globex.test")
        form = create_document_type(s, admin, name="Forms", prefix="FORM")
        out = SimpleNamespace(
            tenant=admin.tenant_id,
            other_tenant=other_admin.tenant_id,
            admin=admin.id,
            author=author.id,
            a1=a1.id,
            a2=a2.id,
            other_admin=other_admin.id,
            outsider=outsider.id,
            form=form.id,
        )
    return out


@pytest.fixture()
def client(app, ids):
    return app.test_client()


@pytest.fixture()
def login(client):
    """Log in as `email` and return headers carrying the CSRF token."""

    def _login(email: str, password: str = "pw") -> dict:
        r = client.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        return {"X-CSRF-Token": r.json["csrf_token"]}

    return _login
