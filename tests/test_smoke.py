def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_api_requires_login(client):
    r = client.get("/api/documents")
    assert r.status_code == 401
    assert r.json["error"]["code"] == "login_required"


def test_login_and_me(client, login):
    headers = login("admin@acme.test")
    assert headers["X-CSRF-Token"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@acme.test"
    assert r.json["user"]["is_admin"] is True
    assert r.json["csrf_token"] == headers["X-CSRF-Token"]


def test_bad_password_is_rejected(client):
    r = client.post("/auth/login", json={"email": "admin@acme.test", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"]["code"] == "invalid_credentials"
    assert client.get("/auth/me").status_code == 401


def test_writes_need_the_csrf_token(client, login, ids):
    login("admin@acme.test")
    r = client.post("/api/documents", json={"document_type_id": ids.form, "title": "No token"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "csrf_failed"


def test_logout(client, login):
    headers = login("admin@acme.test")
    assert client.post("/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/documents").status_code == 401
