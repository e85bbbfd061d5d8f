def test_health_ok(app):
    client = app.test_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_me(app, users):
    client = app.test_client()

    # Anonymous is rejected with a JSON 401
    r = client.get("/api/documents?status=pending")
    assert r.status_code == 401
    assert r.json["error"] == "unauthorized"

    r = client.post("/auth/login", json={"username": "casey", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"username": "casey", "password": "pw-for-tests"})
    assert r.status_code == 200
    assert r.json["role"] == "creator"

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["id"] == users["creator"]

    r = client.get("/api/documents?status=pending")
    assert r.status_code == 200
    assert r.json == []

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_login_requires_credentials(app, users):
    r = app.test_client().post("/auth/login", json={"username": "casey"})
    assert r.status_code == 400


def test_role_without_permission_is_forbidden(login):
    client = login("recipient")
    r = client.post("/api/documents/1/approve", json={"approval_remarks": "ok"})
    assert r.status_code == 403
    assert r.json["error"] == "access_denied"
    assert r.json["context"]["permission"] == "docs.approve"


def test_login_is_rate_limited(app, users):
    client = app.test_client()
    for _ in range(5):
        assert client.post("/auth/login", json={"username": "casey", "password": "nope"}).status_code == 401
    r = client.post("/auth/login", json={"username": "casey", "password": "pw-for-tests"})
    assert r.status_code == 429
