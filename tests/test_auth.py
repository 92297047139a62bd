# tests/test_auth.py

import time

import pytest
from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

import config
from auth import decode_session_token, issue_session_token
from extensions import db
from models import User

GOOGLE_CLAIMS = {
    "sub": "google-sub-123",
    "email": "ana@example.com",
    "email_verified": True,
    "name": "Ana Novak",
    "given_name": "Ana",
    "family_name": "Novak",
    "picture": "https://example.com/ana.png",
}


@pytest.fixture
def google_verifies(monkeypatch):
    """Replace Google verification with a stub returning fixed claims."""
    seen = []

    def fake_verify(id_token):
        seen.append(id_token)
        return dict(GOOGLE_CLAIMS)

    monkeypatch.setattr("app.verify_google_id_token", fake_verify)
    return seen


def expired_token(user_id):
    now = int(time.time())
    payload = {"userId": user_id, "iat": now - 7200, "exp": now - 3600}
    return jwt.encode({"alg": "HS256"}, payload, OctKey.import_key(config.JWT_SECRET))


def test_first_google_login_creates_user_and_sets_cookie(client, app, google_verifies):
    response = client.post("/api/auth/google/callback", json={"code": "google-id-token"})
    assert response.status_code == 200
    assert google_verifies == ["google-id-token"]

    user = response.get_json()["user"]
    assert user["email"] == "ana@example.com"
    assert user["username"] == "Ana Novak"

    [set_cookie] = [header for header in response.headers.getlist("Set-Cookie")
                    if header.startswith(f"{config.SESSION_COOKIE}=")]
    assert "HttpOnly" in set_cookie
    assert "SameSite=Lax" in set_cookie

    # a second login finds the same account
    client.post("/api/auth/google/callback", json={"code": "google-id-token"})
    with app.app_context():
        users = User.query.filter_by(google_id="google-sub-123").all()
        assert len(users) == 1
        assert users[0].email_verified is True


def test_google_login_links_existing_email_account(client, app, make_user, google_verifies):
    user_id = make_user(email="ana@example.com", username="ana")

    response = client.post("/api/auth/google/callback", json={"code": "google-id-token"})
    assert response.get_json()["user"]["id"] == user_id

    with app.app_context():
        user = db.session.get(User, user_id)
        assert user.google_id == "google-sub-123"
        assert user.first_name == "Ana"
        assert User.query.count() == 1


def test_google_login_requires_token(client):
    response = client.post("/api/auth/google/callback", json={})
    assert response.status_code == 400
    assert response.get_json() == {"error": "ID token required"}


def test_google_login_rejects_unverifiable_token(client, monkeypatch):
    def reject(id_token):
        raise JoseError("bad signature")

    monkeypatch.setattr("app.verify_google_id_token", reject)
    response = client.post("/api/auth/google/callback", json={"code": "forged"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication failed"}


def test_me_uses_session_cookie_and_logout_clears_it(client, google_verifies):
    client.post("/api/auth/google/callback", json={"code": "google-id-token"})
    assert client.get_cookie(config.SESSION_COOKIE) is not None

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.get_json()["user"]["email"] == "ana@example.com"
    assert me.get_json()["user"]["email_verified"] is True

    logout = client.post("/api/auth/logout")
    assert logout.status_code == 200
    assert client.get_cookie(config.SESSION_COOKIE) is None
    assert client.get("/api/auth/me").status_code == 401


def test_me_accepts_bearer_token(client, make_user, auth_headers):
    user_id = make_user()
    response = client.get("/api/auth/me", headers=auth_headers(user_id))
    assert response.get_json()["user"]["id"] == user_id


def test_me_without_token(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.get_json() == {"error": "Not authenticated"}


@pytest.mark.parametrize("token", ["garbage", "a.b.c", "eyJhbGciOiJub25lIn0.e30."])
def test_malformed_token_is_rejected(client, token):
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid token"}


def test_expired_token_is_rejected(client, make_user):
    token = expired_token(make_user())
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid token"}


def test_token_for_deleted_user_is_rejected(client, app, make_user, auth_headers):
    user_id = make_user()
    headers = auth_headers(user_id)
    with app.app_context():
        db.session.delete(db.session.get(User, user_id))
        db.session.commit()

    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_session_token_roundtrip(app, make_user):
    user_id = make_user(email="roundtrip@example.com")
    with app.app_context():
        user = db.session.get(User, user_id)
        claims = decode_session_token(issue_session_token(user))
    assert claims["userId"] == user_id
    assert claims["email"] == "roundtrip@example.com"
    assert claims["exp"] - claims["iat"] == config.SESSION_MAX_AGE


def test_token_signed_with_another_secret_is_rejected():
    payload = {"userId": 1, "exp": int(time.time()) + 60}
    forged = jwt.encode({"alg": "HS256"}, payload, OctKey.import_key("some-other-secret-of-similar-length"))
    with pytest.raises(JoseError):
        decode_session_token(forged)


def test_google_login_with_non_object_body(client):
    response = client.post("/api/auth/google/callback", json=["google-id-token"])
    assert response.status_code == 400
    assert response.get_json() == {"error": "ID token required"}
