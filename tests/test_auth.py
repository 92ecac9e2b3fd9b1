"""Tests for the auth blueprint and bearer-token loading.

Covers:
- Token issue with valid credentials (email case-insensitive)
- Missing fields / wrong password / deactivated account
- Token verification: garbage, wrong salt, expired, deactivated user
- Protected routes reject missing or bad tokens with JSON 401
"""

from itsdangerous import URLSafeTimedSerializer

from studiodesk.extensions import db
from studiodesk.models.user import User
from studiodesk.services.auth_service import (
    issue_token,
    load_token,
    user_from_auth_header,
)


def _deactivate(user_id):
    user = db.session.get(User, user_id)
    user.is_active = False
    db.session.commit()


class TestTokenEndpoint:
    """Tests for POST /auth/token."""

    def test_valid_credentials_return_token(self, client, seed_data):
        resp = client.post(
            "/auth/token",
            json={"email": "  Jane@Client.TEST ", "password": "client123"},
        )

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 60 * 60 * 24 * 7
        assert body["user"]["email"] == "jane@client.test"
        assert body["user"]["is_admin"] is False
        assert load_token(body["token"]).id == seed_data["client_id"]

    def test_missing_fields(self, client, seed_data):
        resp = client.post("/auth/token", json={"email": "jane@client.test"})
        assert resp.status_code == 400

    def test_wrong_password(self, client, seed_data):
        resp = client.post(
            "/auth/token", json={"email": "jane@client.test", "password": "nope"}
        )
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid email or password"

    def test_unknown_email(self, client, seed_data):
        resp = client.post(
            "/auth/token", json={"email": "ghost@nowhere.test", "password": "client123"}
        )
        assert resp.status_code == 401

    def test_deactivated_account(self, client, seed_data):
        _deactivate(seed_data["client_id"])
        resp = client.post(
            "/auth/token", json={"email": "jane@client.test", "password": "client123"}
        )
        assert resp.status_code == 401


class TestTokenLoading:

    def test_round_trip(self, seed_data):
        token = issue_token(seed_data["client"])
        assert load_token(token).email == "jane@client.test"

    def test_garbage_token(self, seed_data):
        assert load_token("not-a-token") is None

    def test_wrong_salt_rejected(self, app, seed_data):
        forged = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="other").dumps(
            {"uid": seed_data["admin_id"]}
        )
        assert load_token(forged) is None

    def test_expired_token(self, app, seed_data, monkeypatch):
        token = issue_token(seed_data["client"])
        monkeypatch.setitem(app.config, "AUTH_TOKEN_MAX_AGE", -1)
        assert load_token(token) is None

    def test_deactivated_user_token(self, seed_data):
        token = issue_token(seed_data["client"])
        _deactivate(seed_data["client_id"])
        assert load_token(token) is None

    def test_header_parsing(self, seed_data):
        token = issue_token(seed_data["client"])
        assert user_from_auth_header(f"Bearer {token}").id == seed_data["client_id"]
        assert user_from_auth_header(f"Basic {token}") is None
        assert user_from_auth_header("Bearer ") is None
        assert user_from_auth_header(None) is None


class TestProtectedRoutes:

    def test_missing_token(self, client, seed_data):
        resp = client.get("/rag/documents")
        assert resp.status_code == 401
        assert resp.get_json() == {"error": "Unauthorized"}

    def test_garbage_token(self, client, seed_data):
        resp = client.get(
            "/rag/documents", headers={"Authorization": "Bearer garbage.token.value"}
        )
        assert resp.status_code == 401

    def test_deactivated_user_token(self, client, seed_data):
        token = issue_token(seed_data["client"])
        _deactivate(seed_data["client_id"])
        resp = client.get("/rag/documents", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_valid_token(self, client, seed_data, auth_header):
        resp = client.get("/rag/documents", headers=auth_header(seed_data["client"]))
        assert resp.status_code == 200
