"""HTTP tests for /authorize, /token and the /v1/auth envelope endpoints."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from authcore.app import create_app
from authcore.service.primitives import SecretPrimitives
from authcore.service.runtime import get_runtime
from authcore.storage.models import ChallengeMethod

VERIFIER = "api-test-verifier-" + "v" * 40
CHALLENGE = SecretPrimitives.derive_challenge(VERIFIER, ChallengeMethod.S256)
REDIRECT = "https://app.test/cb"
SUBJECT_HEADER = {"X-Authenticated-Subject": "u42"}


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


def authorize_params(**overrides):
    params = {
        "client_id": "app1",
        "redirect_uri": REDIRECT,
        "response_type": "code",
        "state": "csrf-abc",
        "code_challenge": CHALLENGE,
        "code_challenge_method": "S256",
        "scope": "read",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def redirect_query(response):
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    return location, {k: v[0] for k, v in parse_qs(location.query).items()}


def get_code(client):
    response = client.get(
        "/authorize", params=authorize_params(), headers=SUBJECT_HEADER, follow_redirects=False
    )
    _, query = redirect_query(response)
    return query["code"]


def exchange(client, code, **overrides):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT,
        "code_verifier": VERIFIER,
        "client_id": "app1",
    }
    data.update(overrides)
    return client.post("/token", data=data)


class TestAuthorizeEndpoint:
    def test_redirects_with_code_and_state(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        location, query = redirect_query(response)

        assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT
        assert query["state"] == "csrf-abc"
        assert query["code"]
        assert response.headers["cache-control"] == "no-store"

    def test_unknown_client_is_not_redirected(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(client_id="nope"),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client"
        assert "location" not in response.headers

    def test_unregistered_redirect_is_not_redirected(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(redirect_uri="https://evil.test/cb"),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "location" not in response.headers

    def test_bad_challenge_redirects_with_error(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(code_challenge="short"),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        _, query = redirect_query(response)
        assert query["error"] == "invalid_request"
        assert query["state"] == "csrf-abc"
        assert "code" not in query

    def test_plain_method_rejected_by_default(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(code_challenge=VERIFIER, code_challenge_method=None),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        _, query = redirect_query(response)
        assert query["error"] == "invalid_request"

    def test_wrong_response_type(self, client):
        response = client.get(
            "/authorize",
            params=authorize_params(response_type="token"),
            headers=SUBJECT_HEADER,
            follow_redirects=False,
        )
        _, query = redirect_query(response)
        assert query["error"] == "invalid_request"

    def test_unresolved_subject_is_access_denied(self, client):
        response = client.get(
            "/authorize", params=authorize_params(), follow_redirects=False
        )
        _, query = redirect_query(response)
        assert query == {"error": "access_denied", "state": "csrf-abc"}


class TestTokenEndpoint:
    def test_code_exchange_and_refresh(self, client):
        response = exchange(client, get_code(client))
        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 600
        assert body["scope"] == "read"
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"

        refreshed = client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": body["refresh_token"]},
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] != body["refresh_token"]

        reused = client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": body["refresh_token"]},
        )
        assert reused.status_code == 400
        assert reused.json()["error"] == "invalid_grant"

    def test_code_replay(self, client):
        code = get_code(client)
        first = exchange(client, code).json()

        replay = exchange(client, code)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

        refresh = client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": first["refresh_token"]},
        )
        assert refresh.json()["error"] == "invalid_grant"

    def test_wrong_verifier(self, client):
        response = exchange(client, get_code(client), code_verifier="w" * 50)
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_grant"
        assert "error_description" in body

    def test_non_ascii_verifier(self, client):
        response = exchange(client, get_code(client), code_verifier="vérifier-" + "v" * 40)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_unknown_client(self, client):
        response = exchange(client, get_code(client), client_id="nope")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "www-authenticate" in response.headers

    def test_missing_grant_type(self, client):
        response = client.post("/token", data={"code": "x"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, client):
        response = client.post("/token", data={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"


class TestAuthEndpoints:
    def _enroll(self, password="correct horse battery"):
        asyncio.run(get_runtime().login.set_password("alice", password))

    def test_login_success(self, client):
        self._enroll()
        response = client.post(
            "/v1/auth/login", json={"account_key": "alice", "password": "correct horse battery"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "Bearer"
        assert response.headers["cache-control"] == "no-store"

    def test_locked_and_wrong_password_look_identical(self, client):
        self._enroll()
        wrong = {"account_key": "alice", "password": "not it at all"}
        first = client.post("/v1/auth/login", json=wrong)
        for _ in range(4):
            client.post("/v1/auth/login", json=wrong)
        locked = client.post(
            "/v1/auth/login", json={"account_key": "alice", "password": "correct horse battery"}
        )

        assert first.status_code == locked.status_code == 401
        assert first.json()["error"] == locked.json()["error"]
        assert locked.json()["error"]["code"] == "invalid_credentials"
        assert "retry-after" not in locked.headers

    def test_login_validation_error_does_not_echo_input(self, client):
        response = client.post("/v1/auth/login", json={"account_key": "alice"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "invalid_request"
        assert "input" not in str(body["error"]["details"])

    def test_revoke_and_introspect(self, client):
        tokens = exchange(client, get_code(client)).json()

        info = client.post("/v1/auth/introspect", json={"token": tokens["access_token"]})
        assert info.status_code == 200
        data = info.json()["data"]
        assert data["valid"] is True
        assert data["subject_id"] == "u42"
        assert data["client_id"] == "app1"

        revoked = client.post("/v1/auth/revoke", json={"refresh_token": tokens["refresh_token"]})
        assert revoked.json()["data"] == {"revoked": True}

        refresh = client.post(
            "/token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        )
        assert refresh.json()["error"] == "invalid_grant"

        # access tokens are stateless and outlive the revocation
        info = client.post("/v1/auth/introspect", json={"token": tokens["access_token"]})
        assert info.json()["data"]["valid"] is True

    def test_revoke_unknown_token_succeeds(self, client):
        response = client.post("/v1/auth/revoke", json={"refresh_token": "r_unknown"})
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": True}

    def test_introspect_garbage(self, client):
        response = client.post("/v1/auth/introspect", json={"token": "garbage"})
        assert response.json()["data"]["valid"] is False

    def test_introspect_non_ascii_signature(self, client):
        access_token = exchange(client, get_code(client)).json()["access_token"]
        head, body, _ = access_token.split(".")

        response = client.post("/v1/auth/introspect", json={"token": f"{head}.{body}.é"})
        assert response.status_code == 200
        assert response.json()["data"]["valid"] is False


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["store"]["status"] == "ok"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/healthz")
        assert response.headers["x-request-id"]
