"""Integration tests for the phone login flow over HTTP.

Covers:
- Sending and verifying a code
- Refresh rotation
- Logout
- Status gating, validation and rate limiting
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from addisverify import app as app_module
from addisverify.service.runtime import get_runtime

PHONE = "+251911223344"
CODE = "482913"
# Arabic-Indic digits after the country prefix; must not alias PHONE
MIXED_DIGIT_PHONE = "+2\u0665\u0661\u0669\u0661\u0661\u0662\u0662\u0663\u0663\u0664\u0664"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client: TestClient, phone: str = PHONE, code: str = CODE) -> dict:
    with patch("addisverify.service.auth.generate_otp", return_value=code):
        sent = client.post("/v1/accounts/auth/send-otp", json={"phone": phone})
    assert sent.status_code == 200, sent.text
    verified = client.post("/v1/accounts/auth/verify-otp", json={"phone": phone, "otp": code})
    assert verified.status_code == 200, verified.text
    return verified.json()["data"]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestSendOtp:
    def test_send_otp_returns_message(self, client):
        response = client.post("/v1/accounts/auth/send-otp", json={"phone": PHONE})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"] == {"message": "OTP sent successfully"}
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_send_otp_twice_is_rate_limited(self, client):
        client.post("/v1/accounts/auth/send-otp", json={"phone": PHONE})
        response = client.post("/v1/accounts/auth/send-otp", json={"phone": PHONE})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_send_otp_normalizes_phone(self, client):
        with patch("addisverify.service.auth.generate_otp", return_value=CODE):
            client.post("/v1/accounts/auth/send-otp", json={"phone": "+251 91-122-3344"})
        response = client.post(
            "/v1/accounts/auth/verify-otp", json={"phone": PHONE, "otp": CODE}
        )
        assert response.status_code == 200
        assert response.json()["data"]["account"]["phone"] == PHONE

    @pytest.mark.parametrize(
        "phone",
        ["0911223344", "+0123", "not-a-phone", "", MIXED_DIGIT_PHONE],
    )
    def test_invalid_phone_rejected(self, client, phone):
        response = client.post("/v1/accounts/auth/send-otp", json={"phone": phone})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_per_client_rate_limit(self, client):
        statuses = [
            client.post(
                "/v1/accounts/auth/send-otp", json={"phone": f"+2519110000{i:02d}"}
            ).status_code
            for i in range(6)
        ]
        assert statuses[:5] == [200] * 5
        assert statuses[5] == 429


class TestVerifyOtp:
    def test_verify_returns_token_pair_and_account(self, client):
        data = _login(client)
        assert data["token_type"] == "bearer"
        assert data["access_token"] != data["refresh_token"]
        assert data["account"]["phone"] == PHONE
        assert data["account"]["status"] == "active"

    def test_wrong_code(self, client):
        with patch("addisverify.service.auth.generate_otp", return_value=CODE):
            client.post("/v1/accounts/auth/send-otp", json={"phone": PHONE})
        response = client.post(
            "/v1/accounts/auth/verify-otp", json={"phone": PHONE, "otp": "000000"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_code"

    def test_code_cannot_be_reused(self, client):
        _login(client)
        response = client.post(
            "/v1/accounts/auth/verify-otp", json={"phone": PHONE, "otp": CODE}
        )
        assert response.status_code == 401

    @pytest.mark.parametrize("otp", ["12345", "1234567", "12a456", ""])
    def test_malformed_code_rejected(self, client, otp):
        response = client.post(
            "/v1/accounts/auth/verify-otp", json={"phone": PHONE, "otp": otp}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestSession:
    def test_me_returns_account(self, client):
        data = _login(client)
        response = client.get("/v1/accounts/me", headers=_bearer(data["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["id"] == data["account"]["id"]
        assert "no-store" in response.headers["Cache-Control"]

    def test_me_requires_token(self, client):
        response = client.get("/v1/accounts/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_me_rejects_refresh_token(self, client):
        data = _login(client)
        response = client.get("/v1/accounts/me", headers=_bearer(data["refresh_token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "wrong_token_kind"

    def test_refresh_rotates_and_invalidates_old_pair(self, client):
        data = _login(client)
        response = client.post(
            "/v1/accounts/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert response.status_code == 200
        rotated = response.json()["data"]

        old = client.get("/v1/accounts/me", headers=_bearer(data["access_token"]))
        assert old.status_code == 401
        replay = client.post(
            "/v1/accounts/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert replay.status_code == 401
        fresh = client.get("/v1/accounts/me", headers=_bearer(rotated["access_token"]))
        assert fresh.status_code == 200

    def test_refresh_with_access_token(self, client):
        data = _login(client)
        response = client.post(
            "/v1/accounts/auth/refresh", json={"refresh_token": data["access_token"]}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "wrong_token_kind"

    def test_logout_invalidates_tokens(self, client):
        data = _login(client)
        response = client.post(
            "/v1/accounts/auth/logout", headers=_bearer(data["access_token"])
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Logged out successfully"}

        assert client.get("/v1/accounts/me", headers=_bearer(data["access_token"])).status_code == 401
        refresh = client.post(
            "/v1/accounts/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_requires_token(self, client):
        response = client.post("/v1/accounts/auth/logout")
        assert response.status_code == 401

    def test_suspended_account_rejected(self, client):
        data = _login(client)
        get_runtime().auth.set_account_status(data["account"]["id"], "suspended")

        response = client.get("/v1/accounts/me", headers=_bearer(data["access_token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_suspended"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "MemoryChallengeCache"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_carries_request_id(self, client):
        response = client.get("/v1/accounts/me", headers={"X-Request-ID": "req-456"})
        assert response.json()["request_id"] == "req-456"

    def test_oversized_body_rejected(self, client):
        limit = get_runtime().settings.max_request_bytes
        response = client.post(
            "/v1/accounts/auth/send-otp",
            content=b"x" * (limit + 1),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "payload_too_large"

    def test_unknown_route(self, client):
        response = client.get("/v1/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_method(self, client):
        response = client.get("/v1/accounts/auth/send-otp")
        assert response.status_code == 405
        assert response.json()["error"]["code"] == "method_not_allowed"
