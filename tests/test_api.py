"""
Tests for the HTTP surface: status mapping, cookies and the payment callback.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from src.errors import StorageError
from src.main import create_app


@pytest.fixture
def client(services):
    app = create_app(services=services, observability=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_token(client, memory_db, make_verified_user, sample_phone):
    """Log a verified user with 5 tokens in through the API and return the session token."""
    make_verified_user(sample_phone, balance=5)
    client.post("/api/auth/login", json={"phone": sample_phone})
    response = client.post(
        "/api/auth/verify-login",
        json={"phone": sample_phone, "otp_code": memory_db.user_by_phone(sample_phone).otp_code},
    )
    assert response.status_code == 200
    client.cookies.clear()
    return response.json()["session"]["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def callback_payload(receipt="QKL7ABC123", amount=30, phone=254712345678):
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": phone},
                    ]
                },
            }
        }
    }


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert "timestamp" in data

    def test_security_headers_and_correlation_id(self, client):
        response = client.get("/api/auth/health", headers={"X-Request-ID": "req_test"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req_test"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_metrics(self, client):
        client.get("/healthz")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "total_requests" in response.json()["metrics"]


class TestSignupEndpoints:
    def test_signup_normalizes_phone(self, client, memory_db, sms_gateway):
        response = client.post("/api/auth/signup", json={"phone": "0712 345 678", "name": " Amina "})

        assert response.status_code == 200
        assert response.json()["next_step"] == "verify_otp"
        user = memory_db.user_by_phone("254712345678")
        assert user.name == "Amina"
        assert sms_gateway.sent[0][0] == "254712345678"

    def test_signup_invalid_phone(self, client):
        response = client.post("/api/auth/signup", json={"phone": "12345678901"})

        assert response.status_code == 422

    def test_signup_existing_user(self, client, make_verified_user, sample_phone):
        make_verified_user(sample_phone, balance=1)

        response = client.post("/api/auth/signup", json={"phone": sample_phone})

        assert response.status_code == 409
        assert response.json()["code"] == "already_exists"

    def test_signup_sms_failure(self, client, sms_gateway, sample_phone):
        sms_gateway.fail = True

        response = client.post("/api/auth/signup", json={"phone": sample_phone})

        assert response.status_code == 502
        assert response.json()["code"] == "dispatch_failed"

    def test_verify_sets_session_cookie(self, client, memory_db, sample_phone):
        client.post("/api/auth/signup", json={"phone": sample_phone})
        code = memory_db.user_by_phone(sample_phone).otp_code

        response = client.post("/api/auth/verify-otp", json={"phone": sample_phone, "otp_code": code})

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["verified"] is True
        assert body["tokens_remaining"] == 5
        set_cookie = response.headers["set-cookie"]
        assert f"session-token={body['session']['token']}" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    def test_verify_wrong_and_expired_codes(self, client, memory_db, clock, sample_phone):
        client.post("/api/auth/signup", json={"phone": sample_phone})
        code = memory_db.user_by_phone(sample_phone).otp_code
        wrong = "000000" if code != "000000" else "111111"

        response = client.post("/api/auth/verify-otp", json={"phone": sample_phone, "otp_code": wrong})
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_code"

        clock.advance(minutes=11)
        response = client.post("/api/auth/verify-otp", json={"phone": sample_phone, "otp_code": code})
        assert response.status_code == 410
        assert response.json()["code"] == "expired"

    def test_malformed_code_rejected_before_service(self, client, sample_phone):
        response = client.post("/api/auth/verify-otp", json={"phone": sample_phone, "otp_code": "12ab"})

        assert response.status_code == 422


class TestLoginEndpoints:
    def test_login_reports_cost(self, client, make_verified_user, sample_phone):
        make_verified_user(sample_phone, balance=3)

        response = client.post("/api/auth/login", json={"phone": sample_phone})

        assert response.status_code == 200
        body = response.json()
        assert body["tokens_remaining"] == 2
        assert body["next_step"] == "verify_login_otp"
        assert "(1 token deducted)" in body["message"]

    def test_login_without_tokens(self, client, make_verified_user, sample_phone):
        make_verified_user(sample_phone, balance=0)

        response = client.post("/api/auth/login", json={"phone": sample_phone})

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "insufficient_tokens"
        assert body["details"]["required"] == 1
        assert body["details"]["balance"] == 0

    def test_login_sms_failure_refunds(self, client, memory_db, make_verified_user, sms_gateway, sample_phone):
        user = make_verified_user(sample_phone, balance=3)
        sms_gateway.fail = True

        response = client.post("/api/auth/login", json={"phone": sample_phone})

        assert response.status_code == 502
        assert memory_db.balances[user.id] == 3

    def test_login_unverified(self, client, sample_phone):
        client.post("/api/auth/signup", json={"phone": sample_phone})

        response = client.post("/api/auth/login", json={"phone": sample_phone})

        assert response.status_code == 403
        assert response.json()["code"] == "unverified"

    def test_login_unknown(self, client):
        response = client.post("/api/auth/login", json={"phone": "254799999999"})

        assert response.status_code == 404

    def test_storage_failure_is_opaque(self, client, services, sample_phone):
        with patch.object(services.auth.users, "get_by_phone", AsyncMock(side_effect=StorageError("relation users is locked"))):
            response = client.post("/api/auth/login", json={"phone": sample_phone})

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "internal"
        assert "locked" not in body["message"]


class TestSessionEndpoints:
    def test_me_with_bearer_token(self, client, session_token, sample_phone):
        response = client.get("/api/auth/me", headers=bearer(session_token))

        assert response.status_code == 200
        body = response.json()
        assert body["authenticated"] is True
        assert body["user"]["phone"] == sample_phone
        assert body["tokens"] == 4
        assert "expires_at" in body["session"]

    def test_me_with_cookie(self, client, session_token):
        client.cookies.clear()
        client.cookies.set("session-token", session_token)

        response = client.get("/api/auth/me")

        assert response.status_code == 200

    def test_me_requires_session(self, client):
        assert client.get("/api/auth/me").status_code == 401
        assert client.get("/api/auth/me", headers=bearer("x" * 64)).status_code == 401

    def test_validate_session(self, client, session_token):
        client.cookies.clear()
        assert client.get("/api/auth/validate-session", headers=bearer(session_token)).json()["valid"] is True
        assert client.get("/api/auth/validate-session").json() == {"valid": False}

    def test_refresh(self, client, session_token):
        response = client.post("/api/auth/refresh", headers=bearer(session_token))

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_refresh_invalid_session(self, client):
        response = client.post("/api/auth/refresh", headers=bearer("y" * 64))

        assert response.status_code == 401

    def test_logout(self, client, memory_db, session_token):
        response = client.post("/api/auth/logout", headers=bearer(session_token))

        assert response.status_code == 200
        assert memory_db.sessions == {}
        assert client.get("/api/auth/me", headers=bearer(session_token)).status_code == 401

    def test_logout_without_session(self, client):
        assert client.post("/api/auth/logout").status_code == 200

    def test_second_login_ends_first_session(self, client, memory_db, session_token, sample_phone):
        client.post("/api/auth/login", json={"phone": sample_phone})
        client.post(
            "/api/auth/verify-login",
            json={"phone": sample_phone, "otp_code": memory_db.user_by_phone(sample_phone).otp_code},
        )
        client.cookies.clear()

        assert client.get("/api/auth/me", headers=bearer(session_token)).status_code == 401


class TestTokenEndpoints:
    def test_balance(self, client, session_token):
        response = client.get("/api/tokens/balance", headers=bearer(session_token))

        assert response.status_code == 200
        assert response.json()["balance"] == 4

    def test_export_charge_insufficient(self, client, session_token):
        response = client.post("/api/tokens/charge/export", headers=bearer(session_token))

        assert response.status_code == 402
        assert response.json()["details"] == {"required": 5, "balance": 4, "action": "export"}

    def test_export_charge(self, client, memory_db, session_token, sample_phone):
        memory_db.balances[memory_db.user_by_phone(sample_phone).id] = 12

        response = client.post("/api/tokens/charge/export", headers=bearer(session_token))

        assert response.status_code == 200
        assert response.json() == {"action": "export", "tokens_deducted": 5, "tokens_remaining": 7}


class TestMpesaEndpoints:
    def test_callback_is_acknowledged_and_credited_once(self, client, memory_db, make_verified_user, sample_phone):
        user = make_verified_user(sample_phone, balance=0)

        first = client.post("/api/mpesa/callback", json=callback_payload())
        second = client.post("/api/mpesa/callback", json=callback_payload())

        assert first.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        assert second.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        assert memory_db.balances[user.id] == 30

    def test_callback_for_unknown_phone_is_acknowledged(self, client, memory_db):
        response = client.post("/api/mpesa/callback", json=callback_payload(phone=254799999999))

        assert response.status_code == 200
        assert memory_db.payments == {}

    def test_malformed_callback(self, client):
        response = client.post("/api/mpesa/callback", json={"Body": {}})

        assert response.status_code == 400

    def test_payment_status(self, client, session_token):
        client.post("/api/mpesa/callback", json=callback_payload(receipt="QKL7XYZ789"))

        found = client.get("/api/mpesa/status/QKL7XYZ789", headers=bearer(session_token))
        missing = client.get("/api/mpesa/status/QKL7NOPE00", headers=bearer(session_token))
        invalid = client.get("/api/mpesa/status/bad!ref", headers=bearer(session_token))

        assert found.status_code == 200
        assert found.json()["tokens_added"] == 30
        assert missing.status_code == 404
        assert invalid.status_code == 400
