"""Tests for checkin_hub.auth -- token issuance/verification, rate limiting, and auth helpers."""

import inspect
import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException

from checkin_hub.auth import (
    JWT_ALGORITHM,
    JWT_SECRET,
    issue_token,
    verify_identity,
    secrets_match,
    check_login_rate_limit,
    get_token_from_request,
    require_student,
    _login_attempts,
    _LOGIN_RATE_LIMIT,
)


class FakeRequest:
    def __init__(self, headers):
        self.headers = headers


# ---------------------------------------------------------------------------
# Token issuance and verification
# ---------------------------------------------------------------------------

class TestIssueAndVerify:

    def test_issued_token_round_trips_identity(self):
        token = issue_token("S1")
        assert verify_identity(token) == "S1"

    def test_token_carries_expiry(self):
        token = issue_token("S1")
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        assert claims["sub"] == "S1"
        assert claims["exp"] > claims["iat"]

    def test_expired_token_rejected(self):
        token = issue_token("S1", ttl_seconds=-10)
        assert verify_identity(token) is None

    def test_wrong_signature_rejected(self):
        token = jwt.encode(
            {"sub": "S1", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            "some-other-secret-that-is-long-enough-for-hs256",
            algorithm="HS256",
        )
        assert verify_identity(token) is None

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c", None, 12345])
    def test_malformed_tokens_rejected(self, token):
        assert verify_identity(token) is None

    def test_token_without_subject_rejected(self):
        token = jwt.encode(
            {"exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            JWT_SECRET,
            algorithm=JWT_ALGORITHM,
        )
        assert verify_identity(token) is None

    def test_token_without_expiry_rejected(self):
        token = jwt.encode({"sub": "S1"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert verify_identity(token) is None

    def test_tampered_payload_rejected(self):
        header, payload, signature = issue_token("S1").split(".")
        other_payload = issue_token("S2").split(".")[1]
        assert verify_identity(f"{header}.{other_payload[:-2]}xx.{signature}") is None
        assert verify_identity(f"{header}.{other_payload}.{signature}") is None


class TestSecretsMatch:

    def test_matching_secret(self):
        assert secrets_match("hunter2", "hunter2") is True

    def test_mismatched_or_missing_secret(self):
        assert secrets_match("hunter3", "hunter2") is False
        assert secrets_match(None, "hunter2") is False

    def test_uses_hmac_compare_digest(self):
        source = inspect.getsource(secrets_match)
        assert "hmac.compare_digest" in source


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestRateLimiting:

    def test_blocks_after_threshold(self):
        """After _LOGIN_RATE_LIMIT attempts, subsequent calls should raise 429."""
        ip = "10.0.0.1"
        for _ in range(_LOGIN_RATE_LIMIT):
            check_login_rate_limit(ip)
        with pytest.raises(HTTPException) as exc_info:
            check_login_rate_limit(ip)
        assert exc_info.value.status_code == 429

    def test_different_ips_independent(self):
        for _ in range(_LOGIN_RATE_LIMIT):
            check_login_rate_limit("1.1.1.1")
        check_login_rate_limit("2.2.2.2")

    def test_rate_limit_window_expires(self):
        """After the rate window passes, the IP should be allowed again."""
        ip = "10.0.0.2"
        for _ in range(_LOGIN_RATE_LIMIT):
            check_login_rate_limit(ip)
        _login_attempts[ip] = [time.monotonic() - 120.0 for _ in _login_attempts[ip]]
        check_login_rate_limit(ip)

    def test_stale_ips_pruned(self):
        _login_attempts["9.9.9.9"] = [time.monotonic() - 120.0]
        check_login_rate_limit("8.8.8.8")
        assert "9.9.9.9" not in _login_attempts


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

class TestGetTokenFromRequest:

    def test_extracts_bearer_token(self):
        assert get_token_from_request(FakeRequest({"Authorization": "Bearer abc123"})) == "abc123"

    def test_returns_none_without_bearer(self):
        assert get_token_from_request(FakeRequest({"Authorization": "Basic abc123"})) is None

    def test_returns_none_without_header(self):
        assert get_token_from_request(FakeRequest({})) is None


class TestRequireStudent:

    @pytest.mark.asyncio
    async def test_returns_identity_for_valid_token(self):
        request = FakeRequest({"Authorization": f"Bearer {issue_token('S7')}"})
        assert await require_student(request) == "S7"

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_student(FakeRequest({}))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_is_403(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_student(FakeRequest({"Authorization": "Bearer nope"}))
        assert exc_info.value.status_code == 403
