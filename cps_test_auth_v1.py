"""
Chhaya Printing Solution (CPS) - Admin Authentication Tests
Version: 1.0.0
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from cps_auth_v1 import (
    UNKNOWN_CLIENT,
    SessionTokenIssuer,
    resolve_client_ip,
    verify_access_code,
    verify_unlock_key,
)

# ============================================
# SHARED SECRETS
# ============================================

class TestSharedSecrets:

    def test_access_code_match(self):
        assert verify_access_code("123456", "123456")
        assert not verify_access_code("123457", "123456")

    @pytest.mark.parametrize("submitted,expected", [
        ("", ""),
        (None, ""),
        ("anything", ""),
        ("", "123456"),
        (None, None),
    ])
    def test_empty_values_never_match(self, submitted, expected):
        assert verify_access_code(submitted, expected) is False

    def test_unlock_key(self):
        assert verify_unlock_key("dev-key", "dev-key")
        assert not verify_unlock_key("dev-key", "")
        assert not verify_unlock_key("DEV-KEY", "dev-key")

# ============================================
# CLIENT ADDRESS
# ============================================

class TestResolveClientIp:

    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "1.2.3.4, 10.0.0.1, 10.0.0.2"}
        assert resolve_client_ip(headers) == "1.2.3.4"

    def test_real_ip_fallback(self):
        assert resolve_client_ip({"x-real-ip": " 5.6.7.8 "}) == "5.6.7.8"

    def test_forwarded_wins_over_real_ip(self):
        headers = {"x-forwarded-for": "1.2.3.4", "x-real-ip": "5.6.7.8"}
        assert resolve_client_ip(headers) == "1.2.3.4"

    def test_blank_forwarded_falls_through(self):
        headers = {"x-forwarded-for": " , 10.0.0.1", "x-real-ip": "5.6.7.8"}
        assert resolve_client_ip(headers) == "5.6.7.8"

    def test_unknown(self):
        assert resolve_client_ip({}) == UNKNOWN_CLIENT

# ============================================
# SESSION TOKENS
# ============================================

SECRET = "test-session-secret-0123456789abcdef"

class AdjustableClock:
    """Real time shifted by a settable offset."""

    def __init__(self):
        self.offset = timedelta(0)

    def __call__(self):
        return datetime.now(timezone.utc) + self.offset

@pytest.fixture
def clock():
    return AdjustableClock()

@pytest.fixture
def issuer(clock):
    return SessionTokenIssuer(SECRET, ttl=timedelta(hours=24), clock=clock)

class TestSessionTokens:

    def test_issue_and_verify(self, issuer):
        claims = issuer.verify(issuer.issue())

        assert claims["authenticated"] is True
        assert claims["exp"] - claims["iat"] == 24 * 3600

    def test_token_is_standard_hs256_jwt(self, issuer):
        token = issuer.issue()

        assert jwt.get_unverified_header(token)["alg"] == "HS256"
        assert jwt.decode(token, SECRET, algorithms=["HS256"])["authenticated"] is True

    def test_expired(self, issuer, clock):
        clock.offset = -timedelta(hours=24, seconds=5)

        assert issuer.verify(issuer.issue()) is None

    def test_valid_just_before_expiry(self, issuer, clock):
        clock.offset = -timedelta(hours=23, minutes=59)

        assert issuer.verify(issuer.issue()) is not None

    def test_other_secret_rejected(self, issuer, clock):
        other = SessionTokenIssuer("another-secret-0123456789abcdefghij", clock=clock)
        assert other.verify(issuer.issue()) is None

    def test_tampered_payload_rejected(self, issuer):
        header, payload, signature = issuer.issue().split(".")
        forged = payload[:-2] + ("AA" if payload[-2:] != "AA" else "BB")

        assert issuer.verify(f"{header}.{forged}.{signature}") is None

    @pytest.mark.parametrize("token", [None, "", "no-dot", "a.b", "a.b.c", "..", "abc.é", "a.b.é", "é.é.é"])
    def test_malformed_rejected(self, issuer, token):
        assert issuer.verify(token) is None

    def test_unauthenticated_claims_rejected(self, clock):
        now = int(clock().timestamp())
        token = jwt.encode({"authenticated": False, "iat": now, "exp": now + 60}, SECRET, algorithm="HS256")

        assert SessionTokenIssuer(SECRET).verify(token) is None

    def test_missing_expiry_rejected(self, clock):
        token = jwt.encode({"authenticated": True, "iat": int(clock().timestamp())}, SECRET, algorithm="HS256")

        assert SessionTokenIssuer(SECRET).verify(token) is None

    def test_unsigned_token_rejected(self, clock):
        now = int(clock().timestamp())
        token = jwt.encode({"authenticated": True, "iat": now, "exp": now + 60}, None, algorithm="none")

        assert SessionTokenIssuer(SECRET).verify(token) is None

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            SessionTokenIssuer("")

    def test_max_age(self, issuer):
        assert issuer.max_age_seconds() == 86400

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
