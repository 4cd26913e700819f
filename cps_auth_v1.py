"""
Chhaya Printing Solution (CPS) - Admin Authentication
Version: 1.0.0

Shared access-code check, developer unlock key check, signed session tokens
and client address resolution.

Session token: HS256 JWT with claims
{"authenticated": true, "iat": <unix>, "exp": <unix>}.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional
import hmac
import logging

import jwt

logger = logging.getLogger("CPS.Auth")

UNKNOWN_CLIENT = "unknown"

# ============================================
# SHARED SECRET CHECKS
# ============================================

def _constant_time_equals(submitted: Optional[str], expected: Optional[str]) -> bool:
    if not submitted or not expected:
        return False
    return hmac.compare_digest(submitted.encode(), expected.encode())

def verify_access_code(submitted: Optional[str], expected: Optional[str]) -> bool:
    """An unset admin code never matches."""
    return _constant_time_equals(submitted, expected)

def verify_unlock_key(submitted: Optional[str], expected: Optional[str]) -> bool:
    return _constant_time_equals(submitted, expected)

# ============================================
# CLIENT ADDRESS
# ============================================

def resolve_client_ip(headers: Mapping[str, str]) -> str:
    """First x-forwarded-for hop, then x-real-ip, else "unknown"."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_CLIENT

# ============================================
# SESSION TOKENS
# ============================================

TOKEN_ALGORITHM = "HS256"

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class SessionTokenIssuer:
    """
    Mints and verifies time-bounded admin session tokens.

    The clock only stamps iat/exp on issue; expiry is checked by PyJWT
    against the current time.
    """

    def __init__(self, secret: str, ttl: timedelta = timedelta(hours=24),
                 clock: Callable[[], datetime] = _utcnow):
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._secret = secret
        self.ttl = ttl
        self.clock = clock

    def issue(self) -> str:
        issued_at = int(self.clock().timestamp())
        claims = {
            "authenticated": True,
            "iat": issued_at,
            "exp": issued_at + int(self.ttl.total_seconds()),
        }
        return jwt.encode(claims, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Claims of a valid, unexpired token; None otherwise."""
        if not token:
            return None

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["exp", "iat"]}
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected session token: {e}")
            return None

        if claims.get("authenticated") is not True:
            return None
        return claims

    def max_age_seconds(self) -> int:
        return int(self.ttl.total_seconds())
