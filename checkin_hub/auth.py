"""Authentication module: signed student tokens, rate limiting, and auth dependencies.

Tokens are HS256 JWTs whose ``sub`` claim is the student identity. The same
scheme backs two separate call paths: REST routes read the token from the
``Authorization`` header on every request, while a WebSocket session presents
it exactly once in its ``connect`` message (see :func:`verify_identity`).
"""

import hmac
import logging
import os
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field
from starlette.requests import Request

logger = logging.getLogger(__name__)

# --- Configuration ---

_DEFAULT_SECRET = "default_secret"
JWT_SECRET = os.environ.get("CHECKIN_JWT_SECRET") or _DEFAULT_SECRET
JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = int(os.environ.get("CHECKIN_TOKEN_TTL", str(24 * 60 * 60)))

if JWT_SECRET == _DEFAULT_SECRET:
    logger.warning("CHECKIN_JWT_SECRET is not set; using the insecure development secret")

# Login rate limiting: IP -> list of attempt timestamps
_login_attempts: dict[str, list[float]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5        # max attempts
_LOGIN_RATE_WINDOW = 60.0    # per this many seconds


# --- Token Management ---

def issue_token(student_id: str, *, ttl_seconds: int | None = None) -> str:
    """Sign a token for *student_id*, valid for TOKEN_TTL_SECONDS by default."""
    now = datetime.now(timezone.utc)
    ttl = TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    payload = {
        "sub": student_id,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _decode(token: str) -> dict:
    return jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        options={"require": ["exp", "sub"]},
    )


def verify_identity(token: str | None) -> str | None:
    """Return the student identity encoded in *token*, or None if it is unusable.

    Never raises: malformed, expired and wrongly signed tokens all yield None.
    """
    if not token or not isinstance(token, str):
        return None
    try:
        claims = _decode(token)
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("Rejected invalid token: %s", e)
        return None
    student_id = claims.get("sub")
    if not isinstance(student_id, str) or not student_id:
        return None
    return student_id


def secrets_match(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for shared secrets."""
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


# --- Rate Limiting ---

def _prune_stale_attempts(now: float) -> None:
    """Drop rate-limit entries whose last attempt is older than the window."""
    stale_ips = [
        ip for ip, attempts in _login_attempts.items()
        if attempts and attempts[-1] < now - _LOGIN_RATE_WINDOW
    ]
    for ip in stale_ips:
        del _login_attempts[ip]


def check_login_rate_limit(client_ip: str) -> None:
    """Raise 429 if the IP has exceeded the login rate limit."""
    now = time.monotonic()
    _prune_stale_attempts(now)
    attempts = _login_attempts[client_ip]
    cutoff = now - _LOGIN_RATE_WINDOW
    _login_attempts[client_ip] = [t for t in attempts if t > cutoff]
    if len(_login_attempts[client_ip]) >= _LOGIN_RATE_LIMIT:
        raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")
    _login_attempts[client_ip].append(now)


# --- Request Helpers ---

class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId", min_length=1, max_length=100)
    name: str | None = Field(None, max_length=200)


def get_token_from_request(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def require_student(request: Request) -> str:
    """FastAPI dependency: the identity of the bearer-authenticated student.

    Missing token -> 401, invalid or expired token -> 403.
    """
    token = get_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    student_id = verify_identity(token)
    if student_id is None:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return student_id
