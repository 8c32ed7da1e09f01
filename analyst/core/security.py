"""Security utilities: JWT verification and worker job signing."""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

from jose import jwt

from analyst.core.config import get_settings

settings = get_settings()


# ── JWT ───────────────────────────────────────────────────────
# Tokens are issued by the auth service; this side only verifies them.

def create_jwt(subject: str, expires_delta: timedelta | None = None) -> str:
    """Mint a token for ``subject``. Used by tests and local tooling."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    payload = {"sub": subject, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jose.JWTError on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])


# ── Worker job signatures (HMAC-SHA256) ───────────────────────

def _job_message(session_id: str, message_id: str) -> bytes:
    return f"{session_id}:{message_id}".encode()


def sign_job(session_id: str, message_id: str) -> str:
    """Sign a chat-turn job so the worker can tell it came from the dispatcher."""
    if not settings.worker_shared_secret:
        raise RuntimeError("WORKER_SHARED_SECRET is not configured")
    return hmac.new(
        settings.worker_shared_secret.encode(),
        _job_message(session_id, message_id),
        hashlib.sha256,
    ).hexdigest()


def verify_job(session_id: str, message_id: str, signature: str | None) -> bool:
    if not signature or not settings.worker_shared_secret:
        return False
    expected = sign_job(session_id, message_id)
    return hmac.compare_digest(expected, signature)
