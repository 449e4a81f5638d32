"""
Creator Studio — core/security.py
─────────────────────────────────────────────────────────────────
Session tokens for the client API and shared-secret checks for
provider webhooks.

Sessions are issued by the app's sign-in flow (not part of this
service). We only read them: HS256 JWT, `sub` = owner id, sent as
the creatorstudio_session cookie or an Authorization: Bearer header.

Usage:
    from creatorstudio.core.security import get_current_user

    @router.get("/api/jobs")
    async def list_jobs(owner: str = Depends(get_current_user)): ...

    token = make_jwt({"sub": owner})                  # tests, tooling
    ok    = verify_hmac(secret, raw_body, signature)  # webhooks
─────────────────────────────────────────────────────────────────
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request, HTTPException
from jose import JWTError, jwt

from creatorstudio.core.config import cfg

logger = logging.getLogger("creatorstudio.security")

SESSION_COOKIE = "creatorstudio_session"
BEARER_PREFIX  = "Bearer "


# ─────────────────────────────────────────────
# Session tokens
# ─────────────────────────────────────────────
def make_jwt(claims: dict, ttl: Optional[timedelta] = None) -> str:
    """Sign `claims` with an expiry (SESSION_DAYS unless ttl is given)."""
    lifetime = ttl if ttl is not None else timedelta(days=cfg.SESSION_DAYS)
    signed   = dict(claims, exp=datetime.now(timezone.utc) + lifetime)
    return jwt.encode(signed, cfg.JWT_SECRET, algorithm=cfg.ALGORITHM)


def decode_jwt(token: str) -> dict:
    """Claims of a valid token. JWTError if forged or expired."""
    return jwt.decode(token, cfg.JWT_SECRET, algorithms=[cfg.ALGORITHM])


def session_token(request: Request) -> Optional[str]:
    """Cookie first, then the Authorization header."""
    cookie = request.cookies.get(SESSION_COOKIE)
    if cookie:
        return cookie
    header = request.headers.get("Authorization", "")
    if header.startswith(BEARER_PREFIX):
        return header[len(BEARER_PREFIX):].strip() or None
    return None


async def get_current_user(request: Request) -> str:
    """Dependency: the calling owner's id. 401 on any session problem."""
    token = session_token(request)
    if token is None:
        raise HTTPException(401, "Sign in to continue.")

    try:
        claims = decode_jwt(token)
    except JWTError as e:
        logger.warning(f"Rejected session token: {e}")
        raise HTTPException(401, "Your session has expired. Sign in again.")

    owner = claims.get("sub")
    if not owner:
        raise HTTPException(401, "Session token has no owner.")
    return str(owner)


# ─────────────────────────────────────────────
# Webhook signatures
# ─────────────────────────────────────────────
def sign_body(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of a raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_hmac(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_body(secret, body), signature.strip().lower())


def verify_token(secret: str, supplied: Optional[str]) -> bool:
    """Constant-time check of a shared secret echoed back as ?token=."""
    if not secret or not supplied:
        return False
    return hmac.compare_digest(secret.encode(), supplied.encode())
