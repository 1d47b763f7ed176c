import logging
import time
from typing import Optional, Dict

import requests
from fastapi import Depends, HTTPException, Request
from jose import jwt
from jose.exceptions import JOSEError
from sqlalchemy.orm import Session

from mailbill.api.deps import get_db
from mailbill.core.config import settings
from mailbill.core.timeutil import utcnow
from mailbill.models import ApiKey, User

logger = logging.getLogger(__name__)


class CurrentUser(Dict[str, str]):
    id: str
    email: Optional[str]


# Simple JWKS cache
_JWKS_CACHE: dict | None = None
_JWKS_TS: float | None = None
_JWKS_TTL = 3600.0  # seconds


def _get_jwks() -> dict:
    global _JWKS_CACHE, _JWKS_TS
    now = time.time()
    if _JWKS_CACHE and _JWKS_TS and (now - _JWKS_TS) < _JWKS_TTL:
        return _JWKS_CACHE
    jwks_url = settings.supabase_jwks_url
    if not jwks_url:
        raise HTTPException(status_code=500,
                            detail="Supabase JWKS URL not configured (SUPABASE_JWKS_URL or SUPABASE_PROJECT_URL)")
    try:
        resp = requests.get(jwks_url, timeout=5)
        resp.raise_for_status()
        _JWKS_CACHE = resp.json()
        _JWKS_TS = now
        return _JWKS_CACHE
    except requests.RequestException as e:
        raise HTTPException(status_code=503, detail=f"Failed to fetch JWKS: {e}")


def _verify_jwt(token: str) -> dict:
    try:
        header = jwt.get_unverified_header(token)
    except JOSEError:
        raise HTTPException(status_code=401, detail="Invalid token header")
    keys = _get_jwks().get("keys", [])
    if not keys:
        raise HTTPException(status_code=401, detail="JWKS keys not available")
    # Unknown kid falls back to the first key
    key = next((k for k in keys if k.get("kid") == header.get("kid")), keys[0])

    issuer = None
    if settings.supabase_project_url:
        issuer = settings.supabase_project_url.rstrip('/') + "/auth/v1"

    try:
        return jwt.decode(
            token,
            key,
            algorithms=[key.get("alg") or "RS256"],
            issuer=issuer,
            options={"verify_aud": False},
        )
    except JOSEError as e:
        raise HTTPException(status_code=401, detail=f"Token verification failed: {e}")


def _verify_or_decode_unverified(token: str) -> dict:
    """
    Verify against JWKS when it is configured; any failure is a 401.
    Without a JWKS URL (local development) the unverified claims are used.
    """
    if settings.supabase_jwks_url:
        return _verify_jwt(token)
    logger.warning("SUPABASE_JWKS_URL not configured; accepting unverified token claims")
    try:
        return jwt.get_unverified_claims(token)
    except JOSEError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _bearer_token(request: Request) -> Optional[str]:
    auth: Optional[str] = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def get_current_user(request: Request) -> CurrentUser:
    """Validate the Supabase JWT from ``Authorization: Bearer <token>``."""
    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    payload = _verify_or_decode_unverified(token)

    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: user id not found")
    return CurrentUser(id=user_id, email=payload.get("email"))  # type: ignore


def get_api_key_user(request: Request, db: Session = Depends(get_db)) -> CurrentUser:
    """Resolve the caller from an API key in ``X-API-Key`` or ``Authorization: Bearer``.

    Only active keys are accepted; a successful lookup stamps ``last_used_at``.
    """
    raw = (request.headers.get("x-api-key") or "").strip() or _bearer_token(request)
    if not raw:
        raise HTTPException(status_code=401, detail="API key required")

    key = db.query(ApiKey).filter(ApiKey.api_key == raw, ApiKey.is_active.is_(True)).first()
    if key is None:
        logger.warning("Rejected request with unknown or inactive API key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    key.last_used_at = utcnow()
    db.commit()

    user = db.get(User, key.user_id)
    return CurrentUser(id=key.user_id, email=user.email if user else None)  # type: ignore
