import base64

import pytest
from fastapi import HTTPException
from jose import jwt
from starlette.requests import Request

from mailbill.api import auth
from mailbill.core.config import settings

SIGNING_SECRET = "jwks-signing-secret"


def _request(token):
    return Request({"type": "http", "headers": [(b"authorization", f"Bearer {token}".encode())]})


@pytest.fixture
def jwks(monkeypatch):
    k = base64.urlsafe_b64encode(SIGNING_SECRET.encode()).rstrip(b"=").decode()
    monkeypatch.setattr(settings, "supabase_jwks_url", "https://auth.example.test/auth/v1/keys")
    monkeypatch.setattr(settings, "supabase_project_url", None)
    monkeypatch.setattr(auth, "_get_jwks", lambda: {"keys": [{"kty": "oct", "kid": "k1", "alg": "HS256", "k": k}]})


def test_verified_token_resolves_user(jwks):
    token = jwt.encode({"sub": "user-1", "email": "owner@example.com"}, SIGNING_SECRET, algorithm="HS256",
                       headers={"kid": "k1"})

    user = auth.get_current_user(_request(token))

    assert user == {"id": "user-1", "email": "owner@example.com"}


def test_forged_signature_rejected_when_jwks_configured(jwks):
    token = jwt.encode({"sub": "victim-user", "email": "v@x.com"}, "not-the-secret", algorithm="HS256",
                       headers={"kid": "k1"})

    with pytest.raises(HTTPException) as excinfo:
        auth.get_current_user(_request(token))

    assert excinfo.value.status_code == 401


def test_unverified_claims_only_without_jwks(monkeypatch):
    monkeypatch.setattr(settings, "supabase_jwks_url", None)
    token = jwt.encode({"sub": "dev-user"}, "anything", algorithm="HS256")

    assert auth.get_current_user(_request(token))["id"] == "dev-user"
    with pytest.raises(HTTPException) as excinfo:
        auth.get_current_user(_request("not-a-jwt"))
    assert excinfo.value.status_code == 401
