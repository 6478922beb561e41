import sys
import time
from pathlib import Path

import jwt
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import settings as app_settings
from auth import AuthError, authenticate, mint_token

SECRET = "jwt-unit-secret"


@pytest.fixture(autouse=True)
def _secret(monkeypatch):
    monkeypatch.setattr(app_settings, "AUTH_JWT_SECRET", SECRET)
    monkeypatch.setattr(app_settings, "AUTH_JWT_ISSUER", None)
    monkeypatch.setattr(app_settings, "AUTH_JWT_AUDIENCE", None)


def test_authenticate_reads_claims():
    token = mint_token("acct-7", {"role": "influencer", "email": "i@example.com", "name": "Ivy"})

    account = authenticate(f"Bearer {token}")

    assert account.account_id == "acct-7"
    assert account.role == "influencer"
    assert account.email == "i@example.com"
    assert account.name == "Ivy"


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer "])
def test_malformed_headers_rejected(header):
    with pytest.raises(AuthError):
        authenticate(header)


def test_expired_token_rejected():
    token = mint_token("acct-7", ttl=-10)
    with pytest.raises(AuthError):
        authenticate(f"Bearer {token}")


def test_token_signed_with_other_secret_rejected():
    now = int(time.time())
    token = jwt.encode({"sub": "acct-7", "iat": now, "exp": now + 60}, "other", algorithm="HS256")
    with pytest.raises(AuthError):
        authenticate(f"Bearer {token}")


def test_unknown_role_rejected():
    token = mint_token("acct-7", {"role": "admin"})
    with pytest.raises(AuthError):
        authenticate(f"Bearer {token}")


def test_audience_enforced_when_configured(monkeypatch):
    monkeypatch.setattr(app_settings, "AUTH_JWT_AUDIENCE", "influencerhub")
    token = mint_token("acct-7")
    assert authenticate(f"Bearer {token}").account_id == "acct-7"

    now = int(time.time())
    foreign = jwt.encode({"sub": "acct-7", "iat": now, "exp": now + 60, "aud": "elsewhere"}, SECRET, algorithm="HS256")
    with pytest.raises(AuthError):
        authenticate(f"Bearer {foreign}")


def test_missing_secret_is_an_auth_error(monkeypatch):
    monkeypatch.setattr(app_settings, "AUTH_JWT_SECRET", None)
    with pytest.raises(AuthError):
        authenticate("Bearer whatever")
