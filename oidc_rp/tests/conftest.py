"""
Pytest configuration for oidc_rp. In-memory SQLite so tests don't touch the filesystem.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["RP_DATABASE_URL"] = "sqlite:///:memory:"
# No stored settings file; tests build Settings explicitly
os.environ["RP_SETTINGS_PATH"] = "/nonexistent/oidc_rp_settings.json"
for _name in (
    "OIDC_CLIENT_ID",
    "OIDC_CLIENT_SECRET",
    "OIDC_ENDPOINT_LOGIN_URL",
    "OIDC_ENDPOINT_USERINFO_URL",
    "OIDC_ENDPOINT_TOKEN_URL",
    "OIDC_ENDPOINT_LOGOUT_URL",
):
    os.environ.pop(_name, None)

import time
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from oidc_rp.config import load_settings
from oidc_rp.database import SessionLocal, engine, init_db
from oidc_rp.models import Base

ISSUER = "https://idp.example"
CLIENT_ID = "rp-client"
TOKEN_URL = f"{ISSUER}/oauth2/token"
USERINFO_URL = f"{ISSUER}/oauth2/userinfo"
# HS256 with a throwaway key; the RP does not verify ID token signatures
ID_TOKEN_KEY = "test-signing-key-for-id-tokens-0123456789"

BASE_SETTINGS = {
    "client_id": CLIENT_ID,
    "client_secret": "rp-secret",
    "scope": "openid email profile",
    "endpoint_login": f"{ISSUER}/oauth2/authorize",
    "endpoint_token": TOKEN_URL,
    "endpoint_userinfo": USERINFO_URL,
    "endpoint_end_session": f"{ISSUER}/oauth2/logout",
    "site_url": "http://testserver",
    "enable_logging": True,
}


def make_settings(**overrides):
    return load_settings({**BASE_SETTINGS, **overrides}, environ={})


def make_id_token(nonce=None, **claims):
    now = int(time.time())
    payload = {"iss": ISSUER, "sub": "user-1", "aud": CLIENT_ID, "iat": now, "exp": now + 300}
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update(claims)
    return jwt.encode(payload, ID_TOKEN_KEY, algorithm="HS256")


def token_response(status_code=200, **body):
    return httpx.Response(status_code, json=body, request=httpx.Request("POST", TOKEN_URL))


def userinfo_response(status_code=200, **body):
    return httpx.Response(status_code, json=body, request=httpx.Request("GET", USERINFO_URL))


class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


# Helpers exposed as fixtures so test modules need not import conftest


@pytest.fixture(name="make_settings")
def make_settings_fixture():
    return make_settings


@pytest.fixture(name="make_id_token")
def make_id_token_fixture():
    return make_id_token


@pytest.fixture(name="token_response")
def token_response_fixture():
    return token_response


@pytest.fixture(name="userinfo_response")
def userinfo_response_fixture():
    return userinfo_response
