"""
Token and userinfo endpoint exchanges with the IdP.
Failures carry the IdP's error/error_description and are marked transient (network, timeout, 5xx)
or provider-rejected (4xx). No retries here; authorization codes are single-use.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import httpx

from oidc_rp.config import Settings
from oidc_rp.errors import AuthError, RefreshFailed, TokenExchangeFailed, UserinfoFailed

logger = logging.getLogger(__name__)


@dataclass
class TokenSet:
    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    refresh_expires_at: datetime | None = None
    scope: str = ""

    def access_token_expired(self, now: datetime | None = None) -> bool:
        """True at or past expires_at. Tokens without a known lifetime never expire locally."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def refresh_token_expired(self, now: datetime | None = None) -> bool:
        if self.refresh_expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.refresh_expires_at


def _expiry(value, issued_at: datetime) -> datetime | None:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return issued_at + timedelta(seconds=seconds)


def _error_body(r: httpx.Response) -> dict:
    """Parse an OAuth error body ({"error": ..., "error_description": ...}); {} if not JSON."""
    try:
        body = r.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    # Some providers nest it, e.g. FastAPI's {"detail": {"error": ...}}
    if "error" not in body and isinstance(body.get("detail"), dict):
        body = body["detail"]
    return body


class TokenClient:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def _http_options(self) -> dict:
        return {
            "timeout": float(self.settings.http_request_timeout),
            "verify": not self.settings.no_sslverify,
        }

    def _request(self, error_cls: type[AuthError], stage: str, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request; convert transport failures and non-2xx answers into error_cls."""
        if not url:
            raise error_cls(f"No endpoint configured for {stage}", stage=stage, error="configuration_error")
        started = time.monotonic()
        try:
            if method == "POST":
                r = httpx.post(url, **kwargs, **self._http_options)
            else:
                r = httpx.get(url, **kwargs, **self._http_options)
        except httpx.TimeoutException as e:
            logger.warning("%s request to %s timed out after %.1fs", stage, url, time.monotonic() - started)
            raise error_cls(f"Request timed out: {e}", stage=stage, transient=True)
        except httpx.HTTPError as e:
            logger.warning("%s request to %s failed: %s", stage, url, e)
            raise error_cls(f"Request failed: {e}", stage=stage, transient=True)

        if r.status_code != 200:
            err = _error_body(r)
            transient = r.status_code >= 500 or r.status_code == 429
            logger.warning("%s request to %s returned %s (error=%s)", stage, url, r.status_code, err.get("error"))
            raise error_cls(
                f"{stage} returned HTTP {r.status_code}",
                stage=stage,
                error=err.get("error") if isinstance(err.get("error"), str) else None,
                error_description=err.get("error_description") or (None if err else r.text[:200] or None),
                status_code=r.status_code,
                transient=transient,
            )
        return r

    def _token_request(self, error_cls: type[AuthError], stage: str, data: dict) -> TokenSet:
        issued_at = datetime.now(timezone.utc)
        r = self._request(
            error_cls,
            stage,
            "POST",
            self.settings.endpoint_token,
            data=data,
            headers={"Accept": "application/json"},
        )
        try:
            body = r.json()
        except ValueError:
            raise error_cls("Token endpoint returned a non-JSON body", stage=stage, status_code=r.status_code)
        if not isinstance(body, dict):
            raise error_cls("Token endpoint returned an unexpected body", stage=stage, status_code=r.status_code)
        if "error" in body:
            # 200 with an error body; some providers do this
            raise error_cls(
                "Token endpoint returned an error",
                stage=stage,
                error=str(body.get("error")),
                error_description=body.get("error_description"),
                status_code=r.status_code,
            )
        access_token = body.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise error_cls("Token response is missing access_token", stage=stage, status_code=r.status_code)

        return TokenSet(
            access_token=access_token,
            token_type=str(body.get("token_type") or "Bearer"),
            id_token=body.get("id_token") or None,
            refresh_token=body.get("refresh_token") or None,
            expires_at=_expiry(body.get("expires_in"), issued_at),
            refresh_expires_at=_expiry(body.get("refresh_expires_in"), issued_at),
            scope=str(body.get("scope") or ""),
        )

    def exchange_code(self, code: str, redirect_uri: str, code_verifier: str | None = None) -> TokenSet:
        """grant_type=authorization_code. redirect_uri must be the exact value sent to /authorize."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return self._token_request(TokenExchangeFailed, "exchange", data)

    def refresh(self, refresh_token: str) -> TokenSet:
        """grant_type=refresh_token. A provider that does not rotate keeps the old refresh token valid."""
        tokens = self._token_request(
            RefreshFailed,
            "refresh",
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
            },
        )
        if tokens.refresh_token is None:
            tokens.refresh_token = refresh_token
        return tokens

    def fetch_userinfo(self, access_token: str) -> dict:
        r = self._request(
            UserinfoFailed,
            "userinfo",
            "GET",
            self.settings.endpoint_userinfo,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        try:
            claims = r.json()
        except ValueError:
            raise UserinfoFailed("Userinfo endpoint returned a non-JSON body", stage="userinfo", status_code=r.status_code)
        if not isinstance(claims, dict):
            raise UserinfoFailed("Userinfo response is not a JSON object", stage="userinfo", status_code=r.status_code)
        return claims
