"""
Authorization Code flow controller.
Idle -> AwaitingCallback -> Exchanging -> ResolvingIdentity -> SessionEstablished, or Failed from any
of them. Request-scoped: build one per request with the request's DB session and Settings.
Every failure is audited (stage, kind, provider error text) before it is raised to the caller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable
from urllib.parse import urlencode, urlsplit

from sqlalchemy.orm import Session

from oidc_rp import audit
from oidc_rp.audit import AuditSink
from oidc_rp.config import LOGIN_PATH, Settings
from oidc_rp.errors import (
    AmbiguousIdentity,
    AuthError,
    AuthorizationDenied,
    ConfigurationError,
    IdentityResolutionFailed,
    InvalidState,
    RefreshFailed,
    SessionExpired,
    TokenExchangeFailed,
    UserinfoFailed,
)
from oidc_rp.id_token import decode_id_token
from oidc_rp.identity import IdentityResolver, template_keys
from oidc_rp.models import Account, LoginSession
from oidc_rp.pkce import build_authorize_url, generate_nonce, generate_pkce
from oidc_rp.sessions import create_session, delete_session, replace_tokens, tokens_of
from oidc_rp.state_store import StateStore
from oidc_rp.token_client import TokenClient, TokenSet

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    RESOLVING_IDENTITY = "resolving_identity"
    SESSION_ESTABLISHED = "session_established"
    FAILED = "failed"


@dataclass
class SessionResult:
    session: LoginSession
    account: Account
    tokens: TokenSet
    redirect_to: str
    origin_url: str | None = None


@dataclass
class LogoutResult:
    redirect_to: str | None
    expired: bool = False
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def safe_origin(origin_url: str | None, site_url: str) -> str | None:
    """Keep origin_url only if it points back into this site (relative path or same scheme+host)."""
    if not origin_url:
        return None
    if origin_url.startswith("/") and not origin_url.startswith(("//", "/\\")):
        return origin_url
    origin, site = urlsplit(origin_url), urlsplit(site_url)
    if origin.scheme in ("http", "https") and (origin.scheme, origin.netloc) == (site.scheme, site.netloc):
        return origin_url
    return None


class AuthFlowController:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        *,
        state_store: StateStore | None = None,
        token_client: TokenClient | None = None,
        resolver: IdentityResolver | None = None,
        audit_sink: AuditSink | None = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.db = db
        self.settings = settings
        self.state_store = state_store or StateStore(db, ttl=settings.state_time_limit, now=now)
        self.token_client = token_client or TokenClient(settings)
        self.resolver = resolver or IdentityResolver(db, settings)
        self.audit = audit_sink or AuditSink(db, settings)
        self._now = now
        self.flow_state = FlowState.IDLE
        self.failure: AuthError | None = None

    def _fail(self, event_type: str, err: AuthError, account_id: int | None = None) -> AuthError:
        if err.stage is None:
            err.stage = self.flow_state.value
        self.flow_state = FlowState.FAILED
        self.failure = err
        self.audit.failure(event_type, err, account_id=account_id)
        return err

    # Login start

    def start_login(self, origin_url: str | None = None) -> str:
        """Persist a state record and return the IdP authorization URL to redirect to."""
        s = self.settings
        try:
            s.require_flow_config()
        except ConfigurationError as e:
            raise self._fail(audit.EVENT_LOGIN_STARTED, e)

        redirect_uri = s.redirect_uri
        payload = {"origin_url": safe_origin(origin_url, s.site_url), "redirect_uri": redirect_uri}
        code_challenge = None
        if s.pkce_enable:
            payload["code_verifier"], code_challenge = generate_pkce()
        if "openid" in s.scope.split():
            payload["nonce"] = generate_nonce()

        state = self.state_store.create(payload)
        url = build_authorize_url(
            endpoint=s.endpoint_login,
            client_id=s.client_id,
            redirect_uri=redirect_uri,
            scope=s.scope,
            state=state,
            code_challenge=code_challenge,
            nonce=payload.get("nonce"),
        )
        self.flow_state = FlowState.AWAITING_CALLBACK
        self.audit.record(audit.EVENT_LOGIN_STARTED, stage="start")
        return url

    def get_authentication_url(self, origin_url: str | None = None) -> str:
        """Login link for embedding in pages; each call mints its own state."""
        return self.start_login(origin_url)

    # Callback

    def _needs_userinfo(self, claims: dict) -> bool:
        if not self.settings.endpoint_userinfo:
            return False
        if not claims:
            return True
        s = self.settings
        wanted = {s.identity_key, s.nickname_key} | template_keys(s.email_format) | template_keys(s.displayname_format)
        return any(not claims.get(key) for key in wanted)

    def _issuer(self, claims: dict) -> str:
        if claims.get("iss"):
            return str(claims["iss"])
        if self.settings.issuer:
            return self.settings.issuer
        parts = urlsplit(self.settings.endpoint_login)
        return f"{parts.scheme}://{parts.netloc}"

    def handle_callback(
        self,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> SessionResult:
        """
        Validate state, exchange the code, gather claims, resolve the account and create the local session.
        Any failure is terminal for this attempt; the code is never exchanged twice.
        """
        self.flow_state = FlowState.AWAITING_CALLBACK
        self.audit.record(audit.EVENT_CALLBACK_RECEIVED, stage="callback")
        try:
            payload = self.state_store.validate_and_consume(state)
        except InvalidState as e:
            raise self._fail(audit.EVENT_STATE_INVALID, e)

        if error:
            raise self._fail(
                audit.EVENT_AUTHORIZATION_DENIED,
                AuthorizationDenied(
                    "IdP returned an error", stage="authorize", error=error, error_description=error_description
                ),
            )
        if not code:
            raise self._fail(
                audit.EVENT_TOKEN_EXCHANGE_FAILED,
                TokenExchangeFailed("Missing code parameter", stage="callback", error="invalid_request"),
            )

        self.flow_state = FlowState.EXCHANGING
        try:
            tokens = self.token_client.exchange_code(
                code,
                payload.get("redirect_uri") or self.settings.redirect_uri,
                code_verifier=payload.get("code_verifier"),
            )
            claims = decode_id_token(tokens.id_token, self.settings, payload.get("nonce")) if tokens.id_token else {}
        except TokenExchangeFailed as e:
            raise self._fail(audit.EVENT_TOKEN_EXCHANGE_FAILED, e)
        self.audit.record(audit.EVENT_TOKEN_EXCHANGE_OK, stage="exchange")

        if self._needs_userinfo(claims):
            try:
                userinfo = self.token_client.fetch_userinfo(tokens.access_token)
                if claims.get("sub") and userinfo.get("sub") and str(userinfo["sub"]) != str(claims["sub"]):
                    raise UserinfoFailed(
                        "Userinfo subject does not match ID token",
                        stage="userinfo",
                        error="sub_mismatch",
                    )
            except UserinfoFailed as e:
                raise self._fail(audit.EVENT_USERINFO_FAILED, e)
            # ID token claims win; userinfo fills the gaps
            claims = {**userinfo, **claims}

        self.flow_state = FlowState.RESOLVING_IDENTITY
        try:
            account = self.resolver.resolve(claims, self._issuer(claims))
        except (IdentityResolutionFailed, AmbiguousIdentity) as e:
            raise self._fail(audit.EVENT_IDENTITY_FAILED, e)
        self.audit.record(audit.EVENT_IDENTITY_RESOLVED, stage="identity", account_id=account.id)

        session = create_session(self.db, account.id, tokens)
        self.flow_state = FlowState.SESSION_ESTABLISHED
        self.audit.record(audit.EVENT_SESSION_ESTABLISHED, stage="session", account_id=account.id)

        origin_url = payload.get("origin_url")
        redirect_to = origin_url if self.settings.redirect_user_back and origin_url else "/"
        return SessionResult(
            session=session,
            account=account,
            tokens=tokens,
            redirect_to=redirect_to,
            origin_url=origin_url,
        )

    # Refresh and logout

    def session_expired(self, session: LoginSession) -> bool:
        """Access token past expiry and no way to refresh it."""
        tokens = tokens_of(session)
        now = self._now()
        if not tokens.access_token_expired(now):
            return False
        return not (
            self.settings.token_refresh_enable and tokens.refresh_token and not tokens.refresh_token_expired(now)
        )

    def maybe_refresh(self, session: LoginSession) -> LoginSession:
        """
        Return the session unchanged while its access token is valid; otherwise refresh it.
        Raises SessionExpired when refresh is disabled, impossible or rejected.
        """
        tokens = tokens_of(session)
        now = self._now()
        if not tokens.access_token_expired(now):
            return session

        if self.session_expired(session):
            err = SessionExpired("Access token expired and cannot be refreshed", stage="refresh")
            self.audit.failure(audit.EVENT_REFRESH_FAILED, err, account_id=session.account_id)
            raise err

        try:
            new_tokens = self.token_client.refresh(tokens.refresh_token)
            if new_tokens.id_token:
                decode_id_token(new_tokens.id_token, self.settings)
        except (RefreshFailed, TokenExchangeFailed) as e:
            self.audit.failure(audit.EVENT_REFRESH_FAILED, e, account_id=session.account_id)
            raise SessionExpired(
                "Token refresh failed",
                stage="refresh",
                error=e.error,
                error_description=e.error_description,
                status_code=e.status_code,
                transient=e.transient,
            ) from e

        replace_tokens(self.db, session, new_tokens)
        self.audit.record(audit.EVENT_TOKEN_REFRESHED, stage="refresh", account_id=session.account_id)
        return session

    def logout(self, session: LoginSession | None, expired: bool | None = None) -> LogoutResult:
        """
        Delete the local session and decide where the browser goes next.
        An expired session goes to the login page when redirect_on_logout is set, else reports an error.
        """
        if session is None:
            return LogoutResult(redirect_to="/")
        if expired is None:
            expired = self.session_expired(session)
        id_token = session.id_token
        account_id = session.account_id
        delete_session(self.db, session)
        self.audit.record(audit.EVENT_LOGOUT, stage="logout", account_id=account_id,
                          detail="session expired" if expired else None)

        s = self.settings
        if expired:
            if s.redirect_on_logout:
                return LogoutResult(redirect_to=LOGIN_PATH, expired=True)
            return LogoutResult(redirect_to=None, expired=True, error="session_expired")

        if s.endpoint_end_session:
            params = {"post_logout_redirect_uri": f"{s.site_url.rstrip('/')}/", "client_id": s.client_id}
            if id_token:
                params["id_token_hint"] = id_token
            separator = "&" if "?" in s.endpoint_end_session else "?"
            return LogoutResult(redirect_to=f"{s.endpoint_end_session}{separator}{urlencode(params)}")
        return LogoutResult(redirect_to="/")
