"""
Relying-party web app.
GET /login, /start-login, callback (/auth?action=openid-connect-authorize or /openid-connect-authorize),
/auth-url, /me, /logout. Each request builds its own Settings and AuthFlowController.
"""
import html
import logging
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from oidc_rp.audit import AuditSink, get_client_ip
from oidc_rp.audit import router as audit_router
from oidc_rp.config import (
    CALLBACK_ACTION,
    CALLBACK_PATH_ALTERNATE,
    CALLBACK_PATH_DEFAULT,
    LOGIN_PATH,
    SESSION_COOKIE_NAME,
    Settings,
    load_settings,
    read_stored_settings,
)
from oidc_rp.database import get_db, init_db
from oidc_rp.errors import (
    AmbiguousIdentity,
    AuthError,
    AuthorizationDenied,
    ConfigurationError,
    IdentityResolutionFailed,
    InvalidState,
    SessionExpired,
)
from oidc_rp.flow import AuthFlowController
from oidc_rp.models import LoginSession
from oidc_rp.sessions import get_session

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    yield


app = FastAPI(title="OIDC Relying Party", version="1.0.0", lifespan=lifespan)


def get_settings() -> Settings:
    """Dependency: settings loaded fresh for this request."""
    return load_settings(read_stored_settings())


def get_controller(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> AuthFlowController:
    return AuthFlowController(db, settings, audit_sink=AuditSink(db, settings, ip=get_client_ip(request)))


def current_session(request: Request, db: Session = Depends(get_db)) -> LoginSession | None:
    return get_session(db, request.cookies.get(SESSION_COOKIE_NAME))


def _login_redirect(path: str) -> str:
    return f"{LOGIN_PATH}?redirect_to={quote(path, safe='/')}"


def enforce_privacy(
    request: Request,
    settings: Settings = Depends(get_settings),
    session: LoginSession | None = Depends(current_session),
) -> None:
    """With enforce_privacy, anonymous visitors are sent to the login page."""
    if settings.enforce_privacy and session is None:
        raise HTTPException(status_code=302, headers={"Location": _login_redirect(request.url.path)})


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def _error_page(err: AuthError) -> HTMLResponse:
    """User-facing rendering of a failed flow. Never includes token values."""
    if isinstance(err, InvalidState):
        return _page(
            "Error",
            f'<p>Invalid or expired state. Please try <a href="{LOGIN_PATH}">logging in</a> again.</p>',
            400,
        )
    if isinstance(err, AuthorizationDenied):
        return _page("Login error", f"<p>{html.escape(err.detail)}</p>", 400)
    if isinstance(err, ConfigurationError):
        return _page("Configuration error", "<p>Login is not configured. Contact the site administrator.</p>", 500)
    if isinstance(err, (IdentityResolutionFailed, AmbiguousIdentity)):
        return _page("Login failed", f"<p>{html.escape(err.detail)}</p>", 403)
    return _page("Login failed", f"<p>{html.escape(err.detail)}</p>", 502)


@app.exception_handler(ConfigurationError)
def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Unusable settings (bad stored values, unreadable file) render the configuration error page."""
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return _error_page(exc)


def _set_session_cookie(response, session_id: str, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_id,
        httponly=True,
        samesite="lax",
        secure=settings.site_url.startswith("https://"),
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "oidc_rp"}


@app.get("/", response_class=HTMLResponse, dependencies=[Depends(enforce_privacy)])
def home(session: LoginSession | None = Depends(current_session)):
    """Home page: who is logged in, or a login link."""
    if session is None:
        return _page("OIDC Relying Party", f'<p><a href="{LOGIN_PATH}">Log in</a></p>')
    name = session.account.display_name or session.account.username
    return _page(
        "OIDC Relying Party",
        f'<p>Logged in as {html.escape(name)}.</p><p><a href="/me">Profile</a> | <a href="/logout">Log out</a></p>',
    )


@app.get(LOGIN_PATH, response_class=HTMLResponse)
def login(
    redirect_to: str | None = None,
    settings: Settings = Depends(get_settings),
    controller: AuthFlowController = Depends(get_controller),
):
    """Button login type shows a login link; auto login type goes straight to the IdP."""
    if settings.login_type == "auto":
        return start_login(redirect_to, controller)
    href = "/start-login" + (f"?redirect_to={quote(redirect_to, safe='/')}" if redirect_to else "")
    return _page("Log in", f'<p><a href="{html.escape(href)}">Login with OpenID Connect</a></p>')


@app.get("/start-login")
def start_login(redirect_to: str | None = None, controller: AuthFlowController = Depends(get_controller)):
    """Create state and redirect to the IdP authorization endpoint."""
    try:
        url = controller.start_login(redirect_to)
    except AuthError as e:
        return _error_page(e)
    return RedirectResponse(url=url, status_code=302)


def _callback(request: Request, controller: AuthFlowController):
    params = request.query_params
    try:
        result = controller.handle_callback(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
    except AuthError as e:
        return _error_page(e)
    response = RedirectResponse(url=result.redirect_to, status_code=302)
    _set_session_cookie(response, result.session.id, controller.settings)
    return response


@app.get(CALLBACK_PATH_DEFAULT)
def callback_default(request: Request, action: str | None = None, controller: AuthFlowController = Depends(get_controller)):
    """Default callback: /auth?action=openid-connect-authorize&code=...&state=..."""
    if action != CALLBACK_ACTION:
        raise HTTPException(status_code=404, detail="Unknown action")
    return _callback(request, controller)


@app.get(CALLBACK_PATH_ALTERNATE)
def callback_alternate(request: Request, controller: AuthFlowController = Depends(get_controller)):
    """Alternate callback path. Accepted whichever redirect_uri_mode is configured."""
    return _callback(request, controller)


@app.get("/auth-url")
def auth_url(redirect_to: str | None = None, controller: AuthFlowController = Depends(get_controller)):
    """Authentication URL for embedding a login link elsewhere."""
    try:
        return {"url": controller.get_authentication_url(redirect_to)}
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail={"error": e.kind, "error_description": str(e)})


@app.get("/me", response_class=HTMLResponse)
def me(
    session: LoginSession | None = Depends(current_session),
    controller: AuthFlowController = Depends(get_controller),
):
    """Profile of the logged-in account. Refreshes the access token when it has expired."""
    if session is None:
        return RedirectResponse(url=_login_redirect("/me"), status_code=302)
    try:
        session = controller.maybe_refresh(session)
    except SessionExpired:
        result = controller.logout(session, expired=True)
        if result.redirect_to:
            response = RedirectResponse(url=result.redirect_to, status_code=302)
        else:
            response = _page("Session expired", f'<p>Your session has expired. <a href="{LOGIN_PATH}">Log in</a> again.</p>', 401)
        response.delete_cookie(SESSION_COOKIE_NAME)
        return response
    account = session.account
    rows = "".join(
        f"<tr><th>{label}</th><td>{html.escape(str(value or ''))}</td></tr>"
        for label, value in [
            ("Username", account.username),
            ("Nickname", account.nickname),
            ("Display name", account.display_name),
            ("Email", account.email),
        ]
    )
    return _page("Profile", f'<table>{rows}</table><p><a href="/logout">Log out</a></p>')


@app.get("/logout")
def logout(
    session: LoginSession | None = Depends(current_session),
    controller: AuthFlowController = Depends(get_controller),
):
    """End the local session; continue to the IdP end-session endpoint when configured."""
    result = controller.logout(session)
    if result.redirect_to:
        response = RedirectResponse(url=result.redirect_to, status_code=302)
    else:
        response = _page("Session expired", f'<p>Your session has expired. <a href="{LOGIN_PATH}">Log in</a> again.</p>', 401)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


app.include_router(audit_router, dependencies=[Depends(enforce_privacy)])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "oidc_rp.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
