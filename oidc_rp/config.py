"""
Relying-party configuration.
Stored settings (JSON file standing in for the settings store) are merged with OIDC_* environment
constants, coerced and validated once into an immutable Settings value that is passed explicitly.
"""
import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from oidc_rp.errors import ConfigurationError

# Database for states, accounts, login sessions and audit records
DATABASE_URL = os.environ.get("RP_DATABASE_URL", "sqlite:///./oidc_rp.db")

# JSON file holding the stored settings; missing file means "all defaults"
SETTINGS_PATH = os.environ.get("RP_SETTINGS_PATH", "oidc_rp_settings.json")

SESSION_COOKIE_NAME = "rp_session"

# Callback paths; the IdP registration must match these exactly
CALLBACK_PATH_DEFAULT = "/auth"
CALLBACK_ACTION = "openid-connect-authorize"
CALLBACK_PATH_ALTERNATE = "/openid-connect-authorize"
LOGIN_PATH = "/login"

LOGIN_TYPES = ("button", "auto")
REDIRECT_URI_MODES = ("default", "alternate")

# Constants that, when set in the environment, win over the stored value
ENV_OVERRIDES = {
    "client_id": "OIDC_CLIENT_ID",
    "client_secret": "OIDC_CLIENT_SECRET",
    "endpoint_login": "OIDC_ENDPOINT_LOGIN_URL",
    "endpoint_userinfo": "OIDC_ENDPOINT_USERINFO_URL",
    "endpoint_token": "OIDC_ENDPOINT_TOKEN_URL",
    "endpoint_end_session": "OIDC_ENDPOINT_LOGOUT_URL",
}

# Renamed keys still accepted from older stored settings
LEGACY_KEYS = {
    "ep_login": "endpoint_login",
    "ep_token": "endpoint_token",
    "ep_userinfo": "endpoint_userinfo",
}


@dataclass(frozen=True)
class Settings:
    # OAuth client
    login_type: str = "button"
    client_id: str = ""
    client_secret: str = ""
    scope: str = ""
    endpoint_login: str = ""
    endpoint_userinfo: str = ""
    endpoint_token: str = ""
    endpoint_end_session: str = ""
    issuer: str = ""

    # Non-standard
    no_sslverify: bool = False
    http_request_timeout: int = 5
    clock_skew: int = 60
    pkce_enable: bool = True
    identity_key: str = "preferred_username"
    nickname_key: str = "preferred_username"
    email_format: str = "{email}"
    displayname_format: str = ""
    identify_with_username: bool = False
    state_time_limit: int = 180

    # Flow policy
    site_url: str = "http://127.0.0.1:8000"
    enforce_privacy: bool = False
    redirect_uri_mode: str = "default"
    token_refresh_enable: bool = True
    link_existing_users: bool = False
    create_if_does_not_exist: bool = True
    redirect_user_back: bool = False
    redirect_on_logout: bool = True

    # Audit
    enable_logging: bool = False
    log_limit: int = 1000

    @property
    def redirect_uri(self) -> str:
        """Callback URL sent to the IdP. Must be registered there verbatim."""
        base = self.site_url.rstrip("/")
        if self.redirect_uri_mode == "alternate":
            return f"{base}{CALLBACK_PATH_ALTERNATE}"
        return f"{base}{CALLBACK_PATH_DEFAULT}?action={CALLBACK_ACTION}"

    @property
    def login_url(self) -> str:
        return f"{self.site_url.rstrip('/')}{LOGIN_PATH}"

    def require_flow_config(self) -> None:
        """Fail fast before a flow starts if the client cannot talk to the IdP at all."""
        missing = [name for name in ("client_id", "endpoint_login", "endpoint_token") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required setting(s): {', '.join(missing)}", stage="config")


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if value is None:
        return False
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("", "0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Setting {name!r} must be a boolean, got {value!r}", stage="config")


def _to_int(name: str, value: Any, default: int) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Setting {name!r} must be an integer, got {value!r}", stage="config")
    if result == 0:
        return default
    if result < 0:
        raise ConfigurationError(f"Setting {name!r} must not be negative, got {result}", stage="config")
    return result


def _normalize_legacy(values: dict[str, Any]) -> dict[str, Any]:
    for old, new in LEGACY_KEYS.items():
        if old in values:
            legacy = values.pop(old)
            if not values.get(new):
                values[new] = legacy
    if "alternate_redirect_uri" in values:
        alternate = values.pop("alternate_redirect_uri")
        if "redirect_uri_mode" not in values:
            values["redirect_uri_mode"] = "alternate" if _to_bool("alternate_redirect_uri", alternate) else "default"
    return values


def load_settings(stored: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from stored values and environment constants.
    Unknown keys are ignored; empty stored values fall back to defaults for numeric options.
    """
    environ = os.environ if environ is None else environ
    values = _normalize_legacy(dict(stored or {}))
    for key, env_name in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[key] = environ[env_name]

    defaults = Settings()
    kwargs: dict[str, Any] = {}
    for f in fields(Settings):
        if f.name not in values:
            continue
        raw = values[f.name]
        default = getattr(defaults, f.name)
        if isinstance(default, bool):
            kwargs[f.name] = _to_bool(f.name, raw)
        elif isinstance(default, int):
            kwargs[f.name] = _to_int(f.name, raw, default)
        else:
            kwargs[f.name] = "" if raw is None else str(raw).strip()

    settings = Settings(**kwargs)
    if settings.login_type not in LOGIN_TYPES:
        raise ConfigurationError(f"login_type must be one of {LOGIN_TYPES}", stage="config")
    if settings.redirect_uri_mode not in REDIRECT_URI_MODES:
        raise ConfigurationError(f"redirect_uri_mode must be one of {REDIRECT_URI_MODES}", stage="config")
    if not settings.site_url:
        raise ConfigurationError("site_url must not be empty", stage="config")
    return settings


def read_stored_settings(path: str | None = None) -> dict[str, Any]:
    """Read the stored settings JSON. A missing file is an empty store."""
    p = Path(path or SETTINGS_PATH)
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read settings from {p}: {e}", stage="config")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {p} must contain a JSON object", stage="config")
    return data
