"""
Typed failures raised by the state store, token client, identity resolver and flow controller.
Each carries the IdP error code/description when there is one, never token values.
"""


class AuthError(Exception):
    """Base class. `kind` is the stable name used in audit records."""

    kind = "auth_error"

    def __init__(
        self,
        message: str = "",
        *,
        stage: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ):
        super().__init__(message or error_description or error or self.kind)
        self.stage = stage
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        self.transient = transient

    @property
    def provider_rejected(self) -> bool:
        """True when the IdP answered and refused the request (as opposed to a network/server failure)."""
        if self.transient:
            return False
        return self.error is not None or (self.status_code is not None and 400 <= self.status_code < 500)

    @property
    def detail(self) -> str:
        """Non-secret text for logs and error pages."""
        if self.error and self.error_description:
            return f"{self.error}: {self.error_description}"
        return self.error_description or self.error or str(self)


class ConfigurationError(AuthError):
    kind = "configuration_error"


class InvalidState(AuthError):
    kind = "invalid_state"


class AuthorizationDenied(AuthError):
    """The IdP redirected back with ?error=... instead of a code."""

    kind = "authorization_denied"


class TokenExchangeFailed(AuthError):
    kind = "token_exchange_failed"


class RefreshFailed(AuthError):
    kind = "refresh_failed"


class UserinfoFailed(AuthError):
    kind = "userinfo_failed"


class IdentityResolutionFailed(AuthError):
    kind = "identity_resolution_failed"


class AmbiguousIdentity(AuthError):
    kind = "ambiguous_identity"


class SessionExpired(AuthError):
    kind = "session_expired"
