"""
ID token claims for the code flow.
The ID token is received directly from the token endpoint over TLS, so its signature is not checked
(no discovery / JWKS). Audience, expiry (with clock skew leeway), issuer (when configured) and nonce are.
"""
import logging

import jwt

from oidc_rp.config import Settings
from oidc_rp.errors import TokenExchangeFailed

logger = logging.getLogger(__name__)


def decode_id_token(id_token: str, settings: Settings, nonce: str | None = None) -> dict:
    """Return the ID token payload or raise TokenExchangeFailed(error="invalid_id_token")."""
    options = {
        "verify_signature": False,
        "verify_exp": True,
        "verify_iat": True,
        "verify_aud": True,
        "verify_iss": bool(settings.issuer),
        "require": ["sub", "aud", "exp"],
    }
    try:
        payload = jwt.decode(
            id_token,
            options=options,
            audience=settings.client_id,
            issuer=settings.issuer or None,
            leeway=settings.clock_skew,
        )
    except jwt.ExpiredSignatureError:
        raise TokenExchangeFailed("ID token expired", stage="id_token", error="invalid_id_token",
                                  error_description="ID token expired")
    except jwt.InvalidAudienceError:
        raise TokenExchangeFailed("ID token audience mismatch", stage="id_token", error="invalid_id_token",
                                  error_description="ID token was not issued for this client")
    except jwt.InvalidIssuerError:
        raise TokenExchangeFailed("ID token issuer mismatch", stage="id_token", error="invalid_id_token",
                                  error_description="ID token issuer does not match configuration")
    except jwt.InvalidTokenError as e:
        logger.debug("ID token rejected: %s", e)
        raise TokenExchangeFailed("ID token invalid", stage="id_token", error="invalid_id_token",
                                  error_description=str(e))

    if nonce is not None and payload.get("nonce") != nonce:
        raise TokenExchangeFailed("ID token nonce mismatch", stage="id_token", error="invalid_id_token",
                                  error_description="nonce does not match the authorization request")
    return payload
