"""
Local login sessions (the `login_sessions` table). One row per browser session, holding the
token set so refresh can replace it; deleted on logout.
"""
import secrets

from sqlalchemy.orm import Session

from oidc_rp.models import LoginSession, as_utc
from oidc_rp.token_client import TokenSet


def tokens_of(session: LoginSession) -> TokenSet:
    return TokenSet(
        access_token=session.access_token,
        token_type=session.token_type,
        id_token=session.id_token,
        refresh_token=session.refresh_token,
        expires_at=as_utc(session.expires_at),
        refresh_expires_at=as_utc(session.refresh_expires_at),
        scope=session.scope,
    )


def create_session(db: Session, account_id: int, tokens: TokenSet) -> LoginSession:
    session = LoginSession(id=secrets.token_urlsafe(32), account_id=account_id, access_token="")
    _apply(session, tokens)
    db.add(session)
    db.commit()
    return session


def get_session(db: Session, session_id: str | None) -> LoginSession | None:
    if not session_id:
        return None
    return db.get(LoginSession, session_id)


def replace_tokens(db: Session, session: LoginSession, tokens: TokenSet) -> LoginSession:
    _apply(session, tokens)
    db.commit()
    return session


def delete_session(db: Session, session: LoginSession) -> None:
    db.delete(session)
    db.commit()


def _apply(session: LoginSession, tokens: TokenSet) -> None:
    session.access_token = tokens.access_token
    session.token_type = tokens.token_type
    # A refresh response may omit the ID token; keep the one from login for logout hints
    if tokens.id_token:
        session.id_token = tokens.id_token
    session.refresh_token = tokens.refresh_token
    session.expires_at = tokens.expires_at
    session.refresh_expires_at = tokens.refresh_expires_at
    session.scope = tokens.scope
