"""
Map a verified claim set to a local account.
Order: existing binding, then (optionally) link an existing account, then (optionally) create one.
Account and binding are written in the same transaction.
"""
import logging
import re
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from oidc_rp.config import Settings
from oidc_rp.errors import AmbiguousIdentity, IdentityResolutionFailed
from oidc_rp.models import Account, IdentityBinding

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def format_claims(template: str, claims: dict, *, error_on_missing: bool = False) -> str:
    """
    Interpolate {claim} placeholders, e.g. "{given_name} {family_name}".
    Missing claims render empty unless error_on_missing, in which case IdentityResolutionFailed is raised.
    """

    def _sub(match: re.Match) -> str:
        key = match.group(1).strip()
        value = claims.get(key)
        if value is None or value == "":
            if error_on_missing:
                raise IdentityResolutionFailed(
                    f"User claim incomplete: {key!r} is missing",
                    stage="identity",
                    error="incomplete_user_claim",
                )
            return ""
        return str(value)

    return _PLACEHOLDER.sub(_sub, template).strip()


def template_keys(template: str) -> set[str]:
    return {m.strip() for m in _PLACEHOLDER.findall(template or "")}


@dataclass(frozen=True)
class UserData:
    """Fields taken from the claims into the local account."""

    identity: str
    username: str
    nickname: str
    email: str | None
    display_name: str


class IdentityResolver:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def extract(self, claims: dict) -> UserData:
        s = self.settings
        raw = claims.get(s.identity_key)
        if raw is None or str(raw).strip() == "":
            raise IdentityResolutionFailed(
                f"No identity found in claim {s.identity_key!r}",
                stage="identity",
                error="no_identity",
            )
        identity = str(raw).strip()
        nickname = str(claims.get(s.nickname_key) or identity).strip()
        email = format_claims(s.email_format, claims, error_on_missing=True) if s.email_format else ""
        display_name = format_claims(s.displayname_format, claims) if s.displayname_format else ""
        return UserData(
            identity=identity,
            username=identity,
            nickname=nickname,
            email=email or None,
            display_name=display_name or nickname,
        )

    def _bound_account(self, issuer: str, subject: str) -> Account | None:
        binding = self.db.scalar(
            select(IdentityBinding).where(IdentityBinding.issuer == issuer, IdentityBinding.subject == subject)
        )
        return binding.account if binding is not None else None

    def _link_candidates(self, user: UserData) -> list[Account]:
        if self.settings.identify_with_username:
            stmt = select(Account).where(func.lower(Account.username) == user.username.lower())
        else:
            if not user.email:
                return []
            stmt = select(Account).where(func.lower(Account.email) == user.email.lower())
        return list(self.db.scalars(stmt.limit(2)))

    def _check_active(self, account: Account) -> Account:
        if not account.is_active:
            raise IdentityResolutionFailed(
                f"Account {account.id} is disabled", stage="identity", error="account_disabled"
            )
        return account

    def resolve(self, claims: dict, issuer: str) -> Account:
        """
        Return the local account for these claims, binding or creating one as policy allows.
        Raises IdentityResolutionFailed or AmbiguousIdentity.
        """
        user = self.extract(claims)
        account = self._bound_account(issuer, user.identity)
        if account is not None:
            logger.debug("Identity %s@%s already bound to account %s", user.identity, issuer, account.id)
            return self._check_active(account)

        if self.settings.link_existing_users:
            candidates = self._link_candidates(user)
            if len(candidates) > 1:
                raise AmbiguousIdentity(
                    f"More than one account matches identity {user.identity!r}",
                    stage="identity",
                    error="ambiguous_identity",
                )
            if candidates:
                account = self._check_active(candidates[0])
                return self._bind(issuer, user.identity, account)

        if not self.settings.create_if_does_not_exist:
            raise IdentityResolutionFailed(
                f"No local account for identity {user.identity!r} and account creation is disabled",
                stage="identity",
                error="no_account",
            )

        return self._create(issuer, user)

    def _bind(self, issuer: str, subject: str, account: Account) -> Account:
        self.db.add(IdentityBinding(issuer=issuer, subject=subject, account_id=account.id))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._lost_race(issuer, subject)
        logger.info("Linked identity %s@%s to existing account %s", subject, issuer, account.id)
        return account

    def _create(self, issuer: str, user: UserData) -> Account:
        existing = self.db.scalar(select(Account).where(Account.username == user.username))
        if existing is not None:
            raise IdentityResolutionFailed(
                f"Username {user.username!r} already exists and linking existing users is disabled",
                stage="identity",
                error="username_exists",
            )
        account = Account(
            username=user.username,
            nickname=user.nickname,
            email=user.email,
            display_name=user.display_name,
        )
        try:
            self.db.add(account)
            self.db.flush()
            self.db.add(IdentityBinding(issuer=issuer, subject=user.identity, account_id=account.id))
            self.db.commit()
        except IntegrityError:
            # Another request created the same binding (or username) first; nothing of ours remains
            self.db.rollback()
            return self._lost_race(issuer, user.identity)
        logger.info("Created account %s for identity %s@%s", account.id, user.identity, issuer)
        return account

    def _lost_race(self, issuer: str, subject: str) -> Account:
        account = self._bound_account(issuer, subject)
        if account is None:
            raise IdentityResolutionFailed(
                f"Could not bind identity {subject!r}", stage="identity", error="binding_failed"
            )
        return self._check_active(account)
