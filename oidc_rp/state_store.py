"""
Anti-forgery state records: created at login start, consumed once by the callback.
Backed by the `states` table so that every worker process sees the same records; consumption is a
single DELETE, so when two callbacks race on one token the database picks exactly one winner.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from oidc_rp.errors import InvalidState
from oidc_rp.models import StateRecord, as_utc

logger = logging.getLogger(__name__)

DEFAULT_TTL = 180


def generate_state() -> str:
    """Opaque value for CSRF protection; 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StateStore:
    def __init__(self, db: Session, ttl: int = DEFAULT_TTL, now: Callable[[], datetime] = _utc_now):
        self.db = db
        self.ttl = ttl
        self._now = now

    def create(self, payload: dict[str, Any]) -> str:
        """Persist a new state record and return its token."""
        token = generate_state()
        created_at = self._now()
        self.db.add(
            StateRecord(
                token=token,
                created_at=created_at,
                ttl=self.ttl,
                expires_at=created_at + timedelta(seconds=self.ttl),
                payload=dict(payload),
            )
        )
        self.db.commit()
        return token

    def _take(self, token: str) -> tuple[datetime, dict] | None:
        """Delete the record and return (expires_at, payload) if this caller removed it."""
        dialect = self.db.get_bind().dialect
        if dialect.delete_returning:
            stmt = (
                delete(StateRecord)
                .where(StateRecord.token == token)
                .returning(StateRecord.expires_at, StateRecord.payload)
                .execution_options(synchronize_session=False)
            )
            row = self.db.execute(stmt).first()
            self.db.commit()
            return (row[0], row[1]) if row is not None else None

        # No RETURNING: read, then let the delete's rowcount decide the winner
        row = self.db.execute(
            select(StateRecord.expires_at, StateRecord.payload).where(StateRecord.token == token)
        ).first()
        if row is None:
            self.db.rollback()
            return None
        result = self.db.execute(
            delete(StateRecord).where(StateRecord.token == token).execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            return None
        return row[0], row[1]

    def validate_and_consume(self, token: str | None) -> dict[str, Any]:
        """
        Return the payload stored for token and delete the record.
        Raises InvalidState if the token is unknown, already consumed, or older than its TTL.
        An expired record is removed by the same call.
        """
        if not token:
            raise InvalidState("Missing state parameter", stage="state")
        taken = self._take(token)
        if taken is None:
            raise InvalidState("Unknown or already used state", stage="state")
        expires_at, payload = taken
        if self._now() > as_utc(expires_at):
            raise InvalidState("State expired", stage="state")
        return payload or {}

    def garbage_collect(self) -> int:
        """Delete every record past its TTL. Returns the number removed. Safe to run at any time."""
        now = self._now()
        result = self.db.execute(
            delete(StateRecord).where(StateRecord.expires_at < now).execution_options(synchronize_session=False)
        )
        self.db.commit()
        removed = result.rowcount or 0
        logger.info("State garbage collection removed %d expired record(s)", removed)
        return removed

    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(StateRecord)) or 0
