"""
Audit sink for flow events. Every event goes to the standard logger; with enable_logging it is also
stored in audit_log, keeping only the newest log_limit rows. No tokens, codes or state values.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from oidc_rp.config import Settings
from oidc_rp.database import get_db
from oidc_rp.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_LOGIN_STARTED = "login_started"
EVENT_CALLBACK_RECEIVED = "callback_received"
EVENT_STATE_INVALID = "state_invalid"
EVENT_AUTHORIZATION_DENIED = "authorization_denied"
EVENT_TOKEN_EXCHANGE_OK = "token_exchange_ok"
EVENT_TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
EVENT_USERINFO_FAILED = "userinfo_failed"
EVENT_IDENTITY_RESOLVED = "identity_resolved"
EVENT_IDENTITY_FAILED = "identity_failed"
EVENT_SESSION_ESTABLISHED = "session_established"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_REFRESH_FAILED = "refresh_failed"
EVENT_LOGOUT = "logout"
EVENT_STATES_COLLECTED = "states_collected"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


class AuditSink:
    def __init__(self, db: Session, settings: Settings, ip: str | None = None):
        self.db = db
        self.settings = settings
        self.ip = ip

    def record(
        self,
        event_type: str,
        *,
        outcome: str = OUTCOME_SUCCESS,
        stage: str | None = None,
        error_kind: str | None = None,
        detail: str | None = None,
        account_id: int | None = None,
    ) -> None:
        level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
        logger.log(
            level,
            "%s outcome=%s stage=%s error=%s account=%s ip=%s detail=%s",
            event_type, outcome, stage, error_kind, account_id, self.ip, detail,
        )
        if not self.settings.enable_logging:
            return
        self.db.add(
            AuditLog(
                event_type=event_type,
                outcome=outcome,
                stage=stage,
                error_kind=error_kind,
                detail=detail[:1000] if detail else None,
                account_id=account_id,
                ip=self.ip,
            )
        )
        self.db.commit()
        self._trim()

    def failure(self, event_type: str, err, account_id: int | None = None) -> None:
        """Record an AuthError: stage, kind and provider error text."""
        self.record(
            event_type,
            outcome=OUTCOME_FAIL,
            stage=err.stage,
            error_kind=err.kind,
            detail=err.detail,
            account_id=account_id,
        )

    def _trim(self) -> None:
        # Newest id that falls outside the kept window, if any
        cutoff = self.db.scalar(
            select(AuditLog.id).order_by(AuditLog.id.desc()).offset(self.settings.log_limit).limit(1)
        )
        if cutoff is not None:
            self.db.execute(
                delete(AuditLog).where(AuditLog.id <= cutoff).execution_options(synchronize_session=False)
            )
        self.db.commit()


def query_audit_logs(
    db: Session,
    *,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
) -> list[dict]:
    """Most recent first."""
    q = select(AuditLog).order_by(AuditLog.id.desc())
    if event_type:
        q = q.where(AuditLog.event_type == event_type)
    if outcome:
        q = q.where(AuditLog.outcome == outcome)
    rows = db.scalars(q.limit(min(max(1, limit), 500))).all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "outcome": r.outcome,
            "stage": r.stage,
            "error_kind": r.error_kind,
            "detail": r.detail,
            "account_id": r.account_id,
            "ip": r.ip,
        }
        for r in rows
    ]


router = APIRouter(tags=["audit"])


@router.get("/audit")
def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    db: Session = Depends(get_db),
):
    """Recent audit events. No tokens or secrets."""
    return query_audit_logs(db, limit=limit, event_type=event_type, outcome=outcome)
