"""
Scheduler entry point: evict expired state records. Meant to run once a day from cron
(`oidc-rp-gc`); idempotent and safe to skip or run alongside login traffic.
"""
import logging

from oidc_rp import audit
from oidc_rp.audit import AuditSink
from oidc_rp.config import load_settings, read_stored_settings
from oidc_rp.database import SessionLocal, init_db
from oidc_rp.state_store import StateStore

logger = logging.getLogger(__name__)


def garbage_collect(session_factory=SessionLocal, settings=None) -> int:
    """Delete expired state records; returns how many were removed."""
    settings = settings or load_settings(read_stored_settings())
    db = session_factory()
    try:
        removed = StateStore(db, ttl=settings.state_time_limit).garbage_collect()
        AuditSink(db, settings).record(audit.EVENT_STATES_COLLECTED, stage="gc", detail=f"removed={removed}")
        return removed
    finally:
        db.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    removed = garbage_collect()
    logger.info("Done; %d expired state record(s) removed", removed)


if __name__ == "__main__":
    main()
