from datetime import datetime

import structlog
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session, sessionmaker

from settlement.core.clock import utcnow
from settlement.core.config import settings
from settlement.db.session import SessionLocal
from settlement.services import voucher_service
from settlement.services.email_service import process_pending_emails
from settlement.services.gateway import PaymentGateway, build_gateway
from settlement.services.notification_service import EmailNotificationService
from settlement.services.webhook_service import expire_stale_holds

logger = structlog.get_logger(__name__)


def sweep_stale_holds(
    session_factory: sessionmaker = SessionLocal,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
) -> dict:
    """Settle pending bookings whose gateway session lapsed without a webhook."""
    db: Session = session_factory()
    try:
        try:
            counts = expire_stale_holds(
                db,
                gateway or build_gateway(),
                now=now or utcnow(),
                grace_minutes=settings.HOLD_SWEEP_GRACE_MINUTES,
                notifier=EmailNotificationService(session_factory),
            )
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        if any(counts.values()):
            logger.info("hold_sweep_finished", **counts)
        return counts
    finally:
        db.close()


def expire_vouchers(session_factory: sessionmaker = SessionLocal, now: datetime | None = None) -> dict:
    db: Session = session_factory()
    try:
        try:
            expired = voucher_service.expire_vouchers(db, now=now)
        except ProgrammingError:
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        db.commit()
        logger.info("vouchers_expired", count=expired)
        return {"expired": expired}
    finally:
        db.close()


def process_email_queue(limit: int = 50, session_factory: sessionmaker = SessionLocal) -> dict:
    """Process queued/failed emails (retry send). Run periodically via Celery beat."""
    db: Session = session_factory()
    try:
        try:
            return process_pending_emails(db, limit=limit)
        except ProgrammingError:
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()
