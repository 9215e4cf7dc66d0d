from datetime import datetime, timezone
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import uuid
import requests
import structlog

from settlement.core.config import settings
from settlement.models.booking import Booking
from settlement.models.email_log import EmailLog

logger = structlog.get_logger(__name__)


def queue_email(db: Session, to_email: str, subject: str, body: str, related_booking_code: str = "") -> tuple[str, bool]:
    """Queue and attempt immediate send. Body is stored so the worker can retry on failure.

    Returns (email_log_id, sent_now).
    """
    eid = str(uuid.uuid4())
    db.add(
        EmailLog(
            id=eid,
            to_email=to_email,
            subject=subject,
            body=body,
            status="queued",
            related_booking_code=related_booking_code,
        )
    )
    db.commit()

    sent = False
    try:
        send_email(to_email, subject, body)
        sent = True
    except (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError) as e:
        # worker retries via process_email_queue
        logger.warning("email_send_failed", email_id=eid, error=str(e))

    log = db.get(EmailLog, eid)
    if log:
        log.status = "sent" if sent else "failed"
        log.sent_at = datetime.now(timezone.utc) if sent else None
        db.commit()
    return eid, sent


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP (MailHog recommended for local)."""

    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    from_email = settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Process up to `limit` queued or failed emails; retry send and update status. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.body.isnot(None), EmailLog.body != "")
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for log in pending:
        try:
            send_email(log.to_email, log.subject, log.body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            if log.related_booking_code:
                db.query(Booking).filter(Booking.booking_code == log.related_booking_code).update(
                    {"confirmation_sent": True}, synchronize_session=False
                )
            sent += 1
        except (smtplib.SMTPException, OSError, requests.RequestException, RuntimeError) as e:
            logger.warning("email_retry_failed", email_id=log.id, error=str(e))
            log.status = "failed"
            failed += 1
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}
