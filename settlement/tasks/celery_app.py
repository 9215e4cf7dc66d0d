from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from settlement.core.config import settings
from settlement.core.logging_config import configure_logging


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "settlement",
    broker=_redis_url,
    backend=_redis_url,
    include=["settlement.tasks.jobs"],
)

celery.conf.timezone = "UTC"


@worker_process_init.connect
def _init_worker_logging(**kwargs):
    configure_logging()


celery.conf.beat_schedule = {
    "sweep-stale-holds-every-minute": {
        "task": "settlement.tasks.jobs.sweep_stale_holds",
        "schedule": 60.0,
    },
    "process-email-queue-every-2-minutes": {
        "task": "settlement.tasks.jobs.process_email_queue",
        "schedule": 120.0,
        "kwargs": {"limit": 50},
    },
    "expire-vouchers-daily": {
        "task": "settlement.tasks.jobs.expire_vouchers",
        "schedule": crontab(hour=3, minute=0),
    },
}
