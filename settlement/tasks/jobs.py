from settlement.tasks.celery_app import celery
from settlement.tasks import worker_jobs


@celery.task(name="settlement.tasks.jobs.sweep_stale_holds")
def sweep_stale_holds():
    return worker_jobs.sweep_stale_holds()


@celery.task(name="settlement.tasks.jobs.process_email_queue")
def process_email_queue(limit: int = 50):
    return worker_jobs.process_email_queue(limit=limit)


@celery.task(name="settlement.tasks.jobs.expire_vouchers")
def expire_vouchers():
    return worker_jobs.expire_vouchers()
