"""Celery application running Suggested Investigations jobs.

Each wiki's worker consumes the queue named ``<job_queue_prefix>.<wiki_id>``:

    celery -A sicm.worker worker -Q sicm.enwiki

The module named by the ``host_module`` setting is loaded when the worker
starts, so that it can call
:func:`sicm.investigations.services.configure_services` before jobs run.
"""

from celery import Celery
from celery.signals import worker_init

from .config import get_settings

settings = get_settings()

app = Celery(
    "sicm",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    # Jobs are idempotent and may run again after a worker crash
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=120,
    task_time_limit=180,
    result_expires=86400,
    # Jobs sent without an explicit queue run on the current wiki
    task_routes={
        "sicm.jobs.*": {"queue": f"{settings.job_queue_prefix}.{settings.wiki_id}"},
    },
    task_default_queue=f"{settings.job_queue_prefix}.{settings.wiki_id}",
)

celery_app = app


@worker_init.connect
def configure_host(**kwargs) -> None:
    if settings.host_module:
        from .investigations.services import load_host_configuration

        load_host_configuration(settings.host_module)


app.autodiscover_tasks(["sicm.investigations"], force=True)
