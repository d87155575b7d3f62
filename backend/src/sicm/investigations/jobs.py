"""Job specifications and the per-wiki job queue.

Jobs are Celery tasks. Every wiki consumes its own queue, named
``<job_queue_prefix>.<wiki_id>``, so a job pushed to another wiki's queue
runs against that wiki's cases.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from celery import Celery
from pydantic import BaseModel, Field

from ..config import Settings, get_settings

# Job types (Celery task names)
AUTOCLOSE_CASE = "sicm.jobs.autoclose_case"
AUTOCLOSE_FOR_USER = "sicm.jobs.autoclose_for_user"
MATCH_SIGNALS_AGAINST_USER = "sicm.jobs.match_signals_against_user"


class JobSpec(BaseModel):
    """A job to push onto a queue."""

    type: str = Field(..., description="Celery task name")
    params: dict[str, Any] = Field(default_factory=dict)
    release_timestamp: datetime | None = Field(
        default=None, description="Earliest time the job may run, None for now"
    )

    @classmethod
    def autoclose_case(cls, case_id: int, delay_seconds: int | None = None) -> "JobSpec":
        """Re-check whether a case can be resolved automatically."""
        release = None
        if delay_seconds:
            release = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        return cls(type=AUTOCLOSE_CASE, params={"case_id": case_id}, release_timestamp=release)

    @classmethod
    def autoclose_for_user(cls, username: str) -> "JobSpec":
        """Queue auto-close checks for every open case of a user on the receiving wiki."""
        return cls(type=AUTOCLOSE_FOR_USER, params={"username": username})

    @classmethod
    def match_signals_against_user(
        cls,
        user_id: int,
        username: str,
        event_type: str,
        extra_data: dict[str, Any] | None = None,
    ) -> "JobSpec":
        return cls(
            type=MATCH_SIGNALS_AGAINST_USER,
            params={
                "user_id": user_id,
                "username": username,
                "event_type": event_type,
                "extra_data": extra_data or {},
            },
        )


class JobQueue(Protocol):
    """A queue that runs jobs for one wiki."""

    wiki_id: str

    @property
    def delayed_jobs_enabled(self) -> bool:
        ...

    def push(self, job: JobSpec) -> None:
        ...


class CeleryJobQueue:
    """Pushes jobs to a wiki's Celery queue."""

    def __init__(
        self,
        wiki_id: str,
        app: Celery | None = None,
        settings: Settings | None = None,
    ):
        self.wiki_id = wiki_id
        self._app = app
        self._settings = settings or get_settings()

    @property
    def app(self) -> Celery:
        if self._app is None:
            from ..worker import app

            self._app = app
        return self._app

    @property
    def queue_name(self) -> str:
        return f"{self._settings.job_queue_prefix}.{self.wiki_id}"

    @property
    def delayed_jobs_enabled(self) -> bool:
        return self._settings.delayed_jobs_enabled

    def push(self, job: JobSpec) -> None:
        eta = job.release_timestamp if self.delayed_jobs_enabled else None
        self.app.send_task(job.type, kwargs=job.params, queue=self.queue_name, eta=eta)


def get_job_queue(wiki_id: str | None = None) -> CeleryJobQueue:
    """Get the job queue for a wiki, the current wiki by default."""
    settings = get_settings()
    return CeleryJobQueue(wiki_id or settings.wiki_id, settings=settings)
