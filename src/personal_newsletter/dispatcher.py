import logging
import threading
import time
from datetime import datetime, timedelta

import schedule
from pydantic import ValidationError

from .config import settings
from .db import (
    claim_event,
    create_job_run,
    finish_event,
    get_due_events,
    get_event_status,
    init_db,
    requeue_event,
    update_job_run,
)
from .job import NewsletterJob, build_newsletter_job
from .models import SCHEDULE_EVENT, JobState, NewsletterRequest, NewsletterResult, ScheduledEvent

logger = logging.getLogger(__name__)


class Dispatcher:
    """Runs due newsletter.schedule events through the newsletter job."""

    def __init__(
        self,
        job: NewsletterJob,
        db_path: str,
        max_attempts: int = 3,
        retry_delay: timedelta = timedelta(minutes=10),
    ):
        self.job = job
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def run_due(self, now: datetime | None = None) -> list[NewsletterResult]:
        """Run every due event once. Returns the results of the runs that finished."""
        now = now or datetime.now()
        results = []
        for event in get_due_events(self.db_path, now):
            if not claim_event(self.db_path, event.id):
                continue
            if event.name != SCHEDULE_EVENT:
                logger.warning(f"Ignoring unknown event {event.name} (id={event.id})")
                finish_event(self.db_path, event.id, "failed", f"unknown event {event.name}")
                continue
            result = self.run_event(event)
            if result is not None:
                results.append(result)
        return results

    def run_event(self, event: ScheduledEvent) -> NewsletterResult | None:
        """Run one claimed event, recording the outcome on the event and a job run."""
        try:
            request = NewsletterRequest.model_validate(event.payload)
        except ValidationError as exc:
            logger.error(f"Invalid payload on event {event.id}: {exc}")
            finish_event(self.db_path, event.id, "failed", "invalid payload")
            return None

        run_id = create_job_run(self.db_path, request.user_id, event_id=event.id)
        self.job.bind_run(run_id)
        logger.info(f"Job run {run_id} started for user {request.user_id} (event={event.id})")
        start_time = time.time()

        def is_cancelled() -> bool:
            return get_event_status(self.db_path, event.id) == "cancelled"

        try:
            result = self.job.run(request, is_cancelled=is_cancelled)
        except Exception as exc:
            duration = time.time() - start_time
            update_job_run(
                self.db_path, run_id,
                state=JobState.FAILED.value,
                finished_at=datetime.utcnow().isoformat(),
                duration_seconds=round(duration, 2),
                error_message=str(exc),
            )
            self._retry_or_fail(event, str(exc))
            logger.exception(f"Job run {run_id} failed after {duration:.1f}s")
            return None

        duration = time.time() - start_time
        update_job_run(
            self.db_path, run_id,
            state=result.state.value,
            finished_at=datetime.utcnow().isoformat(),
            duration_seconds=round(duration, 2),
            article_count=result.article_count,
            email_sent=int(result.email_sent),
            next_scheduled=int(result.next_scheduled),
            next_run_at=result.next_run_at.isoformat() if result.next_run_at else None,
            error_message=result.error,
        )
        if result.state != JobState.CANCELLED:
            status = "failed" if result.state == JobState.FAILED else "completed"
            finish_event(self.db_path, event.id, status, result.error)
        logger.info(f"Job run {run_id} finished as {result.state.value} in {duration:.1f}s")
        return result

    def _retry_or_fail(self, event: ScheduledEvent, error: str) -> None:
        attempts = event.attempts + 1
        if attempts < self.max_attempts:
            retry_at = datetime.now() + self.retry_delay
            if requeue_event(self.db_path, event.id, retry_at, error):
                logger.info(f"Event {event.id} will retry at {retry_at.isoformat()} (attempt {attempts + 1})")
            return
        finish_event(self.db_path, event.id, "failed", error)
        logger.error(f"Event {event.id} failed after {attempts} attempts")


def build_dispatcher() -> Dispatcher:
    init_db(settings.database_path)
    return Dispatcher(
        job=build_newsletter_job(settings),
        db_path=settings.database_path,
        max_attempts=settings.max_job_attempts,
        retry_delay=timedelta(minutes=settings.retry_delay_minutes),
    )


# Global reference so health check can verify the thread is alive
_scheduler_thread: threading.Thread | None = None


def start_scheduler_thread(dispatcher: Dispatcher | None = None) -> threading.Thread:
    """Launch the scheduler in a daemon thread. Returns the thread."""
    global _scheduler_thread
    dispatcher = dispatcher or build_dispatcher()
    t = threading.Thread(target=run_scheduler, args=(dispatcher,), daemon=True, name="scheduler")
    t.start()
    _scheduler_thread = t
    return t


def scheduler_alive() -> bool:
    t = _scheduler_thread
    return t is not None and t.is_alive()


def run_scheduler(dispatcher: Dispatcher | None = None) -> None:
    """Poll for due newsletters forever."""
    dispatcher = dispatcher or build_dispatcher()
    poll = settings.scheduler_poll_seconds
    schedule.every(poll).seconds.do(dispatcher.run_due)
    logger.info(f"Scheduler polling for due newsletters every {poll}s")

    while True:
        try:
            schedule.run_pending()
        except Exception:
            logger.exception("Scheduler: error running pending jobs")
        time.sleep(1)
