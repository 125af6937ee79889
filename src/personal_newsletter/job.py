"""Newsletter generation and rescheduling job.

One run consumes one NewsletterRequest and walks these steps in order:

1. activity check against the preference store
2. fetch articles for the requested categories
3. summarize them with the language model
4. render the summary to HTML
5. send one email
6. emit the next newsletter.schedule event

Each run ends in exactly one terminal JobState. The follow-up event is the
only thing that makes newsletters recur.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable

from .collectors.base import BaseCollector
from .config import Settings
from .emailer import EmailSender
from .events import EventBus
from .models import (
    SCHEDULE_EVENT,
    Frequency,
    JobState,
    NewsletterRequest,
    NewsletterResult,
)
from .renderer import render_email
from .store import PreferenceStore
from .summarizer import Summarizer, build_messages

logger = logging.getLogger(__name__)

# biweekly is three days, not fourteen
FREQUENCY_INTERVALS = {
    Frequency.DAILY: timedelta(hours=24),
    Frequency.WEEKLY: timedelta(days=7),
    Frequency.BIWEEKLY: timedelta(days=3),
}
DEFAULT_INTERVAL = timedelta(days=7)


class SummarizationError(RuntimeError):
    """The summarization service returned no text."""


class JobCancelled(Exception):
    """The user's schedule was deleted while the job was pending or running."""


def compute_next_run(frequency, now: datetime | None = None, hour: int = 9) -> datetime:
    """Next fire time: now plus the frequency interval, pinned to hour:00 local time."""
    if now is None:
        now = datetime.now()
    interval = FREQUENCY_INTERVALS.get(Frequency.parse(frequency), DEFAULT_INTERVAL)
    return (now + interval).replace(hour=hour, minute=0, second=0, microsecond=0)


def reschedule_event_id(user_id: str, run_at: datetime) -> str:
    return f"{user_id}:{run_at.strftime('%Y%m%dT%H%M')}"


class NewsletterJob:
    def __init__(
        self,
        store: PreferenceStore,
        source: BaseCollector,
        summarizer: Summarizer,
        sender: EmailSender,
        bus: EventBus,
        model: str,
        *,
        enforce_active_check: bool = True,
        reschedule_inactive: bool = True,
        reschedule_on_failure: bool = True,
        delivery_hour: int = 9,
        base_url: str = "",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.source = source
        self.summarizer = summarizer
        self.sender = sender
        self.bus = bus
        self.model = model
        self.enforce_active_check = enforce_active_check
        self.reschedule_inactive = reschedule_inactive
        self.reschedule_on_failure = reschedule_on_failure
        self.delivery_hour = delivery_hour
        self.base_url = base_url
        self.clock = clock

    def bind_run(self, run_id: str) -> None:
        """Tag API usage and email log rows written during this run."""
        for component in (self.summarizer, self.sender):
            if hasattr(component, "job_run_id"):
                component.job_run_id = run_id

    def check_active(self, user_id: str) -> bool:
        """Look up the activity flag. Lookup errors count as inactive."""
        try:
            prefs = self.store.get_by_user_id(user_id)
        except Exception:
            logger.exception(f"Preference lookup failed for user {user_id}, treating as inactive")
            return False
        if prefs is None:
            logger.info(f"No preferences stored for user {user_id}")
            return False
        return prefs.is_active

    def run(
        self,
        request: NewsletterRequest,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> NewsletterResult:
        """Execute one cycle.

        Article source and email sender errors propagate to the caller.
        A missing summary ends the cycle as FAILED without sending.
        """
        result = NewsletterResult(categories=list(request.categories), state=JobState.RUNNING)

        def checkpoint(step: str) -> None:
            if is_cancelled():
                logger.info(f"Newsletter for user {request.user_id} cancelled before {step}")
                raise JobCancelled(step)

        try:
            checkpoint("activity check")
            logger.info(f"=== Step 1: Checking activity for user {request.user_id} ===")
            active = self.check_active(request.user_id)
            if not active and self.enforce_active_check:
                logger.info(f"User {request.user_id} is inactive, skipping this cycle")
                result.success = True
                if not self.reschedule_inactive:
                    result.state = JobState.COMPLETED_NO_RESCHEDULE
                    return result
                checkpoint("reschedule")
                return self._reschedule(request, result, is_cancelled)

            checkpoint("fetch")
            logger.info(f"=== Step 2: Fetching articles for {', '.join(request.categories)} ===")
            articles = self.source.fetch(request.categories)
            result.article_count = len(articles)
            logger.info(f"Fetched {len(articles)} articles")

            checkpoint("summarize")
            logger.info("=== Step 3: Summarizing articles ===")
            messages = build_messages(request.categories, articles)
            content = self.summarizer.complete(self.model, messages)
            if not content or not content.strip():
                raise SummarizationError(
                    f"No summary returned by {self.model} for user {request.user_id}"
                )
            result.content = content

            checkpoint("render")
            logger.info("=== Step 4: Rendering newsletter ===")
            html = render_email(
                content,
                request.categories,
                len(articles),
                base_url=self.base_url,
                date=self.clock().strftime("%B %d, %Y"),
            )

            checkpoint("send")
            logger.info(f"=== Step 5: Sending newsletter to {request.email} ===")
            result.email_sent = bool(
                self.sender.send(request.email, request.categories, len(articles), html)
            )

            checkpoint("reschedule")
            result = self._reschedule(request, result, is_cancelled)
            result.success = result.email_sent and result.next_scheduled
            return result

        except JobCancelled:
            result.state = JobState.CANCELLED
            result.success = False
            return result

        except SummarizationError as exc:
            logger.error(str(exc))
            result.error = str(exc)
            result.success = False
            if self.reschedule_on_failure:
                try:
                    checkpoint("reschedule")
                except JobCancelled:
                    result.state = JobState.CANCELLED
                    return result
                result = self._reschedule(request, result, is_cancelled)
                if result.state == JobState.CANCELLED:
                    return result
            result.state = JobState.FAILED
            return result

    def _reschedule(
        self,
        request: NewsletterRequest,
        result: NewsletterResult,
        is_cancelled: Callable[[], bool],
    ) -> NewsletterResult:
        logger.info("=== Step 6: Scheduling next newsletter ===")
        run_at = compute_next_run(request.frequency, self.clock(), hour=self.delivery_hour)
        event_id = reschedule_event_id(request.user_id, run_at)
        try:
            sent_id = self.bus.send(SCHEDULE_EVENT, request.to_payload(), run_at=run_at, event_id=event_id)
            if sent_id is None:
                status = self.bus.status(event_id)
                if status != JobState.PENDING.value:
                    raise RuntimeError(f"follow-up {event_id} exists with status {status}")
                logger.info(f"Follow-up {event_id} was already queued")
            elif is_cancelled():
                # A deletion landed between the last checkpoint and the insert
                self.bus.cancel(event_id)
                logger.info(f"Newsletter for user {request.user_id} cancelled during reschedule")
                result.state = JobState.CANCELLED
                result.next_scheduled = False
                result.success = False
                return result
        except Exception as exc:
            logger.exception(f"Failed to schedule next newsletter for user {request.user_id}")
            result.state = JobState.FAILED
            result.next_scheduled = False
            result.success = False
            result.error = f"reschedule failed: {exc}"
            return result

        logger.info(f"Next newsletter for user {request.user_id} at {run_at.isoformat()}")
        result.next_scheduled = True
        result.next_run_at = run_at
        result.state = JobState.COMPLETED_RESCHEDULED
        return result


def build_newsletter_job(settings: Settings) -> NewsletterJob:
    """Wire the job to the Google News, Claude, Resend and SQLite backends."""
    settings.validate_startup()

    from .collectors.google_news import GoogleNewsCollector
    from .emailer import ResendEmailSender
    from .events import SqliteEventBus
    from .store import SqlitePreferenceStore
    from .summarizer import ClaudeSummarizer

    db_path = settings.database_path
    return NewsletterJob(
        store=SqlitePreferenceStore(db_path),
        source=GoogleNewsCollector(
            per_category=settings.articles_per_category,
            language=settings.news_language,
            country=settings.news_country,
        ),
        summarizer=ClaudeSummarizer(
            api_key=settings.anthropic_api_key,
            max_tokens=settings.summary_max_tokens,
            db_path=db_path,
        ),
        sender=ResendEmailSender(
            api_key=settings.resend_api_key,
            from_email=settings.newsletter_from_email,
            db_path=db_path,
        ),
        bus=SqliteEventBus(db_path),
        model=settings.summary_model,
        enforce_active_check=settings.enforce_active_check,
        reschedule_inactive=settings.reschedule_inactive,
        reschedule_on_failure=settings.reschedule_on_failure,
        delivery_hour=settings.delivery_hour,
        base_url=settings.base_url,
    )
