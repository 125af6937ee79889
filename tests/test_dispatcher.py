from datetime import datetime, timedelta

from personal_newsletter.db import (
    cancel_user_events,
    get_event,
    get_job_runs,
    get_user_events,
    insert_event,
    save_preferences,
)
from personal_newsletter.dispatcher import Dispatcher
from personal_newsletter.events import SqliteEventBus, schedule_request
from personal_newsletter.job import NewsletterJob
from personal_newsletter.models import JobState, NewsletterRequest, UserPreferences
from personal_newsletter.store import SqlitePreferenceStore

from conftest import FakeSender, FakeSource, FakeSummarizer, sample_articles


def _payload(user_id: str, frequency: str = "weekly") -> dict:
    return {
        "userId": user_id,
        "email": f"{user_id}@example.com",
        "categories": ["technology"],
        "frequency": frequency,
    }


def _subscribe(db_path: str, user_id: str) -> None:
    save_preferences(db_path, UserPreferences(
        user_id=user_id, email=f"{user_id}@example.com", categories=["technology"], frequency="weekly",
    ))


def _queue_due(db_path: str, user_id: str) -> str:
    return insert_event(
        db_path, "newsletter.schedule", user_id, _payload(user_id),
        datetime.now() - timedelta(minutes=1),
    )


def _dispatcher(db_path, source=None, summarizer=None, sender=None, max_attempts=3) -> Dispatcher:
    job = NewsletterJob(
        store=SqlitePreferenceStore(db_path),
        source=source or FakeSource(sample_articles()),
        summarizer=summarizer or FakeSummarizer(),
        sender=sender or FakeSender(),
        bus=SqliteEventBus(db_path),
        model="test-model",
    )
    return Dispatcher(job, db_path, max_attempts=max_attempts, retry_delay=timedelta(minutes=10))


def test_due_event_runs_and_queues_follow_up(db_path) -> None:
    _subscribe(db_path, "u1")
    event_id = _queue_due(db_path, "u1")
    sender = FakeSender()

    results = _dispatcher(db_path, sender=sender).run_due()

    assert len(results) == 1
    assert results[0].state == JobState.COMPLETED_RESCHEDULED
    assert [s["to"] for s in sender.sent] == ["u1@example.com"]
    assert get_event(db_path, event_id).status == "completed"

    pending = get_user_events(db_path, "u1", status="pending")
    assert len(pending) == 1
    assert pending[0].run_at.hour == 9
    assert pending[0].run_at > datetime.now()
    assert pending[0].payload == _payload("u1")

    runs = get_job_runs(db_path, user_id="u1")
    assert runs[0]["state"] == "completed_rescheduled"
    assert runs[0]["email_sent"] == 1
    assert runs[0]["article_count"] == 2


def test_follow_up_is_not_run_early(db_path) -> None:
    _subscribe(db_path, "u1")
    _queue_due(db_path, "u1")
    dispatcher = _dispatcher(db_path)

    dispatcher.run_due()

    assert dispatcher.run_due() == []


def test_cancelled_user_is_not_run_and_others_are(db_path) -> None:
    _subscribe(db_path, "u1")
    _subscribe(db_path, "u2")
    _queue_due(db_path, "u1")
    _queue_due(db_path, "u2")
    cancel_user_events(db_path, "newsletter.schedule", "u1")
    sender = FakeSender()

    _dispatcher(db_path, sender=sender).run_due()

    assert [s["to"] for s in sender.sent] == ["u2@example.com"]
    assert get_user_events(db_path, "u1", status="pending") == []


class CancellingSummarizer(FakeSummarizer):
    def __init__(self, db_path: str, user_id: str):
        super().__init__()
        self.db_path = db_path
        self.user_id = user_id

    def complete(self, model, messages):
        cancel_user_events(self.db_path, "newsletter.schedule", self.user_id)
        return super().complete(model, messages)


def test_cancellation_mid_run_stops_send_and_reschedule(db_path) -> None:
    _subscribe(db_path, "u1")
    event_id = _queue_due(db_path, "u1")
    sender = FakeSender()

    results = _dispatcher(db_path, summarizer=CancellingSummarizer(db_path, "u1"), sender=sender).run_due()

    assert results[0].state == JobState.CANCELLED
    assert sender.sent == []
    assert get_event(db_path, event_id).status == "cancelled"
    assert get_user_events(db_path, "u1", status="pending") == []


def test_failed_run_is_requeued_for_retry(db_path) -> None:
    _subscribe(db_path, "u1")
    event_id = _queue_due(db_path, "u1")

    results = _dispatcher(db_path, source=FakeSource(error=RuntimeError("feed down"))).run_due()

    assert results == []
    event = get_event(db_path, event_id)
    assert event.status == "pending"
    assert event.attempts == 1
    assert event.run_at > datetime.now()
    assert "feed down" in event.error_message
    assert get_job_runs(db_path, user_id="u1")[0]["state"] == "failed"


def test_failed_run_gives_up_after_max_attempts(db_path) -> None:
    _subscribe(db_path, "u1")
    event_id = _queue_due(db_path, "u1")

    _dispatcher(db_path, source=FakeSource(error=RuntimeError("feed down")), max_attempts=1).run_due()

    assert get_event(db_path, event_id).status == "failed"


def test_summary_failure_marks_event_failed_but_keeps_recurrence(db_path) -> None:
    _subscribe(db_path, "u1")
    event_id = _queue_due(db_path, "u1")

    results = _dispatcher(db_path, summarizer=FakeSummarizer(None)).run_due()

    assert results[0].state == JobState.FAILED
    assert get_event(db_path, event_id).status == "failed"
    assert len(get_user_events(db_path, "u1", status="pending")) == 1


def test_invalid_payload_fails_event(db_path) -> None:
    event_id = insert_event(
        db_path, "newsletter.schedule", "u1", {"userId": "u1"},
        datetime.now() - timedelta(minutes=1),
    )

    assert _dispatcher(db_path).run_due() == []
    assert get_event(db_path, event_id).status == "failed"


def test_saving_preferences_twice_keeps_exactly_one_follow_up(db_path) -> None:
    _subscribe(db_path, "u1")
    bus = SqliteEventBus(db_path)
    dispatcher = _dispatcher(db_path)
    request = NewsletterRequest.model_validate(_payload("u1"))

    schedule_request(bus, request)
    first = dispatcher.run_due()
    schedule_request(bus, request)
    second = dispatcher.run_due()

    assert first[0].state == JobState.COMPLETED_RESCHEDULED
    assert second[0].state == JobState.COMPLETED_RESCHEDULED
    assert second[0].next_scheduled is True
    pending = get_user_events(db_path, "u1", status="pending")
    assert len(pending) == 1
    assert pending[0].run_at == second[0].next_run_at
