from datetime import datetime

import pytest

from personal_newsletter.collectors.base import BaseCollector
from personal_newsletter.db import init_db
from personal_newsletter.emailer import EmailSender
from personal_newsletter.events import EventBus
from personal_newsletter.job import NewsletterJob
from personal_newsletter.models import Article, UserPreferences
from personal_newsletter.store import PreferenceStore
from personal_newsletter.summarizer import Summarizer

FIXED_NOW = datetime(2026, 10, 14, 15, 30, 12, 345000)


class FakeStore(PreferenceStore):
    def __init__(self, prefs: dict | None = None, error: Exception | None = None):
        self.prefs = prefs or {}
        self.error = error
        self.lookups = []

    def get_by_user_id(self, user_id):
        self.lookups.append(user_id)
        if self.error:
            raise self.error
        return self.prefs.get(user_id)


class FakeSource(BaseCollector):
    def __init__(self, articles=None, error: Exception | None = None):
        self.articles = articles if articles is not None else []
        self.error = error
        self.calls = []

    @property
    def name(self):
        return "fake"

    def fetch(self, categories):
        self.calls.append(list(categories))
        if self.error:
            raise self.error
        return list(self.articles)


class FakeSummarizer(Summarizer):
    def __init__(self, text="# Weekly digest\n\nThe **big** story."):
        self.text = text
        self.calls = []
        self.job_run_id = ""

    def complete(self, model, messages):
        self.calls.append((model, messages))
        return self.text


class FakeSender(EmailSender):
    def __init__(self, accept: bool = True, error: Exception | None = None):
        self.accept = accept
        self.error = error
        self.sent = []
        self.job_run_id = ""

    def send(self, to, categories, article_count, html):
        if self.error:
            raise self.error
        self.sent.append({"to": to, "categories": categories, "article_count": article_count, "html": html})
        return self.accept


class FakeBus(EventBus):
    def __init__(self, error: Exception | None = None, existing: dict | None = None):
        self.error = error
        self.existing = existing or {}
        self.events = []
        self.cancelled = []

    def send(self, name, payload, run_at=None, event_id=""):
        if self.error:
            raise self.error
        if event_id in self.existing:
            return None
        self.events.append({"name": name, "payload": payload, "run_at": run_at, "event_id": event_id})
        return event_id or "evt"

    def status(self, event_id):
        if event_id in self.cancelled:
            return "cancelled"
        if event_id in self.existing:
            return self.existing[event_id]
        if any(e["event_id"] == event_id for e in self.events):
            return "pending"
        return None

    def cancel(self, event_id):
        self.cancelled.append(event_id)
        return True


def active_prefs(user_id="u1", email="a@b.com", is_active=True):
    return UserPreferences(
        user_id=user_id,
        email=email,
        categories=["technology"],
        frequency="weekly",
        is_active=is_active,
    )


def sample_articles():
    return [
        Article(title="Chips get faster", description="A new fab opens.", url="https://example.com/chips"),
        Article(title="Startups raise", description="Funding is back.", url="https://example.com/funding"),
    ]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "newsletter.db")
    init_db(path)
    return path


@pytest.fixture
def make_job():
    def _make(
        store=None,
        source=None,
        summarizer=None,
        sender=None,
        bus=None,
        clock=lambda: FIXED_NOW,
        **policy,
    ):
        return NewsletterJob(
            store=store if store is not None else FakeStore({"u1": active_prefs()}),
            source=source if source is not None else FakeSource(sample_articles()),
            summarizer=summarizer if summarizer is not None else FakeSummarizer(),
            sender=sender if sender is not None else FakeSender(),
            bus=bus if bus is not None else FakeBus(),
            model="test-model",
            clock=clock,
            **policy,
        )

    return _make
