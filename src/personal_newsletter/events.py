import logging
from abc import ABC, abstractmethod
from datetime import datetime

from .db import cancel_event, cancel_user_events, get_event_status, insert_event
from .models import SCHEDULE_DELETED_EVENT, SCHEDULE_EVENT, NewsletterRequest

logger = logging.getLogger(__name__)


class EventBus(ABC):
    """Outbound side of the newsletter.schedule signal."""

    @abstractmethod
    def send(self, name: str, payload: dict, run_at: datetime | None = None, event_id: str = "") -> str | None:
        """Emit an event for delivery at or after run_at (now when None).

        Returns the event id, or None when an event with the same id was
        already emitted.
        """
        ...

    @abstractmethod
    def status(self, event_id: str) -> str | None:
        """Current status of an emitted event, None if unknown."""
        ...

    @abstractmethod
    def cancel(self, event_id: str) -> bool:
        """Withdraw one event that has not started yet."""
        ...


class SqliteEventBus(EventBus):
    """Persists events in the scheduled_events table polled by the dispatcher."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def send(self, name: str, payload: dict, run_at: datetime | None = None, event_id: str = "") -> str | None:
        if name == SCHEDULE_DELETED_EVENT:
            user_id = str(payload.get("userId", ""))
            cancelled = cancel_user_events(self.db_path, SCHEDULE_EVENT, user_id)
            logger.info(f"Cancelled {cancelled} scheduled newsletter(s) for user {user_id}")
            return None

        if name == SCHEDULE_EVENT:
            # Validate the payload shape before it is persisted
            payload = NewsletterRequest.model_validate(payload).to_payload()
            user_id = payload["userId"]
        else:
            user_id = str(payload.get("userId", ""))

        when = run_at or datetime.now()
        if when.tzinfo is not None:
            # Fire times are stored as naive local time
            when = when.astimezone().replace(tzinfo=None)
        new_id = insert_event(self.db_path, name, user_id, payload, when, event_id=event_id)
        if new_id is None:
            logger.info(f"Event {event_id} already queued, skipping duplicate")
        else:
            logger.info(f"Queued {name} for user {user_id} at {when.isoformat()} (id={new_id})")
        return new_id

    def status(self, event_id: str) -> str | None:
        return get_event_status(self.db_path, event_id)

    def cancel(self, event_id: str) -> bool:
        cancelled = cancel_event(self.db_path, event_id)
        if cancelled:
            logger.info(f"Cancelled event {event_id}")
        return cancelled


def schedule_request(bus: EventBus, request: NewsletterRequest, run_at: datetime | None = None) -> str | None:
    """Replace any outstanding schedule of the user with a fresh one."""
    bus.send(SCHEDULE_DELETED_EVENT, {"userId": request.user_id})
    return bus.send(SCHEDULE_EVENT, request.to_payload(), run_at=run_at)
