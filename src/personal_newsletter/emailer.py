import logging
from abc import ABC, abstractmethod

import resend

from .db import log_email_send

logger = logging.getLogger(__name__)


def build_subject(categories: list[str], article_count: int) -> str:
    topics = ", ".join(categories) if categories else "news"
    noun = "story" if article_count == 1 else "stories"
    return f"Your {topics} newsletter: {article_count} {noun}"


class EmailSender(ABC):
    @abstractmethod
    def send(self, to: str, categories: list[str], article_count: int, html: str) -> bool:
        """Deliver one newsletter email. Returns True when it was accepted."""
        ...


class ResendEmailSender(EmailSender):
    """Sends newsletters through Resend and records each attempt."""

    def __init__(self, api_key: str, from_email: str, db_path: str = ""):
        self.api_key = api_key
        self.from_email = from_email
        self.db_path = db_path
        self.job_run_id = ""

    def send(self, to: str, categories: list[str], article_count: int, html: str) -> bool:
        if not self.api_key:
            logger.warning("Resend API key not configured, skipping email send")
            self._log(to, "skipped", "Resend API key not configured")
            return False

        resend.api_key = self.api_key
        subject = build_subject(categories, article_count)
        try:
            resend.Emails.send({
                "from": self.from_email,
                "to": [to],
                "subject": subject,
                "html": html,
            })
        except Exception as exc:
            logger.exception(f"Failed to send newsletter to {to}")
            self._log(to, "failed", str(exc))
            raise

        logger.info(f"Newsletter sent to {to}")
        self._log(to, "sent")
        return True

    def _log(self, recipient: str, status: str, error_message: str = "") -> None:
        if not self.db_path:
            return
        try:
            log_email_send(
                self.db_path,
                job_run_id=self.job_run_id,
                recipient=recipient,
                status=status,
                error_message=error_message,
            )
        except Exception:
            logger.debug("Failed to log email send", exc_info=True)
