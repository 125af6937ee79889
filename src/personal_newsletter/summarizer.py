import logging
from abc import ABC, abstractmethod

import anthropic

from .db import log_api_usage
from .models import Article

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert newsletter editor creating a personalized newsletter.
Write a concise, engaging summary that:
- Highlights the most important stories
- Provides context and insights
- Uses a friendly, conversational tone
- Is well-structured with clear sections
- Keeps the reader informed and engaged
Format the response as a proper newsletter with a title and organized content.
Make it email-friendly with clear sections and engaging subject lines.
Write the newsletter in Markdown."""


class Summarizer(ABC):
    """Chat-completion style text generation."""

    @abstractmethod
    def complete(self, model: str, messages: list[dict]) -> str | None:
        """Return the generated text, or None when the service produced none."""
        ...


class ClaudeSummarizer(Summarizer):
    def __init__(self, api_key: str, max_tokens: int = 4096, db_path: str = ""):
        self.client = anthropic.Anthropic(api_key=api_key)
        self.max_tokens = max_tokens
        self.db_path = db_path
        self.job_run_id = ""

    def complete(self, model: str, messages: list[dict]) -> str | None:
        # The Messages API takes the system prompt separately from the turns
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]

        response = self.client.messages.create(
            model=model,
            max_tokens=self.max_tokens,
            system=system,
            messages=turns,
        )

        if self.db_path:
            try:
                log_api_usage(
                    self.db_path,
                    job_run_id=self.job_run_id,
                    model=model,
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    step="newsletter_summary",
                )
            except Exception:
                logger.debug("Failed to log API usage", exc_info=True)

        logger.info(
            f"Tokens: {response.usage.input_tokens} in / {response.usage.output_tokens} out"
        )

        texts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        if not texts:
            return None
        return "".join(texts)


def build_messages(categories: list[str], articles: list[Article]) -> list[dict]:
    """Build the system + user prompt for one newsletter."""
    article_lines = "\n".join(
        f"{idx}. {a.title}\n  {a.description}\n  Source: {a.url}\n"
        for idx, a in enumerate(articles, 1)
    )
    user_message = (
        "Create a newsletter summary for these articles from the past week.\n"
        f"Categories requested: {', '.join(categories)}\n\n"
        f"Articles:\n{article_lines}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_message},
    ]
