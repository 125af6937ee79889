import html
import logging
import re
from urllib.parse import quote

import feedparser
from googlenewsdecoder import new_decoderv1

from ..models import Article
from .base import ArticleSourceError, BaseCollector

logger = logging.getLogger(__name__)

GOOGLE_NEWS_TOPIC_RSS = (
    "https://news.google.com/rss/headlines/section/topic/{topic}"
    "?hl={language}&gl={country}&ceid={country}:{lang}"
)
GOOGLE_NEWS_SEARCH_RSS = (
    "https://news.google.com/rss/search?q={query}"
    "&hl={language}&gl={country}&ceid={country}:{lang}"
)

# Categories Google News publishes as first-class topic sections
TOPIC_SECTIONS = {
    "world": "WORLD",
    "nation": "NATION",
    "business": "BUSINESS",
    "technology": "TECHNOLOGY",
    "tech": "TECHNOLOGY",
    "entertainment": "ENTERTAINMENT",
    "sports": "SPORTS",
    "science": "SCIENCE",
    "health": "HEALTH",
}

TAG_RE = re.compile(r"<[^>]+>")


class GoogleNewsCollector(BaseCollector):
    """Fetches headlines per category from Google News RSS."""

    def __init__(self, per_category: int = 5, language: str = "en-US", country: str = "US"):
        self.per_category = per_category
        self.language = language
        self.country = country

    @property
    def name(self) -> str:
        return "Google News"

    def fetch(self, categories: list[str]) -> list[Article]:
        articles = []
        for category in categories:
            articles.extend(self._fetch_category(category))
        logger.info(f"Google News gathered {len(articles)} articles for {len(categories)} categories")
        return articles

    def feed_url(self, category: str) -> str:
        lang = self.language.split("-")[0]
        topic = TOPIC_SECTIONS.get(category.strip().lower())
        if topic:
            return GOOGLE_NEWS_TOPIC_RSS.format(
                topic=topic, language=self.language, country=self.country, lang=lang
            )
        return GOOGLE_NEWS_SEARCH_RSS.format(
            query=quote(category), language=self.language, country=self.country, lang=lang
        )

    def _fetch_category(self, category: str) -> list[Article]:
        url = self.feed_url(category)
        feed = feedparser.parse(url)
        if feed.get("bozo") and not feed.entries:
            raise ArticleSourceError(
                f"Could not read Google News feed for '{category}': {feed.get('bozo_exception')}"
            )

        articles = []
        for entry in feed.entries[: self.per_category]:
            title = entry.get("title", "").strip()
            link = entry.get("link", "").strip()
            if not title or not link:
                continue

            source_name = entry.get("source", {})
            if hasattr(source_name, "title"):
                source_name = source_name.title
            elif isinstance(source_name, dict):
                source_name = source_name.get("title", "Google News")
            else:
                source_name = "Google News"

            articles.append(
                Article(
                    title=title,
                    description=_clean_summary(entry.get("summary", "")),
                    url=self._decode_url(link),
                    source=source_name,
                )
            )

        return articles

    def _decode_url(self, google_url: str) -> str:
        """Decode a Google News redirect URL to the real article URL."""
        try:
            result = new_decoderv1(google_url)
            if result and result.get("decoded_url"):
                return result["decoded_url"]
        except Exception:
            logger.debug(f"Could not decode Google News URL: {google_url}")
        return google_url


def _clean_summary(raw: str) -> str:
    text = html.unescape(TAG_RE.sub(" ", raw or ""))
    return " ".join(text.split())
