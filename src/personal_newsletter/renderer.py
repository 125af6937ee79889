from datetime import datetime
from pathlib import Path

import markdown
from jinja2 import Environment, FileSystemLoader

TEMPLATES_DIR = Path(__file__).parent / "templates"

MARKDOWN_EXTENSIONS = ["extra", "sane_lists"]


def markdown_to_html(text: str) -> str:
    """Convert generated Markdown to an HTML fragment. Output is not sanitized."""
    return markdown.markdown(text, extensions=MARKDOWN_EXTENSIONS)


def render_email(
    summary_markdown: str,
    categories: list[str],
    article_count: int,
    base_url: str = "",
    date: str = "",
) -> str:
    """Render the full email HTML around the converted summary."""
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=False,
    )
    template = env.get_template("newsletter.html")

    if not date:
        date = datetime.now().strftime("%B %d, %Y")

    return template.render(
        body=markdown_to_html(summary_markdown),
        categories=categories,
        article_count=article_count,
        date=date,
        dashboard_url=f"{base_url.rstrip('/')}/dashboard" if base_url else "",
    )
