#!/usr/bin/env python3
"""
Digest and failure-alert rendering.

Turns a digest title, the provider's summary and the filtered items into an
HTML email body and its plain-text equivalent, and renders the admin alert for
failed runs. Rendering is pure: the same inputs (including `now`) always give
the same output.

The summary supports a small markdown subset (headings, emphasis, code,
strikethrough, links and lists). Raw HTML in the summary is escaped rather than
passed through, and links or images pointing anywhere but http(s) are
neutralized.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from bs4 import BeautifulSoup
from jinja2 import Environment, FileSystemLoader, select_autoescape
from markdown import Markdown
from markdown.extensions import Extension
from markdown.inlinepatterns import SimpleTagInlineProcessor
from markupsafe import Markup

from config import config, get_logger
from utils import parse_timestamp, sanitize_url, truncate_string

logger = get_logger("renderer")

DEFAULT_TITLE = "News Digest"
UNTITLED_ARTICLE = "Untitled article"
NO_SUMMARY = "No summary was generated for this run."
NO_ARTICLES = "No matching articles were found for this run."
HTML_SUMMARY_LENGTH = 240
TEXT_SUMMARY_LENGTH = 300

env = Environment(
    loader=FileSystemLoader(config.TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class StrikethroughExtension(Extension):
    """`~~text~~` becomes <del>text</del>."""

    def extendMarkdown(self, md):
        md.inlinePatterns.register(SimpleTagInlineProcessor(r'(~~)(.+?)~~', 'del'), 'strikethrough', 175)


class EscapeHtmlExtension(Extension):
    """Treat raw HTML as text so it comes out escaped."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister('html_block')
        md.inlinePatterns.deregister('html')


def one_line(value: Optional[str]) -> str:
    return " ".join((value or "").split())


def plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def format_issue_date(now: datetime) -> str:
    """e.g. "October 17, 2026"."""
    return f"{now:%B} {now.day}, {now.year}"


def format_published_date(value: Optional[str]) -> Optional[str]:
    """e.g. "Oct 17, 2026", or None when the date cannot be parsed."""
    ts = parse_timestamp(value)
    if ts is None:
        return None
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return f"{dt:%b} {dt.day}, {dt.year}"


def markdown_to_safe_html(text: str) -> str:
    """Render the markdown subset to HTML with raw HTML escaped and unsafe URLs replaced by '#'."""
    converter = Markdown(extensions=['sane_lists', 'fenced_code', StrikethroughExtension(), EscapeHtmlExtension()])
    html = converter.convert(text)
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("a"):
        link["href"] = sanitize_url(link.get("href"))
    for image in soup.find_all("img"):
        src = sanitize_url(image.get("src"))
        if src == "#":
            image.replace_with(image.get("alt") or "")
        else:
            image["src"] = src
    return str(soup)


@dataclass
class RenderedDigest:
    html: str
    text: str


def _item_view(item: Any, index: int) -> Dict[str, Any]:
    summary = one_line(item.summary)
    published_label = format_published_date(item.published_at)
    metadata = [f"Article {index}"]
    if published_label:
        metadata.append(published_label)
    return {
        "title": one_line(item.title) or UNTITLED_ARTICLE,
        "href": sanitize_url(item.url),
        "url": item.url,
        "metadata": " | ".join(metadata),
        "published_label": published_label,
        "html_summary": truncate_string(summary, HTML_SUMMARY_LENGTH) if summary else "",
        "text_summary": truncate_string(summary, TEXT_SUMMARY_LENGTH) if summary else "",
    }


def render_digest(title: str, summary: str, items: Sequence[Any], now: Optional[datetime] = None) -> RenderedDigest:
    """Render the digest email as HTML and plain text.

    Both bodies list the items in input order. An empty item list renders a
    "no matching articles" placeholder.
    """
    now = now or datetime.now(timezone.utc)
    heading = one_line(title) or DEFAULT_TITLE
    summary_text = (summary or "").replace("\r\n", "\n").strip()
    views = [_item_view(item, index) for index, item in enumerate(items, start=1)]
    context = {
        "title": heading,
        "issue_date": format_issue_date(now),
        "article_count": plural(len(views), "article"),
        "preheader": f"{heading}: {plural(len(views), 'article')} ready",
        "summary_html": Markup(markdown_to_safe_html(summary_text)) if summary_text else None,
        "summary_text": summary_text,
        "items": views,
        "no_summary": NO_SUMMARY,
        "no_articles": NO_ARTICLES,
    }
    html = env.get_template("digest.html").render(**context)
    text = env.get_template("digest.txt").render(**context).rstrip()
    return RenderedDigest(html=html, text=text)


def render_html(title: str, summary: str, items: Sequence[Any], now: Optional[datetime] = None) -> str:
    return render_digest(title, summary, items, now).html


def render_text(title: str, summary: str, items: Sequence[Any], now: Optional[datetime] = None) -> str:
    return render_digest(title, summary, items, now).text


def render_failure_notification(notification: Any) -> RenderedDigest:
    """Render the admin alert for a failed run (see mailer.FailureNotification)."""
    context = {
        "run_id": notification.run_id,
        "config_id": notification.config_id,
        "config_name": notification.config_name,
        "started_at": notification.started_at,
        "failed_at": notification.failed_at,
        "error_message": notification.error_message,
        "error_stack": notification.error_stack,
    }
    html = env.get_template("run_failure.html").render(**context)
    text = env.get_template("run_failure.txt").render(**context).rstrip()
    return RenderedDigest(html=html, text=text)


__all__: List[str] = [
    "RenderedDigest",
    "render_digest",
    "render_html",
    "render_text",
    "render_failure_notification",
    "markdown_to_safe_html",
]
