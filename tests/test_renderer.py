from datetime import datetime, timezone

from mailer import FailureNotification
from models import NewsItem
from renderer import (
    NO_ARTICLES,
    NO_SUMMARY,
    markdown_to_safe_html,
    render_digest,
    render_failure_notification,
    render_html,
    render_text,
)

NOW = datetime(2026, 10, 17, 7, 0, tzinfo=timezone.utc)

ITEMS = [
    NewsItem(title="Second in time, first in list", url="https://example.com/b",
             published_at="Fri, 16 Oct 2026 09:30:00 GMT", summary="B summary"),
    NewsItem(title="A <b>bold</b> move", url="https://example.com/a"),
    NewsItem(title="Sneaky", url="javascript:alert(1)"),
]


def test_items_render_in_input_order():
    html = render_html("Morning Tech", "Summary", ITEMS, now=NOW)
    text = render_text("Morning Tech", "Summary", ITEMS, now=NOW)
    assert html.index("https://example.com/b") < html.index("https://example.com/a")
    assert text.index("URL: https://example.com/b") < text.index("URL: https://example.com/a")
    assert text.index("1. Second in time") < text.index("2. A <b>bold</b> move")


def test_header_metadata_and_dates():
    rendered = render_digest("Morning Tech", "Summary", ITEMS, now=NOW)
    assert "NewsBot Digest" in rendered.html
    assert "October 17, 2026 | 3 articles" in rendered.html
    assert "Article 1 | Oct 16, 2026" in rendered.html
    assert "Published: Oct 16, 2026" in rendered.text
    assert "Articles: 3" in rendered.text
    assert "URL: https://example.com/a" in rendered.text


def test_titles_escaped_and_unsafe_links_neutralized():
    html = render_digest("Morning <Tech>", "Summary", ITEMS, now=NOW).html
    assert "A &lt;b&gt;bold&lt;/b&gt; move" in html
    assert "Morning &lt;Tech&gt;" in html
    assert 'href="javascript:' not in html
    assert 'href="#"' in html


def test_summary_markdown_rendered_and_raw_html_escaped():
    summary = "## Headlines\n\n**Chips** are ~~scarce~~ back.\n\n<script>alert(1)</script>\n\n[bad](javascript:alert(1))"
    html = markdown_to_safe_html(summary)
    assert "<h2>Headlines</h2>" in html
    assert "<strong>Chips</strong>" in html
    assert "<del>scarce</del>" in html
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "javascript:" not in html


def test_placeholders_for_empty_digest():
    rendered = render_digest("Morning Tech", "", [], now=NOW)
    assert NO_ARTICLES in rendered.html
    assert NO_SUMMARY in rendered.html
    assert NO_ARTICLES in rendered.text
    assert "0 articles" in rendered.html


def test_rendering_is_deterministic():
    first = render_digest("Morning Tech", "Summary", ITEMS, now=NOW)
    second = render_digest("Morning Tech", "Summary", ITEMS, now=NOW)
    assert first == second


def test_failure_notification():
    notification = FailureNotification(
        run_id=7, config_id=3, config_name="Morning Tech",
        started_at="2026-10-17T00:00:00Z", failed_at="2026-10-17T00:01:00Z",
        error_message="Source fetch timed out after 30s: https://example.com/rss",
        error_stack="Traceback (most recent call last): ...",
    )
    rendered = render_failure_notification(notification)
    assert notification.subject == "NewsBot Run Failed: Morning Tech"
    assert "Run ID: 7" in rendered.text
    assert "Config Name: Morning Tech" in rendered.text
    assert "Stack Trace:" in rendered.text
    assert "Source fetch timed out after 30s" in rendered.html
