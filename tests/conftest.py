import asyncio
import json
import os

# Keep tracing out of the test process
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest_asyncio

from config import config
from models import DatabaseQueue


class FakeResponse:
    """Just enough of aiohttp's ClientResponse for the code under test."""

    def __init__(self, status=200, payload=None, body=None, reason="OK", delay=0.0, error=None):
        self.status = status
        self._error = error
        self.reason = reason
        self._payload = payload
        self._body = body
        self._delay = delay

    async def __aenter__(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def read(self):
        if isinstance(self._body, bytes):
            return self._body
        return (self._body or "").encode("utf-8")

    async def text(self):
        if isinstance(self._body, bytes):
            return self._body.decode("utf-8")
        if self._body is None and self._payload is not None:
            return json.dumps(self._payload)
        return self._body or ""

    async def json(self, content_type=None):
        if self._payload is None:
            return json.loads(await self.text())
        return self._payload


class FakeSession:
    """Returns queued responses and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def _next(self, method, url, kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    async def close(self):
        pass


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(config, "DATABASE_PATH", db_path)
    queue = DatabaseQueue(db_path)
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


def source_entry(name, url, type="feed", item_path=None, enabled=True):
    return {"name": name, "type": type, "url": url, "item_path": item_path, "enabled": enabled}


def config_set_entry(name, sources, schedule_cron="0 0 * * *", recipients=("reader@example.com",),
                     enabled=True, use_web_search=False, prompt="Summarize the news."):
    return {
        "name": name,
        "enabled": enabled,
        "schedule_cron": schedule_cron,
        "prompt": prompt,
        "recipients_json": json.dumps(list(recipients)),
        "use_web_search": use_web_search,
        "sources": list(sources),
    }


async def seed(db, sources=(), config_sets=(), settings=None):
    """Write sources, config sets and settings straight through the store operation."""
    await db.execute("sync_catalog", sources=list(sources), config_sets=list(config_sets), settings=settings)
    return {cs.name: cs for cs in await db.execute("list_config_sets")}
