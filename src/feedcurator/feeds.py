from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser

from .config import HttpConfig
from .errors import FetchFailed
from .utils import entry_published_at, log_event


@dataclass(frozen=True)
class FeedEntry:
    link: str | None
    title: str | None
    published_at: str | None


@dataclass(frozen=True)
class ParsedFeed:
    url: str
    title: str | None
    entries: list[FeedEntry]


def fetch_feed(
    url: str,
    http: HttpConfig,
    logger: logging.Logger | None = None,
) -> ParsedFeed:
    logger = logger or logging.getLogger("feedcurator.feeds")
    status, content, error = _fetch_url(
        url,
        headers={"User-Agent": http.user_agent},
        timeout=http.timeout_seconds,
        max_retries=http.max_retries,
        backoff_seconds=http.backoff_seconds,
    )
    if error or status is None or not 200 <= status < 300:
        raise FetchFailed(url, error or f"http {status}", status=status)
    if not content:
        raise FetchFailed(url, "empty response", status=status)
    return parse_feed(url, content, logger)


def parse_feed(url: str, content: bytes | str, logger: logging.Logger | None = None) -> ParsedFeed:
    logger = logger or logging.getLogger("feedcurator.feeds")
    parsed = feedparser.parse(content)
    raw_entries = parsed.entries or []
    if parsed.bozo:
        if not raw_entries:
            raise FetchFailed(url, f"unparseable feed: {parsed.bozo_exception}")
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            url=url,
            error=str(parsed.bozo_exception),
        )
    entries = [_to_entry(entry) for entry in raw_entries]
    feed_title = parsed.feed.get("title") if parsed.feed else None
    return ParsedFeed(url=url, title=feed_title, entries=entries)


def _to_entry(entry: Any) -> FeedEntry:
    link = (entry.get("link") or "").strip() or None
    title = (entry.get("title") or "").strip() or None
    return FeedEntry(link=link, title=title, published_at=entry_published_at(entry))


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except (URLError, TimeoutError) as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "unknown fetch error"
