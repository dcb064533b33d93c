from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

from bs4 import BeautifulSoup

from .errors import FetchFailed, InvalidUrl
from .utils import log_event

_STRIP_TAGS = [
    "script",
    "style",
    "iframe",
    "form",
    "button",
    "input",
    "nav",
    "footer",
    "header",
    "aside",
    "noscript",
]

_CONTENT_SELECTORS = [
    "article",
    "main",
    ".content",
    ".post",
    ".article",
    ".post-content",
    "#content",
    "#main",
    ".main",
    "[role=main]",
]


@dataclass(frozen=True)
class PageMetadata:
    title: str
    description: str
    image: str | None


@dataclass(frozen=True)
class ExtractedPage:
    title: str
    description: str
    image: str | None
    content: str


def validate_url(url: str) -> str:
    candidate = (url or "").strip()
    split = urlsplit(candidate)
    if split.scheme.lower() not in ("http", "https"):
        raise InvalidUrl(f"unsupported url scheme: {candidate!r}")
    if not split.netloc:
        raise InvalidUrl(f"url has no host: {candidate!r}")
    return candidate


def fetch_page(
    url: str,
    *,
    timeout_seconds: int,
    user_agent: str,
    logger: logging.Logger | None = None,
) -> tuple[int, str]:
    logger = logger or logging.getLogger("feedcurator.extractor")
    request = Request(
        url,
        headers={
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
        },
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status = response.getcode()
            raw = response.read()
            charset = response.headers.get_content_charset() or "utf-8"
    except HTTPError as exc:
        log_event(logger, logging.WARNING, "page_fetch_failed", url=url, status=exc.code)
        raise FetchFailed(url, f"http {exc.code}", status=exc.code) from exc
    except (URLError, TimeoutError, OSError) as exc:
        log_event(logger, logging.WARNING, "page_fetch_failed", url=url, error=str(exc))
        raise FetchFailed(url, str(exc)) from exc
    if status is None or not 200 <= status < 300:
        raise FetchFailed(url, f"http {status}", status=status)
    return status, raw.decode(charset, errors="replace")


def extract_page(
    html: str,
    url: str,
    *,
    min_content_chars: int = 100,
    max_title_chars: int = 255,
    max_description_chars: int = 500,
) -> ExtractedPage:
    metadata = extract_metadata(
        html,
        url,
        max_title_chars=max_title_chars,
        max_description_chars=max_description_chars,
    )
    content = extract_readable_text(html)
    if len(content) < min_content_chars:
        content = extract_body_text(html)
    return ExtractedPage(
        title=metadata.title,
        description=metadata.description,
        image=metadata.image,
        content=content,
    )


def extract_metadata(
    html: str,
    url: str,
    *,
    max_title_chars: int = 255,
    max_description_chars: int = 500,
) -> PageMetadata:
    soup = BeautifulSoup(html, "html.parser")
    title_tag = soup.find("title")
    title = (
        _meta(soup, "property", "og:title")
        or _meta(soup, "name", "twitter:title")
        or (_normalize_text(title_tag.get_text()) if title_tag else "")
        or _meta(soup, "name", "title")
        or _hostname_title(url)
    )
    description = (
        _meta(soup, "property", "og:description")
        or _meta(soup, "name", "twitter:description")
        or _meta(soup, "name", "description")
        or ""
    )
    image = (
        _meta(soup, "property", "og:image")
        or _meta(soup, "name", "twitter:image")
        or None
    )
    return PageMetadata(
        title=title[:max_title_chars],
        description=description[:max_description_chars],
        image=image,
    )


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    for selector in _CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is None:
            continue
        text = _normalize_text(node.get_text(" ", strip=True))
        if text:
            return text
    best = ""
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > len(best):
            best = text
    if best:
        return _normalize_text(best)
    body = soup.body or soup
    return _normalize_text(body.get_text(" ", strip=True))


def extract_body_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    body = soup.body or soup
    return _normalize_text(body.get_text(" ", strip=True))


def _meta(soup: BeautifulSoup, attr: str, key: str) -> str:
    tag = soup.find("meta", attrs={attr: key})
    if tag is None and attr == "name":
        tag = soup.find("meta", attrs={"property": key})
    if tag is None:
        return ""
    return _normalize_text(str(tag.get("content") or ""))


def _hostname_title(url: str) -> str:
    host = urlsplit(url).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host or "Untitled"


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
