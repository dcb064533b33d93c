from __future__ import annotations

import math

import pytest

from feedcurator.config import bootstrap_runtime_config, load_runtime_config, set_runtime_config
from feedcurator.errors import CompletionFailed, FetchFailed
from feedcurator.feeds import FeedEntry, ParsedFeed
from feedcurator.storage import init_db

ARTICLE_BODY = (
    "Researchers published a detailed account of how the new storage engine handles "
    "write amplification, compaction and recovery after crashes in production clusters."
)


def article_html(title: str = "Storage engines", body: str = ARTICLE_BODY) -> str:
    return (
        "<html><head>"
        f"<title>{title}</title>"
        '<meta property="og:description" content="A look inside storage engines">'
        '<meta property="og:image" content="https://example.com/cover.png">'
        "</head><body><nav>Home | About</nav>"
        f"<article><p>{body}</p></article>"
        "<footer>Copyright</footer></body></html>"
    )


class FakeCompletionClient:
    def __init__(
        self,
        summary: str = "A short summary of the article.",
        topics: str = "Databases",
        fail_complete: bool = False,
        fail_embed: bool = False,
    ) -> None:
        self.summary = summary
        self.topics = topics
        self.fail_complete = fail_complete
        self.fail_embed = fail_embed
        self.completions: list[tuple[str, str]] = []
        self.embedded: list[str] = []

    def complete(self, system: str, user: str) -> str:
        self.completions.append((system, user))
        if self.fail_complete:
            raise CompletionFailed("http_error 500: upstream unavailable")
        if "classify" in system:
            return self.topics
        return self.summary

    def embed(self, text: str) -> list[float]:
        if self.fail_embed:
            raise CompletionFailed("http_error 429: rate limited")
        self.embedded.append(text)
        return [float(len(text)), 1.0, 0.0]


class FakeVectorStore:
    def __init__(self, fail_after: int | None = None) -> None:
        self.windows: dict[str, tuple[list[float], dict, str]] = {}
        self.fail_after = fail_after
        self.upserts = 0

    def upsert(self, window_id, vector, metadata, document) -> None:
        if self.fail_after is not None and self.upserts >= self.fail_after:
            raise RuntimeError("vector store unavailable")
        self.upserts += 1
        self.windows[window_id] = (vector, dict(metadata), document)

    def delete_for_content(self, content_id: int) -> None:
        for window_id in self.ids_for_content(content_id):
            del self.windows[window_id]

    def ids_for_content(self, content_id: int) -> list[str]:
        return sorted(
            window_id
            for window_id, (_, metadata, _) in self.windows.items()
            if metadata["content_id"] == content_id
        )

    def query(self, vector, top_k: int = 10) -> list[dict]:
        matches = [
            {"id": window_id, "metadata": dict(metadata), "similarity": _cosine(vector, stored)}
            for window_id, (stored, metadata, _) in self.windows.items()
        ]
        matches.sort(key=lambda match: match["similarity"], reverse=True)
        return matches[:top_k]


def _cosine(left, right) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0


class FakePageFetcher:
    def __init__(self, pages: dict[str, str] | None = None, default: str | None = None) -> None:
        self.pages = dict(pages or {})
        self.default = default
        self.calls: list[str] = []

    def __call__(self, url: str, **kwargs) -> tuple[int, str]:
        self.calls.append(url)
        if url in self.pages:
            return 200, self.pages[url]
        if self.default is not None:
            return 200, self.default
        raise FetchFailed(url, "http 404", status=404)


class FakeFeedFetcher:
    def __init__(self, feeds: dict[str, list[str]] | None = None, failing=()) -> None:
        self.feeds = dict(feeds or {})
        self.failing = set(failing)
        self.calls: list[str] = []

    def __call__(self, url, http=None, logger=None) -> ParsedFeed:
        self.calls.append(url)
        if url in self.failing:
            raise FetchFailed(url, "http 503", status=503)
        links = self.feeds.get(url, [])
        entries = [
            FeedEntry(link=link, title=f"Entry {index}", published_at=None)
            for index, link in enumerate(links)
        ]
        return ParsedFeed(url=url, title="Feed", entries=entries)


def update_runtime_config(conn, section: str, **values) -> None:
    cfg = bootstrap_runtime_config(conn)
    cfg[section].update(values)
    set_runtime_config(conn, cfg)


@pytest.fixture
def conn(tmp_path):
    db_conn = init_db(str(tmp_path / "state.sqlite3"))
    bootstrap_runtime_config(db_conn)
    yield db_conn
    db_conn.close()


@pytest.fixture
def config(conn):
    return load_runtime_config(conn)
