import pytest

from feedcurator.errors import FetchFailed, InvalidUrl
from feedcurator.models import Outcome
from feedcurator.pipeline import ContentPipeline, process_unindexed_items
from feedcurator.steplog import StepLogger, list_steps
from feedcurator.storage import add_topic, get_item, insert_item, list_item_topics
from feedcurator.vector_index import VectorIndexer

from conftest import FakeCompletionClient, FakePageFetcher, FakeVectorStore, article_html

URL = "https://example.com/posts/storage"


def _pipeline(conn, config, client=None, store=None, pages=None, steplog=None):
    client = client or FakeCompletionClient()
    store = store or FakeVectorStore()
    fetch = FakePageFetcher(pages if pages is not None else {URL: article_html()})
    indexer = VectorIndexer(conn, client, store, config.embedding.tiers)
    pipeline = ContentPipeline(
        conn, config, client=client, indexer=indexer, fetch=fetch, steplog=steplog
    )
    return pipeline, fetch, store


def test_process_runs_every_stage(conn, config):
    add_topic(conn, "Databases")
    pipeline, fetch, store = _pipeline(conn, config)

    result = pipeline.process(URL, status="published", published_at="2024-05-01T00:00:00+00:00")

    assert result.created is True
    item = result.item
    assert item.title == "Storage engines"
    assert item.status == "published"
    assert item.date_published == "2024-05-01T00:00:00+00:00"
    assert item.summary == "A short summary of the article."
    assert item.indexed is True
    assert [topic.name for topic in list_item_topics(conn, item.id)] == ["Databases"]
    assert [stage.outcome for stage in result.stages] == [Outcome.OK, Outcome.OK, Outcome.OK]
    assert store.ids_for_content(item.id)
    assert fetch.calls == [URL]


def test_existing_link_is_not_refetched(conn, config):
    pipeline, fetch, _ = _pipeline(conn, config)
    first = pipeline.process(URL)
    second = pipeline.process(URL)

    assert second.created is False
    assert second.item.id == first.item.id
    assert second.stage("insert").outcome is Outcome.DUPLICATE_LINK
    assert fetch.calls == [URL]


def test_invalid_url_and_fetch_failure_store_nothing(conn, config):
    pipeline, _, _ = _pipeline(conn, config, pages={})
    with pytest.raises(InvalidUrl):
        pipeline.process("mailto:someone@example.com")
    with pytest.raises(FetchFailed):
        pipeline.process(URL)
    row = conn.execute("SELECT COUNT(*) FROM content_items").fetchone()
    assert row[0] == 0


def test_stage_failures_are_best_effort(conn, config):
    add_topic(conn, "Databases")
    client = FakeCompletionClient(fail_complete=True, fail_embed=True)
    pipeline, _, _ = _pipeline(conn, config, client=client)

    result = pipeline.process(URL)

    assert result.created is True
    assert result.stage("summarize").outcome is Outcome.COMPLETION_FAILED
    assert result.stage("tag").outcome is Outcome.COMPLETION_FAILED
    assert result.stage("embed").outcome is Outcome.EMBED_FAILED
    stored = get_item(conn, result.item.id)
    assert stored.summary == ""
    assert stored.indexed is False


def test_unexpected_stage_error_is_contained(conn, config):
    class ExplodingClient(FakeCompletionClient):
        def complete(self, system, user):
            raise KeyError("choices")

    pipeline, _, _ = _pipeline(conn, config, client=ExplodingClient())
    result = pipeline.process(URL)

    assert result.stage("summarize").outcome is Outcome.STAGE_ERROR
    assert result.stage("embed").outcome is Outcome.OK


def test_steps_are_recorded(conn, config):
    steplog = StepLogger(conn, "content-pipeline")
    run_id = steplog.start({"url": URL})
    pipeline, _, _ = _pipeline(conn, config, steplog=steplog)

    pipeline.process(URL)
    steplog.complete(True, items_processed=1)

    names = [step.step_name for step in list_steps(conn, run_id)]
    assert names == ["fetch_page", "extract", "insert", "summarize", "tag", "embed"]


def test_process_unindexed_items(conn, config):
    for index in range(3):
        insert_item(
            conn,
            link=f"https://example.com/{index}",
            title=f"Item {index}",
            description="",
            content="body",
            image_path=None,
            status="published" if index < 2 else "draft",
        )
    indexer = VectorIndexer(conn, FakeCompletionClient(), FakeVectorStore())

    summary = process_unindexed_items(conn, indexer, limit=10)

    assert summary == {"processed": 2, "succeeded": 2, "failed": 0}
    assert process_unindexed_items(conn, indexer)["processed"] == 0
