import pytest

from feedcurator.config import ChunkTier
from feedcurator.models import Outcome
from feedcurator.storage import get_item, insert_item, set_indexed
from feedcurator.vector_index import (
    DEFAULT_TIERS,
    VectorIndexer,
    chunk_config,
    clean_html,
    split_windows,
    window_id,
)

from conftest import FakeCompletionClient, FakeVectorStore


def _item(conn, content):
    item, _ = insert_item(
        conn,
        link="https://example.com/indexed",
        title="Indexed",
        description="<p>Short &amp; sweet</p>",
        content=content,
        image_path=None,
        status="published",
    )
    return item


def test_chunk_config_tiers():
    assert chunk_config(4999, DEFAULT_TIERS).size == 1000
    assert chunk_config(5000, DEFAULT_TIERS).size == 2000
    assert chunk_config(19999, DEFAULT_TIERS).overlap == 400
    assert chunk_config(20000, DEFAULT_TIERS).size == 4000


def test_split_windows_overlap():
    text = "".join(str(i % 10) for i in range(2500))
    windows = split_windows(text, 1000, 200)
    assert [len(window) for window in windows] == [1000, 1000, 900]
    assert windows[0][800:] == windows[1][:200]
    assert windows[-1].endswith(text[-100:])


def test_split_windows_short_and_empty():
    assert split_windows("abc", 1000, 200) == ["abc"]
    assert split_windows("", 1000, 200) == []
    with pytest.raises(ValueError):
        split_windows("abc", 200, 200)


def test_clean_html():
    assert clean_html("<script>x()</script><b>Bold</b> &amp; <i>it</i>") == "Bold & it"


def test_embed_writes_windows_with_metadata(conn):
    item = _item(conn, "word " * 600)
    client = FakeCompletionClient()
    store = FakeVectorStore()

    result = VectorIndexer(conn, client, store).embed(item.id)

    assert result.outcome is Outcome.OK
    count = result.data["chunk_count"]
    assert count == 4
    assert store.ids_for_content(item.id) == sorted(window_id(item.id, i) for i in range(count))
    _, metadata, document = store.windows[window_id(item.id, 0)]
    assert metadata["total_chunks"] == count
    assert metadata["link"] == "https://example.com/indexed"
    assert metadata["content"] == document
    assert document.startswith("Title: Indexed\n\nDescription: Short & sweet")
    assert get_item(conn, item.id).indexed is True


def test_reembedding_replaces_previous_windows(conn):
    item = _item(conn, "word " * 600)
    store = FakeVectorStore()
    indexer = VectorIndexer(conn, FakeCompletionClient(), store)
    indexer.embed(item.id)
    conn.execute("UPDATE content_items SET content = ? WHERE id = ?", ("short body", item.id))
    conn.commit()

    result = indexer.embed(item.id)

    assert result.data["chunk_count"] == 1
    assert store.ids_for_content(item.id) == [window_id(item.id, 0)]


def test_failure_mid_way_leaves_no_windows(conn):
    item = _item(conn, "word " * 600)
    set_indexed(conn, item.id, True)
    store = FakeVectorStore(fail_after=2)

    result = VectorIndexer(conn, FakeCompletionClient(), store).embed(item.id)

    assert result.outcome is Outcome.EMBED_FAILED
    assert store.ids_for_content(item.id) == []
    assert get_item(conn, item.id).indexed is False


def test_embedding_failure_marks_unindexed(conn):
    item = _item(conn, "body")
    result = VectorIndexer(
        conn, FakeCompletionClient(fail_embed=True), FakeVectorStore()
    ).embed(item.id)
    assert result.outcome is Outcome.EMBED_FAILED
    assert get_item(conn, item.id).indexed is False


def test_custom_tiers(conn):
    item = _item(conn, "body")
    tiers = (ChunkTier(below=0, size=10, overlap=2),)
    result = VectorIndexer(conn, FakeCompletionClient(), FakeVectorStore(), tiers).embed(item.id)
    assert result.data["chunk_size"] == 10
    assert result.data["chunk_count"] > 1
