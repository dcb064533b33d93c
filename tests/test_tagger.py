from feedcurator.models import Outcome, Topic
from feedcurator.storage import add_topic, insert_item, list_item_topics, replace_item_topics
from feedcurator.tagger import (
    build_topic_prompt,
    normalize_tag,
    parse_topic_response,
    tag_all_items,
    tag_item,
)

from conftest import FakeCompletionClient

VOCABULARY = [
    Topic(id=1, name="Databases", slug="databases", description="Storage engines"),
    Topic(id=2, name="Machine Learning", slug="machine-learning", description=None),
    Topic(id=3, name="Security", slug="security", description=None),
    Topic(id=4, name="Networking", slug="networking", description=None),
    Topic(id=5, name="Cloud", slug="cloud", description=None),
]


def _item(conn):
    item, _ = insert_item(
        conn,
        link="https://example.com/tagged",
        title="Query planners",
        description="How planners pick indexes",
        content="Body",
        image_path=None,
        status="published",
    )
    return item


def test_normalize_tag():
    assert normalize_tag("  Machine   Learning ") == "machine-learning"
    assert normalize_tag("C++/Rust") == "c-rust"


def test_prompt_lists_topics_with_descriptions():
    prompt = build_topic_prompt(VOCABULARY[:2], 4)
    assert "- Databases (Storage engines)" in prompt
    assert "- Machine Learning\n" in prompt or prompt.endswith("- Machine Learning")
    assert "at most 4 topics" in prompt


def test_parse_response_matches_vocabulary_only():
    raw = "databases, Quantum Computing,\n- machine learning\nDatabases"
    matched = parse_topic_response(raw, VOCABULARY, 4)
    assert [topic.name for topic in matched] == ["Databases", "Machine Learning"]


def test_parse_response_caps_after_matching():
    raw = "Unknown, Other, Databases, Security, Networking, Cloud, Machine Learning"
    matched = parse_topic_response(raw, VOCABULARY, 4)
    assert [topic.name for topic in matched] == ["Databases", "Security", "Networking", "Cloud"]


def test_tag_item_replaces_associations(conn):
    item = _item(conn)
    databases = add_topic(conn, "Databases")
    security = add_topic(conn, "Security")
    replace_item_topics(conn, item.id, [security])

    result = tag_item(conn, FakeCompletionClient(topics="Databases"), item.id)

    assert result.outcome is Outcome.OK
    assert result.data["topics"] == ["Databases"]
    assert [topic.id for topic in list_item_topics(conn, item.id)] == [databases]


def test_tag_item_without_vocabulary(conn):
    item = _item(conn)
    client = FakeCompletionClient()
    result = tag_item(conn, client, item.id)
    assert result.outcome is Outcome.NO_TOPICS_DEFINED
    assert client.completions == []


def test_tag_item_with_no_known_suggestion_clears_topics(conn):
    item = _item(conn)
    security = add_topic(conn, "Security")
    replace_item_topics(conn, item.id, [security])

    result = tag_item(conn, FakeCompletionClient(topics="Gardening"), item.id)

    assert result.outcome is Outcome.NO_TOPICS_MATCHED
    assert list_item_topics(conn, item.id) == []


def test_tag_item_completion_failure_keeps_topics(conn):
    item = _item(conn)
    security = add_topic(conn, "Security")
    replace_item_topics(conn, item.id, [security])

    result = tag_item(conn, FakeCompletionClient(fail_complete=True), item.id)

    assert result.outcome is Outcome.COMPLETION_FAILED
    assert [topic.id for topic in list_item_topics(conn, item.id)] == [security]


def test_tag_all_items_reports_each_item(conn):
    add_topic(conn, "Databases")
    first = _item(conn)
    second, _ = insert_item(
        conn,
        link="https://example.com/other",
        title="Other",
        description="",
        content="Body",
        image_path=None,
        status="draft",
    )

    summary = tag_all_items(conn, FakeCompletionClient(topics="Databases"))

    assert summary == {"total": 2, "succeeded": 2, "failed": 0, "errors": []}
    assert [topic.name for topic in list_item_topics(conn, first.id)] == ["Databases"]
    assert [topic.name for topic in list_item_topics(conn, second.id)] == ["Databases"]


def test_tag_all_items_collects_failures(conn):
    add_topic(conn, "Databases")
    item = _item(conn)

    summary = tag_all_items(conn, FakeCompletionClient(fail_complete=True))

    assert summary["succeeded"] == 0
    assert summary["failed"] == 1
    assert summary["errors"][0]["itemId"] == item.id
    assert summary["errors"][0]["outcome"] == Outcome.COMPLETION_FAILED.value
