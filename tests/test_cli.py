import logging
import sys

import pytest

from feedcurator.cli import build_parser, main
from feedcurator.storage import (
    get_item,
    init_db,
    insert_item,
    list_sources,
    list_topics,
    set_indexed,
)


@pytest.fixture
def run_cli(monkeypatch, tmp_path):
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    db_path = str(tmp_path / "state.sqlite3")

    def _run(*argv):
        monkeypatch.setattr(sys, "argv", ["feedcurator", "--db", db_path, *argv])
        return main()

    yield _run, db_path
    root.handlers = original_handlers


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_catalog_import_is_idempotent(run_cli, tmp_path):
    run, db_path = run_cli
    catalog = tmp_path / "catalog.yml"
    catalog.write_text(
        "sources:\n"
        "  - title: Example\n"
        "    feed_url: https://example.com/feed.xml\n"
        "  - title: Hidden\n"
        "    feed_url: https://example.com/hidden.xml\n"
        "    include_in_newsfeed: false\n"
        "topics:\n"
        "  - name: Databases\n",
        encoding="utf-8",
    )

    assert run("db", "migrate") == 0
    assert run("catalog", "import", str(catalog)) == 0
    assert run("catalog", "import", str(catalog)) == 0

    conn = init_db(db_path)
    sources = list_sources(conn)
    assert [source.title for source in sources] == ["Example", "Hidden"]
    assert sources[1].include_in_newsfeed is False
    assert [topic.name for topic in list_topics(conn)] == ["Databases"]
    conn.close()


def test_sources_and_topics_commands(run_cli):
    run, db_path = run_cli
    assert run("sources", "add", "https://example.com/feed.xml", "--title", "Example") == 0
    assert run("topics", "add", "Security", "--description", "Vulnerabilities") == 0
    assert run("sources", "list") == 0
    assert run("jobs", "show", "job_missing") == 1

    conn = init_db(db_path)
    assert list_topics(conn)[0].description == "Vulnerabilities"
    conn.close()


def test_missing_catalog_file(run_cli, tmp_path):
    run, _ = run_cli
    assert run("catalog", "import", str(tmp_path / "missing.yml")) == 1


def test_items_reset_index(run_cli):
    run, db_path = run_cli
    assert run("db", "migrate") == 0
    conn = init_db(db_path)
    item, _ = insert_item(
        conn,
        link="https://example.com/indexed",
        title="Indexed",
        description="",
        content="body",
        image_path=None,
        status="published",
    )
    set_indexed(conn, item.id, True)

    assert run("items", "reset-index") == 0

    assert get_item(conn, item.id).indexed is False
    conn.close()
