import json
import time
from datetime import datetime, timezone
from pathlib import Path

from feedcurator.models import ItemStatus
from feedcurator.utils import entry_published_at, json_dumps, json_loads, slugify


def test_slugify_strips_accents_and_punctuation():
    assert slugify("Café Ops & Databases!") == "cafe-ops-databases"
    assert slugify("") == "untitled"
    assert slugify("!!!") == "untitled"


def test_json_dumps_handles_enums_paths_and_datetimes():
    stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    payload = json.loads(
        json_dumps({"status": ItemStatus.DRAFT, "path": Path("/data"), "at": stamp, "tags": {"a"}})
    )
    assert payload == {
        "at": "2024-05-01T12:00:00+00:00",
        "path": "/data",
        "status": "draft",
        "tags": ["a"],
    }


def test_json_loads_falls_back_to_default():
    assert json_loads(None, default={}) == {}
    assert json_loads("not json", default=[]) == []
    assert json_loads('{"a": 1}') == {"a": 1}


def test_entry_published_at_prefers_parsed_struct():
    entry = {
        "published_parsed": time.strptime("2024-03-02 10:00:00", "%Y-%m-%d %H:%M:%S"),
        "published": "garbage",
    }
    assert entry_published_at(entry) == "2024-03-02T10:00:00+00:00"


def test_entry_published_at_reads_rfc822_and_iso():
    assert entry_published_at({"published": "Tue, 05 Mar 2024 08:30:00 GMT"}) == (
        "2024-03-05T08:30:00+00:00"
    )
    assert entry_published_at({"updated": "2024-03-05T10:30:00+02:00"}) == (
        "2024-03-05T08:30:00+00:00"
    )
    assert entry_published_at({"title": "no dates"}) is None
