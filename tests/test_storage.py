from feedcurator.storage import (
    add_source,
    add_topic,
    complete_job,
    count_eligible_sources,
    create_job,
    fail_job,
    get_item,
    get_job,
    hand_off_batch,
    insert_item,
    list_item_topics,
    list_source_slice,
    list_unindexed_items,
    new_batch_token,
    record_batch_progress,
    replace_item_topics,
    set_indexed,
    start_job,
    take_over_batch,
)


def _insert(conn, link, status="published"):
    return insert_item(
        conn,
        link=link,
        title="Title",
        description="Description",
        content="Body text",
        image_path=None,
        status=status,
    )


def _processing_job(conn):
    job = create_job(
        conn,
        job_type="feed_ingest",
        is_cron=True,
        batch_size=5,
        total_batches=2,
        total_sources=7,
    )
    token = new_batch_token()
    assert start_job(conn, job.id, token)
    return job.id, token


def test_source_slices_skip_excluded_sources(conn):
    for index in range(7):
        add_source(conn, f"Source {index}", f"https://feeds.example.com/{index}.xml")
    add_source(conn, "Hidden", "https://feeds.example.com/hidden.xml", include_in_newsfeed=False)
    add_source(conn, "No feed", None)

    assert count_eligible_sources(conn) == 7
    first = list_source_slice(conn, 0, 5)
    second = list_source_slice(conn, 1, 5)
    assert [source.title for source in first] == [f"Source {i}" for i in range(5)]
    assert [source.title for source in second] == ["Source 5", "Source 6"]


def test_insert_item_is_idempotent_on_link(conn):
    item, created = _insert(conn, "https://example.com/a")
    again, created_again = _insert(conn, "https://example.com/a")

    assert created is True
    assert created_again is False
    assert again.id == item.id
    assert item.indexed is False
    assert item.summary == ""
    assert item.date_published == item.date_created


def test_replace_item_topics_overwrites(conn):
    item, _ = _insert(conn, "https://example.com/b")
    databases = add_topic(conn, "Databases", "Storage and query engines")
    security = add_topic(conn, "Security")

    replace_item_topics(conn, item.id, [databases, security])
    replace_item_topics(conn, item.id, [security])

    assert [topic.name for topic in list_item_topics(conn, item.id)] == ["Security"]


def test_unindexed_items_filter_by_status(conn):
    published, _ = _insert(conn, "https://example.com/c")
    _insert(conn, "https://example.com/d", status="draft")
    indexed, _ = _insert(conn, "https://example.com/e")
    set_indexed(conn, indexed.id, True)

    items = list_unindexed_items(conn)
    assert [item.id for item in items] == [published.id]
    assert get_item(conn, indexed.id).indexed is True


def test_progress_is_fenced_by_token(conn):
    job_id, token = _processing_job(conn)

    assert not record_batch_progress(
        conn,
        job_id,
        "not-the-token",
        sources=5,
        items=3,
        errors=0,
        duration_seconds=1.0,
        cursor_source_index=0,
        cursor_item_index=0,
    )
    assert record_batch_progress(
        conn,
        job_id,
        token,
        sources=5,
        items=3,
        errors=1,
        duration_seconds=1.5,
        cursor_source_index=0,
        cursor_item_index=0,
    )
    new_token = new_batch_token()
    assert hand_off_batch(conn, job_id, token, next_batch=1, new_token=new_token)
    assert not hand_off_batch(conn, job_id, token, next_batch=2, new_token=new_batch_token())

    job = get_job(conn, job_id)
    assert job.processed_sources == 5
    assert job.processed_items == 3
    assert job.error_count == 1
    assert job.current_batch == 1
    assert job.batch_token == new_token


def test_take_over_keeps_cursor_for_same_batch(conn):
    job_id, token = _processing_job(conn)
    record_batch_progress(
        conn,
        job_id,
        token,
        sources=1,
        items=2,
        errors=0,
        duration_seconds=1.0,
        cursor_source_index=2,
        cursor_item_index=4,
    )

    assert take_over_batch(conn, job_id, 0, new_batch_token())
    job = get_job(conn, job_id)
    assert (job.cursor_source_index, job.cursor_item_index) == (2, 4)

    assert take_over_batch(conn, job_id, 1, new_batch_token())
    job = get_job(conn, job_id)
    assert (job.current_batch, job.cursor_source_index, job.cursor_item_index) == (1, 0, 0)


def test_fail_job_leaves_completed_jobs_alone(conn):
    job_id, token = _processing_job(conn)
    assert complete_job(conn, job_id, token)

    assert fail_job(conn, job_id, "late failure") is False
    job = get_job(conn, job_id)
    assert job.status == "completed"
    assert job.error is None


def test_fail_job_updates_error_of_failed_job(conn):
    job_id, _ = _processing_job(conn)
    assert fail_job(conn, job_id, "first") is True
    assert fail_job(conn, job_id, "second") is False

    job = get_job(conn, job_id)
    assert job.status == "failed"
    assert job.error == "second"
    assert job.batch_token is None
