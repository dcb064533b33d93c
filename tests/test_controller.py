import pytest

from feedcurator.controller import STALE_JOB_ERROR, start_or_resume_job, sweep_stale_jobs
from feedcurator.dispatch import QueueDispatcher
from feedcurator.errors import JobNotFound
from feedcurator.storage import add_source, create_job, get_job, list_job_events
from feedcurator.utils import utc_now_iso_offset


def _seed(conn, count):
    for index in range(count):
        add_source(conn, f"Source {index}", f"https://feeds.example.com/{index}.xml")


def test_creates_and_dispatches_first_batch(conn, config):
    _seed(conn, 12)
    dispatcher = QueueDispatcher()

    result = start_or_resume_job(conn, config, dispatcher=dispatcher, is_cron=True)

    assert result.created is True
    assert result.job.status == "processing"
    assert result.job.total_sources == 12
    assert result.job.total_batches == 3
    assert result.job.metadata == {"trigger": "cron"}
    request = dispatcher.dispatched[0]
    assert (request.job_id, request.batch_number) == (result.job.id, 0)
    assert request.token == result.job.batch_token
    assert result.to_payload() == {
        "success": True,
        "jobId": result.job.id,
        "jobStatus": "processing",
        "totalSites": 12,
        "totalBatches": 3,
    }


def test_second_start_reports_running_job(conn, config):
    _seed(conn, 2)
    first = start_or_resume_job(conn, config, dispatcher=QueueDispatcher())
    dispatcher = QueueDispatcher()

    second = start_or_resume_job(conn, config, dispatcher=dispatcher)

    assert second.already_running is True
    assert second.job.id == first.job.id
    assert dispatcher.dispatched == []


def test_resume_pending_job_by_id(conn, config):
    job = create_job(
        conn,
        job_type="feed_ingest",
        is_cron=False,
        batch_size=5,
        total_batches=1,
        total_sources=1,
    )
    dispatcher = QueueDispatcher()

    result = start_or_resume_job(conn, config, dispatcher=dispatcher, job_id=job.id)

    assert result.created is False
    assert result.job.status == "processing"
    assert len(dispatcher.dispatched) == 1
    assert [event.event_type for event in list_job_events(conn, job.id)] == ["job_started"]


def test_resume_running_job_is_a_noop(conn, config):
    _seed(conn, 1)
    started = start_or_resume_job(conn, config, dispatcher=QueueDispatcher())
    dispatcher = QueueDispatcher()

    result = start_or_resume_job(conn, config, dispatcher=dispatcher, job_id=started.job.id)

    assert result.job.status == "processing"
    assert dispatcher.dispatched == []


def test_unknown_job_id(conn, config):
    with pytest.raises(JobNotFound):
        start_or_resume_job(conn, config, dispatcher=QueueDispatcher(), job_id="job_nope")


def test_no_sources_still_creates_job(conn, config):
    result = start_or_resume_job(conn, config, dispatcher=QueueDispatcher())
    assert result.job.total_sources == 0
    assert result.job.total_batches == 0


def test_stale_jobs_are_swept(conn, config):
    _seed(conn, 1)
    stale = start_or_resume_job(conn, config, dispatcher=QueueDispatcher())
    conn.execute(
        "UPDATE jobs SET last_updated = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-7200), stale.job.id),
    )
    conn.commit()

    result = start_or_resume_job(conn, config, dispatcher=QueueDispatcher())

    assert result.created is True
    assert result.job.id != stale.job.id
    swept = get_job(conn, stale.job.id)
    assert swept.status == "failed"
    assert swept.error == STALE_JOB_ERROR


def test_sweep_disabled_with_zero(conn):
    assert sweep_stale_jobs(conn, 0) == []
