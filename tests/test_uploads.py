import asyncio

import pytest
from pydantic import ValidationError

from jobs import JobStatus, JobStore
from uploads import (
    FILE_TOO_LARGE,
    MISSING_FIELDS,
    ONLY_IMAGES,
    JobScheduler,
    UploadFailed,
    UploadRejected,
    UploadRequest,
    accept_upload,
    validate_upload,
)

MB = 1024 * 1024


def _request(name, ftype, size):
    return UploadRequest(file_name=name, file_type=ftype, file_size=size)


@pytest.mark.parametrize(
    "name, ftype, size, reason",
    [
        (None, "image/jpeg", 10, MISSING_FIELDS),
        ("a.jpg", "", 10, MISSING_FIELDS),
        ("a.jpg", "image/jpeg", 0, MISSING_FIELDS),
        ("a.jpg", "image/jpeg", -1000, MISSING_FIELDS),
        # first failure wins
        (None, "application/pdf", 60 * MB, MISSING_FIELDS),
        ("a.pdf", "application/pdf", 60 * MB, FILE_TOO_LARGE),
        ("a.jpg", "image/jpeg", 50 * MB + 1, FILE_TOO_LARGE),
        ("a.pdf", "application/pdf", 10, ONLY_IMAGES),
        ("a.jpg", "image/jpeg", 50 * MB, None),
        ("a.jpg", "image/jpeg", 1048576.5, None),
        ("a.webp", "image/webp", 1, None),
    ],
)
def test_validate_upload(name, ftype, size, reason):
    assert validate_upload(_request(name, ftype, size), images_only=True) == reason


def test_generic_variant_accepts_any_type():
    assert validate_upload(_request("a.pdf", "application/pdf", 10), images_only=False) is None
    assert validate_upload(_request("a.pdf", "application/pdf", 60 * MB), images_only=False) == FILE_TOO_LARGE


def test_upload_request_reads_camel_case_and_keeps_missing_fields_empty():
    upload = UploadRequest.model_validate({"fileName": "a.jpg", "fileSize": 12.5})
    assert upload.file_name == "a.jpg"
    assert upload.file_type is None
    assert upload.file_size == 12.5


@pytest.mark.parametrize("size", [True, "1024", [1], float("nan"), float("inf")])
def test_bad_size_is_a_parse_error_not_a_coercion(size):
    with pytest.raises(ValidationError):
        UploadRequest.model_validate({"fileName": "a.jpg", "fileType": "image/jpeg", "fileSize": size})


def test_non_string_name_is_a_parse_error():
    with pytest.raises(ValidationError):
        UploadRequest.model_validate({"fileName": 123, "fileType": "image/jpeg", "fileSize": 10})


def test_accept_upload_returns_before_processing(instant, spans):
    store = JobStore()
    scheduler = JobScheduler()
    payload = {"fileName": "a.jpg", "fileType": "image/jpeg", "fileSize": MB}

    async def scenario():
        job = accept_upload(store, scheduler, payload, simulation=instant)
        # Nothing has run yet: the pipeline is only scheduled
        assert store.get(job.id).status is JobStatus.PENDING
        assert scheduler.pending == 1
        await scheduler.drain()
        return job

    job = asyncio.run(scenario())

    assert store.get(job.id).status is JobStatus.COMPLETED
    assert scheduler.pending == 0

    receive = next(s for s in spans if s.op == "upload.receive")
    assert receive.attributes["validation.passed"] is True
    assert receive.attributes["job.id"] == job.id
    assert receive.attributes["file.name"] == "a.jpg"
    assert receive.attributes["file.size_bytes"] == MB
    assert receive.attributes["file.mime_type"] == "image/jpeg"


def test_rejected_upload_creates_no_job(spans):
    store = JobStore()
    scheduler = JobScheduler()
    payload = {"fileName": "a.jpg", "fileType": "image/jpeg", "fileSize": 60_000_000}

    async def scenario():
        with pytest.raises(UploadRejected) as err:
            accept_upload(store, scheduler, payload)
        return err.value

    err = asyncio.run(scenario())

    assert err.reason == FILE_TOO_LARGE
    assert len(store) == 0
    assert scheduler.pending == 0
    span = spans[-1]
    assert span.attributes["validation.passed"] is False
    assert span.attributes["validation.error"] == FILE_TOO_LARGE


def test_non_object_payload_is_an_upload_fault():
    store = JobStore()

    async def scenario():
        with pytest.raises(UploadFailed):
            accept_upload(store, JobScheduler(), ["a.jpg"])

    asyncio.run(scenario())
    assert len(store) == 0


def test_one_job_and_one_pipeline_per_accepted_upload(instant):
    store = JobStore()
    scheduler = JobScheduler()

    async def scenario():
        jobs = [
            accept_upload(store, scheduler, {"fileName": f"{i}.png", "fileType": "image/png", "fileSize": 100}, simulation=instant)
            for i in range(5)
        ]
        assert scheduler.pending == 5
        await scheduler.drain()
        return jobs

    jobs = asyncio.run(scenario())

    assert len(store) == 5
    assert all(store.get(j.id).status is JobStatus.COMPLETED for j in jobs)
    assert len(instant.sleeps) == 10


def test_scheduler_survives_a_crashing_task():
    scheduler = JobScheduler()

    async def boom():
        raise RuntimeError("boom")

    async def scenario():
        scheduler.submit(boom(), name="boom")
        await scheduler.drain()

    asyncio.run(scenario())
    assert scheduler.pending == 0


def test_scheduler_requires_a_running_loop():
    async def noop():
        return None

    with pytest.raises(RuntimeError):
        JobScheduler().submit(noop())


def test_upload_that_cannot_be_scheduled_leaves_no_job():
    store = JobStore()
    payload = {"fileName": "a.jpg", "fileType": "image/jpeg", "fileSize": MB}

    # No running event loop, so the pipeline cannot be scheduled
    with pytest.raises(UploadFailed):
        accept_upload(store, JobScheduler(), payload)

    assert len(store) == 0


def test_fractional_size_is_accepted_and_processed(instant):
    store = JobStore()
    scheduler = JobScheduler()
    payload = {"fileName": "a.jpg", "fileType": "image/jpeg", "fileSize": 1048576.5}

    async def scenario():
        job = accept_upload(store, scheduler, payload, simulation=instant)
        await scheduler.drain()
        return job

    job = asyncio.run(scenario())

    final = store.get(job.id)
    assert final.file_size == 1048576.5
    assert final.status is JobStatus.COMPLETED
    assert final.result.size_saved == 314572
