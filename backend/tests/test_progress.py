import asyncio

import pytest
from httpx import AsyncClient

from conftest import make_subject
from engine import job_store
from engine.progress import (
    COMPLETED_KEY,
    FAILED_KEY,
    ProgressTracker,
    assemble_transcript,
    clear_chunk_state,
    merge_chunk_failure,
    merge_chunk_success,
    missing_chunks,
)
from utils.exceptions import NotFoundError, ValidationError


# --- Merge rules ---

def test_success_clears_earlier_failure():
    progress = merge_chunk_failure({}, 1, "decoder crashed")
    progress = merge_chunk_success(progress, 1, "hello")

    assert progress[COMPLETED_KEY] == {"1": "hello"}
    assert FAILED_KEY not in progress


def test_failure_never_overrides_completed_chunk():
    progress = merge_chunk_success({"step": "processing"}, 0, "kept")
    progress = merge_chunk_failure(progress, 0, "late failure")

    assert progress[COMPLETED_KEY] == {"0": "kept"}
    assert FAILED_KEY not in progress
    assert progress["step"] == "processing"


def test_invalid_chunk_index():
    with pytest.raises(ValidationError):
        merge_chunk_success({}, -1, "x")
    with pytest.raises(ValidationError):
        merge_chunk_success({}, "abc", "x")


def test_assembly_is_order_independent():
    completed = {}
    for index, text in [(2, "three"), (0, " one "), (1, "two")]:
        completed = merge_chunk_success({COMPLETED_KEY: completed}, index, text)[COMPLETED_KEY]

    assert assemble_transcript(completed) == "one\n\ntwo\n\nthree"
    assert assemble_transcript(completed, separator=" ") == "one two three"


def test_assembly_waits_for_every_chunk():
    completed = {"0": "a", "2": "c"}

    assert missing_chunks(completed) == [1]
    assert assemble_transcript(completed) is None
    assert missing_chunks({"0": "a", "1": "b"}, total=4) == [2, 3]
    assert assemble_transcript({"0": "a", "1": "b"}, total=4) is None
    assert assemble_transcript(None) is None


def test_clear_chunk_state():
    assert clear_chunk_state({COMPLETED_KEY: {"0": "a"}, "total": 3}) is None
    assert clear_chunk_state({COMPLETED_KEY: {"0": "a"}, "step": "cancelled", "message": "x"}) is None
    assert clear_chunk_state({COMPLETED_KEY: {"0": "a"}, "step": "queued", "position": 2}) == {
        "step": "queued",
        "position": 2,
    }


# --- Tracker ---

@pytest.mark.asyncio
async def test_record_chunks_out_of_order(db_session, subject_factory):
    tracker = ProgressTracker()
    subject_id = await subject_factory()

    for index in (2, 0, 1):
        await tracker.record_chunk(db_session, subject_id, index, text=f"chunk {index}", total=3)
    await db_session.commit()

    subject = await job_store.get_subject(db_session, subject_id)
    progress = subject.progress_json
    assert progress[COMPLETED_KEY] == {"0": "chunk 0", "1": "chunk 1", "2": "chunk 2"}
    assert progress["total"] == 3
    assert progress["message"] == "Transcribed 3/3 chunks"
    assert subject.progress_version == 3
    assert assemble_transcript(progress[COMPLETED_KEY], progress["total"]) == "chunk 0\n\nchunk 1\n\nchunk 2"


@pytest.mark.asyncio
async def test_status_writes_keep_chunk_maps(db_session, subject_factory):
    tracker = ProgressTracker()
    subject_id = await subject_factory()
    await tracker.record_chunk(db_session, subject_id, 0, text="first")
    await tracker.record_chunk(db_session, subject_id, 1, error="bad audio")

    progress = await tracker.mark_queued(db_session, subject_id, 4)

    assert progress[COMPLETED_KEY] == {"0": "first"}
    assert progress[FAILED_KEY] == {"1": "bad audio"}
    assert progress["step"] == "queued"
    assert progress["position"] == 4


@pytest.mark.asyncio
async def test_record_chunk_validation(db_session, subject_factory):
    tracker = ProgressTracker()
    subject_id = await subject_factory()

    with pytest.raises(ValidationError):
        await tracker.record_chunk(db_session, subject_id, 0)
    with pytest.raises(ValidationError):
        await tracker.record_chunk(db_session, subject_id, 0, text="x", total=0)
    with pytest.raises(NotFoundError):
        await tracker.record_chunk(db_session, "missing", 0, text="x")


@pytest.mark.asyncio
async def test_chunk_index_must_fit_total(db_session, subject_factory):
    tracker = ProgressTracker()
    subject_id = await subject_factory()
    for index, text in enumerate("abc"):
        await tracker.record_chunk(db_session, subject_id, index, text=text, total=3)

    # total given with the report
    with pytest.raises(ValidationError):
        await tracker.record_chunk(db_session, subject_id, 7, text="lost", total=3)
    # total already stored from earlier reports
    with pytest.raises(ValidationError):
        await tracker.record_chunk(db_session, subject_id, 3, text="lost")
    with pytest.raises(ValidationError):
        await tracker.record_chunk(db_session, subject_id, 5, error="late failure")
    await db_session.commit()

    subject = await job_store.get_subject(db_session, subject_id)
    assert sorted(subject.progress_json[COMPLETED_KEY]) == ["0", "1", "2"]
    assert FAILED_KEY not in subject.progress_json
    assert subject.progress_version == 3


@pytest.mark.asyncio
async def test_concurrent_chunk_reports_all_survive(file_session_factory):
    tracker = ProgressTracker()
    async with file_session_factory() as db:
        subject_id = await make_subject(db)

    async def report(index):
        async with file_session_factory() as db:
            await tracker.record_chunk(db, subject_id, index, text=f"part {index}")
            await db.commit()

    await asyncio.gather(*(report(i) for i in range(4)))

    async with file_session_factory() as db:
        subject = await job_store.get_subject(db, subject_id)
        assert sorted(subject.progress_json[COMPLETED_KEY]) == ["0", "1", "2", "3"]
        assert subject.progress_version == 4


# --- API ---

@pytest.mark.asyncio
async def test_chunk_endpoints(client: AsyncClient, db_session):
    subject_id = await make_subject(db_session)

    for index, text in [(1, "world"), (0, "hello")]:
        response = await client.post(
            f"/api/subjects/{subject_id}/chunks", json={"index": index, "text": text, "total": 2}
        )
        assert response.status_code == 200

    response = await client.get(f"/api/subjects/{subject_id}/transcript")
    assert response.status_code == 200
    assert response.json() == {"transcript": "hello\n\nworld", "transcript_length": 12}

    response = await client.delete(f"/api/subjects/{subject_id}/chunks")
    assert response.status_code == 200
    assert response.json()["progress"] is None

    response = await client.get(f"/api/subjects/{subject_id}/transcript")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_chunk_endpoint_rejects_empty_report(client: AsyncClient, db_session):
    subject_id = await make_subject(db_session)

    response = await client.post(f"/api/subjects/{subject_id}/chunks", json={"index": 0})
    assert response.status_code == 400

    response = await client.post("/api/subjects/missing/chunks", json={"index": 0, "text": "x"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_chunk_endpoint_rejects_out_of_range_index(client: AsyncClient, db_session):
    subject_id = await make_subject(db_session)

    response = await client.post(
        f"/api/subjects/{subject_id}/chunks", json={"index": 2, "text": "extra", "total": 2}
    )

    assert response.status_code == 400
    assert response.json()["type"] == "ValidationError"
