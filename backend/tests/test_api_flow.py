import pytest
from httpx import AsyncClient

from config import settings
from engine.text_chunker import split_text


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test the health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["worker_configured"] is True


@pytest.mark.asyncio
async def test_create_and_get_subject(client: AsyncClient):
    response = await client.post(
        "/api/subjects/",
        json={"title": "Sunday Service", "youtube_url": "https://youtube.com/watch?v=xyz"},
    )
    assert response.status_code == 200
    created = response.json()
    assert created["status"] == "pending"
    assert created["has_transcript"] is False

    response = await client.get(f"/api/subjects/{created['id']}")
    assert response.status_code == 200
    assert response.json()["title"] == "Sunday Service"

    response = await client.get("/api/subjects/does-not-exist")
    assert response.status_code == 404
    assert response.json()["type"] == "NotFoundError"


@pytest.mark.asyncio
async def test_full_transcription_flow(client: AsyncClient, fake_worker):
    """
    Test the whole round trip:
    1. Create and queue a subject
    2. Trigger dispatch
    3. Worker reports chunks and completes
    """
    subject_id = (await client.post(
        "/api/subjects/", json={"title": "Talk", "audio_url": "https://cdn.example.com/talk.mp3"}
    )).json()["id"]

    response = await client.post("/api/queue/add", json={"subject_id": subject_id})
    assert response.json()["queue_item"]["position"] == 1

    response = await client.get("/api/queue/cron")
    assert response.json()["processed"] is True
    assert fake_worker.calls[0]["json"]["subjectId"] == subject_id

    for index in (2, 0, 1):
        status = (await client.get(f"/api/queue/status/{subject_id}")).json()
        assert status["should_stop"] is False
        await client.post(
            f"/api/subjects/{subject_id}/chunks",
            json={"index": index, "text": f"Sentence {index}.", "total": 3},
        )

    response = await client.post("/api/queue/complete", json={"subject_id": subject_id, "success": True})
    assert response.json()["status"] == "completed"

    subject = (await client.get(f"/api/subjects/{subject_id}")).json()
    assert subject["status"] == "completed"
    assert subject["progress"]["step"] == "completed"

    response = await client.get(f"/api/subjects/{subject_id}/transcript")
    assert response.json()["transcript"] == "Sentence 0.\n\nSentence 1.\n\nSentence 2."

    response = await client.get(f"/api/subjects/{subject_id}/summary-chunks")
    data = response.json()
    assert data["source"] == "transcription"
    assert [chunk["index"] for chunk in data["chunks"]] == [0, 1, 2]

    response = await client.get("/api/queue/list")
    queue = response.json()["queue"]
    assert queue["processing"] is None
    assert queue["all"][0]["status"] == "completed"


@pytest.mark.asyncio
async def test_summary_chunks_from_transcript(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "summary_chunk_size", 10)
    subject_id = (await client.post(
        "/api/subjects/", json={"title": "Old", "transcript": "abcdefghij" * 2 + "xyz"}
    )).json()["id"]

    response = await client.get(f"/api/subjects/{subject_id}/summary-chunks")

    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "transcript"
    assert [chunk["text"] for chunk in data["chunks"]] == ["abcdefghij", "abcdefghij", "xyz"]


@pytest.mark.asyncio
async def test_summary_chunks_require_text(client: AsyncClient):
    subject_id = (await client.post("/api/subjects/", json={"title": "Empty"})).json()["id"]

    response = await client.get(f"/api/subjects/{subject_id}/summary-chunks")

    assert response.status_code == 400
    assert response.json()["type"] == "InvalidStateError"


def test_split_text():
    assert split_text("  ", size=3) == {}
    assert split_text("abcdefg", size=3) == {0: "abc", 1: "def", 2: "g"}
    with pytest.raises(ValueError):
        split_text("abc", size=-1)
