from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    # Import after environment setup so every backend gets the offline adapter.
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from rag_router.api.main import app

    with TestClient(app) as test_client:
        yield test_client


def test_api_ingest_retrieve_generate_usage(client: TestClient, tmp_path: Path) -> None:
    source = tmp_path / "rate_limit.py"
    source.write_text(
        "def allow(bucket, now):\n"
        "    refill = (now - bucket.updated) * bucket.rate\n"
        "    bucket.tokens = min(bucket.capacity, bucket.tokens + refill)\n"
        "    return bucket.tokens >= 1\n",
        encoding="utf-8",
    )

    ingest_resp = client.post("/ingest", json={"path": str(source), "metadata": {"repo": "gateway"}})
    assert ingest_resp.status_code == 200
    assert ingest_resp.json()["chunks_created"] >= 1

    text_resp = client.post(
        "/ingest",
        json={"text": "Token buckets refill at a fixed rate per second.", "source_path": "docs/limits.md"},
    )
    assert text_resp.status_code == 200
    assert text_resp.json()["chunk_ids"] == ["docs/limits.md#chunk-0000"]

    retrieve_resp = client.post("/retrieve", json={"query": "bucket refill tokens", "top_k": 2})
    assert retrieve_resp.status_code == 200
    items = retrieve_resp.json()["items"]
    assert items
    assert retrieve_resp.json()["total_estimated_tokens"] > 0

    filtered = client.post("/retrieve", json={"query": "bucket refill", "filters": {"repo": "gateway"}})
    assert {item["source_path"] for item in filtered.json()["items"]} == {str(source)}

    generate_resp = client.post(
        "/generate",
        json={
            "task_type": "code-generation",
            "prompt": "Add a unit test for allow()",
            "user_id": "dev-1",
            "session_id": "session-1",
            "context_query": "bucket refill",
        },
    )
    assert generate_resp.status_code == 200
    payload = generate_resp.json()
    assert payload["model"] == "claude-sonnet-4"
    assert payload["content"].startswith("[claude-sonnet-4 offline]")
    assert payload["context_chunk_ids"]
    assert payload["attempts"] == 1

    usage_resp = client.get("/usage", params={"user_id": "dev-1", "session_id": "session-1"})
    assert usage_resp.status_code == 200
    assert usage_resp.json()["summary"]["total_requests"] >= 1
    assert usage_resp.json()["session_total"] == pytest.approx(payload["cost"])

    metrics_resp = client.get("/metrics")
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["backends"]["claude-sonnet-4"]["successes"] >= 1

    health_resp = client.get("/health")
    assert health_resp.status_code == 200
    assert health_resp.json()["adapter_mode"] == "offline"
    assert health_resp.json()["indexed_chunks"] >= 2


def test_api_maps_errors_to_status_codes(client: TestClient, tmp_path: Path) -> None:
    unsupported = tmp_path / "diagram.png"
    unsupported.write_bytes(b"\x89PNG")

    assert client.post("/ingest", json={"path": str(unsupported)}).status_code == 400
    assert client.post("/ingest", json={"text": "orphan text"}).status_code == 422
    assert client.post("/retrieve", json={"query": ""}).status_code == 422

    unknown_model = client.post(
        "/generate",
        json={
            "task_type": "debugging",
            "prompt": "why does this hang?",
            "user_id": "dev-1",
            "session_id": "session-2",
            "preferred_model": "gpt-2",
        },
    )
    assert unknown_model.status_code == 422
    assert "gpt-2" in unknown_model.json()["detail"]
