from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from storybook_orchestrator.api.main import create_app
from storybook_orchestrator.config.settings import Settings
from storybook_orchestrator.storage.memory import InMemoryStoryStorage
from support import (
    STORY_TEXT,
    FakeTransport,
    StaticVerifier,
    auth_headers,
    sse_body,
    sse_message,
)


def _generate(client: TestClient, user_id: str = "alice", **body) -> dict:
    payload = {"brief": "A rabbit searching for rainbow candy", "tags": ["adventure"], **body}
    response = client.post("/api/story/generate", json=payload, headers=auth_headers(user_id))
    assert response.status_code == 200, response.text
    return response.json()


def _status(client: TestClient, task_id: str, user_id: str = "alice"):
    return client.get(
        "/api/story/status", params={"taskId": task_id}, headers=auth_headers(user_id)
    )


def _result(client: TestClient, task_id: str, user_id: str = "alice"):
    return client.get(
        "/api/story/result", params={"taskId": task_id}, headers=auth_headers(user_id)
    )


def test_happy_path_from_submit_to_document(
    client: TestClient,
    storage: InMemoryStoryStorage,
    transport: FakeTransport,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    created: list[str] = []
    original_create_task = storage.create_task

    def recording_create_task(**kwargs):
        task = original_create_task(**kwargs)
        created.append(task.task_id)
        return task

    monkeypatch.setattr(storage, "create_task", recording_create_task)
    seen_while_initiating: list[tuple[str, str]] = []

    def check_pending() -> None:
        task = storage.get_task(created[0], "alice")
        mapping = storage.get_mapping(created[0])
        seen_while_initiating.append((task.status, mapping.status))

    transport.on_initiate = check_pending

    submitted = _generate(
        client, brief="a rabbit searches for rainbow candy", tags=["adventure", "friendship"]
    )
    task_id = submitted["taskId"]
    assert submitted["status"] == "processing"
    assert submitted["externalThreadId"] == "thread-1"
    assert submitted["externalRunId"] == "run-1"
    assert seen_while_initiating == [("pending", "pending")]

    running = _status(client, task_id)
    assert running.status_code == 200
    assert running.json()["status"] == "processing"

    transport.run_status = "completed"
    completed = _status(client, task_id).json()
    assert completed["status"] == "completed"
    assert completed["progress"] == 100
    assert completed["completedAt"]

    result = _result(client, task_id)
    assert result.status_code == 200
    body = result.json()
    assert body["status"] == "completed"
    document = body["document"]
    assert document["title"] == "Rosie and the Rainbow Candy"
    assert 6 <= len(document["pages"]) <= 10
    assert [page["number"] for page in document["pages"]] == list(
        range(1, len(document["pages"]) + 1)
    )
    assert body["rawContent"] == STORY_TEXT


def test_running_job_leaves_task_and_mapping_untouched(
    client: TestClient, storage: InMemoryStoryStorage, transport: FakeTransport
) -> None:
    task_id = _generate(client)["taskId"]
    before = storage.get_mapping(task_id)

    for _ in range(3):
        assert _status(client, task_id).json()["status"] == "processing"

    after = storage.get_mapping(task_id)
    assert after.status == "processing"
    assert after.updated_at == before.updated_at
    assert storage.get_task(task_id, "alice").completed_at is None


def test_result_before_completion_does_not_open_stream(
    client: TestClient, transport: FakeTransport
) -> None:
    task_id = _generate(client)["taskId"]

    response = _result(client, task_id)

    assert response.status_code == 200
    assert response.json()["status"] == "processing"
    assert response.json()["message"] == "Task is still processing"
    assert "document" not in response.json()
    assert transport.streams_opened == 0


def test_malformed_stream_frame_is_skipped(client: TestClient, transport: FakeTransport) -> None:
    half = len(STORY_TEXT) // 2
    transport.stream_body = (
        sse_message(STORY_TEXT[:half]) + "data: {broken json\n\n" + sse_message(STORY_TEXT[half:])
    ).encode("utf-8")
    transport.run_status = "completed"
    task_id = _generate(client)["taskId"]

    body = _result(client, task_id).json()

    assert body["document"]["title"] == "Rosie and the Rainbow Candy"
    assert len(body["document"]["pages"]) == 7


def test_result_is_idempotent(
    client: TestClient, storage: InMemoryStoryStorage, transport: FakeTransport
) -> None:
    transport.run_status = "completed"
    task_id = _generate(client)["taskId"]

    first = _result(client, task_id).json()
    second = _result(client, task_id).json()

    assert first["document"] == second["document"]
    assert storage.count_documents(task_id) == 1
    assert transport.streams_opened == 1


def test_failed_job_is_reported(client: TestClient, transport: FakeTransport) -> None:
    task_id = _generate(client)["taskId"]
    transport.run_status = "failed"
    transport.run_error = "agent crashed"

    status = _status(client, task_id).json()
    result = _result(client, task_id).json()

    assert status["status"] == "failed"
    assert status["errorMessage"] == "agent crashed"
    assert result["status"] == "failed"
    assert result["message"] == "Task not completed"


def test_unparseable_output_returns_raw_content(
    client: TestClient, transport: FakeTransport
) -> None:
    transport.run_status = "completed"
    transport.stream_body = sse_body("I could not write a story today.")
    task_id = _generate(client)["taskId"]

    body = _result(client, task_id).json()

    assert body["error"] == "parse failed"
    assert body["rawContent"] == "I could not write a story today."


def test_stream_failure_returns_500(client: TestClient, transport: FakeTransport) -> None:
    transport.run_status = "completed"
    transport.stream_raises = True
    task_id = _generate(client)["taskId"]

    response = _result(client, task_id)

    assert response.status_code == 500
    assert "error" in response.json()


def test_initiate_failure_returns_failed_task(
    client: TestClient, storage: InMemoryStoryStorage, transport: FakeTransport
) -> None:
    transport.initiate_status = 503

    response = client.post(
        "/api/story/generate", json={"brief": "A whale"}, headers=auth_headers()
    )

    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "failed"
    assert body["error"] == "Failed to start story generation"
    assert storage.get_task(body["taskId"], "alice").status == "failed"


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer nope"}, {"Authorization": "token-alice"}],
)
def test_requests_without_valid_credential_are_rejected(
    client: TestClient, storage: InMemoryStoryStorage, headers: dict[str, str]
) -> None:
    response = client.post("/api/story/generate", json={"brief": "A whale"}, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert storage.error_logs[-1].error_type == "AUTH_ERROR"


def test_other_users_task_is_not_found(client: TestClient) -> None:
    task_id = _generate(client, user_id="alice")["taskId"]

    assert _status(client, task_id, user_id="mallory").status_code == 404
    assert _result(client, task_id, user_id="mallory").status_code == 404
    assert _status(client, "does-not-exist").json() == {"error": "Task not found"}


@pytest.mark.parametrize(
    "payload",
    [{}, {"brief": ""}, {"brief": "x" * 2001}, {"brief": "ok", "tags": "not-a-list"}],
)
def test_invalid_generate_body_is_rejected(client: TestClient, payload: dict) -> None:
    response = client.post("/api/story/generate", json=payload, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request"


def test_status_requires_task_id(client: TestClient) -> None:
    response = client.get("/api/story/status", headers=auth_headers())

    assert response.status_code == 400


def test_submit_rate_limit(storage: InMemoryStoryStorage, transport: FakeTransport) -> None:
    settings = Settings(
        external_base_url="https://agents.test",
        jwt_secret="test-secret",
        submit_rate_limit=2,
    )
    app = create_app(
        storage=storage, settings_override=settings, transport=transport, verifier=StaticVerifier()
    )
    with TestClient(app) as limited:
        codes = [
            limited.post(
                "/api/story/generate", json={"brief": "A whale"}, headers=auth_headers()
            ).status_code
            for _ in range(3)
        ]
        other_user = limited.post(
            "/api/story/generate", json={"brief": "A whale"}, headers=auth_headers("bob")
        )

    assert codes == [200, 200, 429]
    assert other_user.status_code == 200
    assert "RATE_LIMIT_EXCEEDED" in [row.error_type for row in storage.error_logs]


def _save_body(task_id: str) -> dict:
    return {
        "taskId": task_id,
        "document": {
            "title": "Rosie and the Rainbow Candy",
            "pages": [{"number": 1, "text": "Rosie woke up.", "image": "A rabbit yawning."}],
        },
    }


def test_save_forwards_document(client: TestClient, transport: FakeTransport) -> None:
    task_id = _generate(client)["taskId"]

    response = client.post("/api/story/save", json=_save_body(task_id), headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["documentId"] == "book-9"
    assert transport.calls[-1] == ("POST", "https://agents.test/api/suna/save")


def test_save_failure_returns_503(client: TestClient, transport: FakeTransport) -> None:
    task_id = _generate(client)["taskId"]
    transport.save_status = 500

    response = client.post("/api/story/save", json=_save_body(task_id), headers=auth_headers())

    assert response.status_code == 503
    assert "error" in response.json()


def test_save_of_foreign_task_is_not_found(client: TestClient) -> None:
    task_id = _generate(client, user_id="alice")["taskId"]

    response = client.post(
        "/api/story/save", json=_save_body(task_id), headers=auth_headers("mallory")
    )

    assert response.status_code == 404


def test_usage_reports_own_requests(client: TestClient) -> None:
    task_id = _generate(client)["taskId"]
    _status(client, task_id)
    _status(client, "unknown-task")
    _generate(client, user_id="bob")

    response = client.get("/api/usage", params={"days": 1}, headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["days"] == 1
    assert body["totalRequests"] == 2
    assert body["byOperation"] == {"submit": 1, "status": 1}
    assert body["errorCount"] == 0
    assert body["avgResponseTimeMs"] >= 0


def test_request_context_is_recorded(client: TestClient, storage: InMemoryStoryStorage) -> None:
    client.post(
        "/api/story/generate",
        json={"brief": "A whale"},
        headers={
            **auth_headers(),
            "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
            "User-Agent": "kids-app/1.0",
        },
    )

    log = storage.request_logs[-1]
    assert log.ip_address == "203.0.113.7"
    assert log.user_agent == "kids-app/1.0"
    assert log.method == "POST"
