from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from storybook_orchestrator.api.main import create_app
from storybook_orchestrator.config.settings import Settings
from storybook_orchestrator.storage.memory import InMemoryStoryStorage
from support import BASE_URL, STORY_TEXT, FakeTransport, StaticVerifier, sse_body


@pytest.fixture
def settings() -> Settings:
    return Settings(
        external_base_url=BASE_URL,
        jwt_secret="test-secret",
        stream_timeout_s=5.0,
        submit_rate_limit=50,
        status_rate_limit=200,
        result_rate_limit=100,
    )


@pytest.fixture
def storage() -> InMemoryStoryStorage:
    return InMemoryStoryStorage()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(stream_body=sse_body(STORY_TEXT))


@pytest.fixture
def client(
    storage: InMemoryStoryStorage, transport: FakeTransport, settings: Settings
) -> Iterator[TestClient]:
    app = create_app(
        storage=storage,
        settings_override=settings,
        transport=transport,
        verifier=StaticVerifier(),
    )
    with TestClient(app) as test_client:
        yield test_client
