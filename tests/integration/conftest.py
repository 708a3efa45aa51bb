from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from collections.abc import Iterator
from pathlib import Path
from urllib import error, request

import jwt
import pytest

LIVE_JWT_SECRET = "integration-secret-with-enough-length-for-hs256"


def _pick_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError:
        pytest.skip("Socket operations are blocked in this environment.")


def _wait_for_health(base_url: str, timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        try:
            with request.urlopen(f"{base_url}/health", timeout=1.0) as response:
                if response.status == 200:
                    return
        except Exception:  # noqa: BLE001
            time.sleep(0.2)
    raise TimeoutError(f"Server did not become healthy within {timeout_s:.1f}s")


def _start_server(env: dict[str, str], port: int, cwd: Path) -> subprocess.Popen[str]:
    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "storybook_orchestrator.api.main:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
    ]
    return subprocess.Popen(  # noqa: S603
        cmd,
        cwd=str(cwd),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )


@pytest.fixture
def postgres_url() -> str:
    database_url = os.getenv("STORYBOOK_TEST_DATABASE_URL")
    if not database_url:
        pytest.skip("Set STORYBOOK_TEST_DATABASE_URL to run tests against PostgreSQL.")
    return database_url


@pytest.fixture
def api_base_url(postgres_url: str) -> Iterator[str]:
    port = _pick_free_port()
    base_url = f"http://127.0.0.1:{port}"
    env = os.environ.copy()
    env["STORYBOOK_DATABASE_URL"] = postgres_url
    env["STORYBOOK_JWT_SECRET"] = LIVE_JWT_SECRET
    # Nothing listens on the discard port, so every external call fails fast.
    env["STORYBOOK_EXTERNAL_BASE_URL"] = "http://127.0.0.1:9"
    env["STORYBOOK_EXTERNAL_TIMEOUT_S"] = "2"

    server = _start_server(env=env, port=port, cwd=Path.cwd())
    try:
        _wait_for_health(base_url)
        yield base_url
    finally:
        server.terminate()
        try:
            server.wait(timeout=5)
        except subprocess.TimeoutExpired:
            server.kill()
            server.wait(timeout=5)


def bearer_for(user_id: str) -> dict[str, str]:
    token = jwt.encode(
        {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + 600},
        LIVE_JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def http_post_json(
    base_url: str,
    path: str,
    payload: dict[str, object],
    headers: dict[str, str] | None = None,
) -> tuple[int, dict[str, object]]:
    raw_payload = json.dumps(payload).encode("utf-8")
    req = request.Request(
        url=f"{base_url}{path}",
        method="POST",
        data=raw_payload,
        headers={"Content-Type": "application/json", **(headers or {})},
    )
    try:
        with request.urlopen(req, timeout=20.0) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        return exc.code, json.loads(body)


def http_get_json(
    base_url: str, path: str, headers: dict[str, str] | None = None
) -> tuple[int, dict[str, object]]:
    req = request.Request(url=f"{base_url}{path}", method="GET", headers=headers or {})
    try:
        with request.urlopen(req, timeout=20.0) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        return exc.code, json.loads(body)


@pytest.fixture
def post_json():
    return http_post_json


@pytest.fixture
def get_json():
    return http_get_json


@pytest.fixture
def bearer():
    return bearer_for
