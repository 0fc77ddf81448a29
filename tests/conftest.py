import json
import os
from typing import Any, Callable, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from azure_gateway.main import app
from azure_gateway.providers import _common

from gateway_test_utils import TEST_API_KEY, TEST_ENDPOINT


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No AZURE_* leakage from the developer's shell, and a private models file."""
    for key in list(os.environ):
        if key.startswith("AZURE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "models.json"))
    return tmp_path


@pytest.fixture
def chat_env(monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", TEST_ENDPOINT + "/")
    monkeypatch.setenv("AZURE_OPENAI_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt4-deployment")


@pytest.fixture
def codex_env(monkeypatch, chat_env):
    monkeypatch.setenv("AZURE_MODEL_CODEX_X_DEPLOYMENT_NAME", "codex-deployment")


class BackendRecorder:
    """Stands in for Azure: records requests and answers with a canned handler."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.last.content)


@pytest.fixture
def backend(monkeypatch):
    """Install a fake Azure backend: backend(handler) -> BackendRecorder."""

    def install(respond: Callable[[httpx.Request], httpx.Response]) -> BackendRecorder:
        recorder = BackendRecorder(respond)
        monkeypatch.setattr(
            _common,
            "build_http_client",
            lambda: httpx.AsyncClient(transport=httpx.MockTransport(recorder)),
        )
        return recorder

    return install


@pytest.fixture
def client():
    return TestClient(app)

