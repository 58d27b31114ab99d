import json

import httpx
import pytest
from fastapi.testclient import TestClient

from pinproxy.app import create_app
from pinproxy.config import ConfigLoader


class FakeUpstream:
    """Records every outbound request and answers with a canned response."""

    def __init__(self, status_code=200, content=b'{"id":"gen-1","object":"chat.completion"}', headers=None, error=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers if headers is not None else {"content-type": "application/json"}
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, stream=httpx.ByteStream(self.content), headers=self.headers)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


def write_config(path, **overrides):
    data = {
        "openrouterApiKey": "sk-test",
        "openrouterBaseUrl": "https://openrouter.ai/api/v1",
        "modelProviders": {"z-ai/glm-5": "atlas-cloud/fp8"},
        "allowFallbacks": False,
        "bindHost": "127.0.0.1",
        "port": 3434,
    }
    data.update(overrides)
    path.write_text(json.dumps(data), encoding="utf-8")
    return data


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.json"
    write_config(path)
    return path


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def client(config_path, upstream, tmp_path):
    app = create_app(
        config_loader=ConfigLoader(str(config_path)),
        log_dir=str(tmp_path / "logs"),
        upstream_transport=httpx.MockTransport(upstream),
    )
    with TestClient(app) as test_client:
        yield test_client
