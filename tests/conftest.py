import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from teamcity_mcp.client import TeamCityClient


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_response(status_code=200, body=None, text=None, url="https://tc.example.com/app/rest/x", headers=None):
    """Build a requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    if body is not None:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response


def make_ctx(lifespan_context):
    """Stand-in for the FastMCP Context that tool functions receive."""
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=lifespan_context))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    mock = MagicMock(spec=TeamCityClient)
    mock.base_url = "https://tc.example.com"
    mock.rest_url = "https://tc.example.com/app/rest"
    return mock
