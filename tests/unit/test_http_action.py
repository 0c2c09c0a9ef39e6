"""HTTP action executor tests."""

import json

import httpx
import pytest

from stationflow.actions.http import HttpActionExecutor
from stationflow.errors import ActionError


def _executor(handler):
    return HttpActionExecutor(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_post_sends_json_body_and_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["headers"] = request.headers
        return httpx.Response(201, json={"id": 7})

    result = await _executor(handler).execute(
        "http://svc/items", "post", {"x-api-key": "k"}, {"name": "a"}
    )

    assert result.success is True
    assert result.status == 201
    assert result.data == {"id": 7}
    assert seen["method"] == "POST"
    assert seen["body"] == {"name": "a"}
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["headers"]["x-api-key"] == "k"


@pytest.mark.asyncio
async def test_get_sends_no_body():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.content == b""
        return httpx.Response(200, json=[1, 2])

    result = await _executor(handler).execute("http://svc", "GET", body={"ignored": 1})
    assert result.data == [1, 2]


@pytest.mark.asyncio
async def test_non_json_and_error_statuses():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    result = await _executor(handler).execute("http://svc", "POST", body={})
    assert result.success is False
    assert result.status == 500
    assert result.data == {"text": "boom"}


@pytest.mark.asyncio
async def test_transport_failures_raise_action_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ActionError):
        await _executor(handler).execute("http://svc", "POST", body={})


@pytest.mark.asyncio
async def test_timeouts_raise_action_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ActionError, match="timed out"):
        await _executor(handler).execute("http://svc", "POST", body={}, timeout_ms=10)
