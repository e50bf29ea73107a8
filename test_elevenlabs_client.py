import json

import httpx
import pytest

from canvas_tutor import elevenlabs_client
from canvas_tutor.elevenlabs_client import provider_language, tts_to_bytes
from canvas_tutor.exceptions import SynthesisFailure


@pytest.fixture
def mock_http(monkeypatch):
    """Route the client's httpx calls through a scripted MockTransport."""
    responses = []
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.pop(0)

    real_client = httpx.AsyncClient
    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport, **kwargs))

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(elevenlabs_client.asyncio, "sleep", fake_sleep)
    return responses, requests, sleeps


@pytest.mark.parametrize("code, expected", [
    ("id-ID", "id"),
    ("th-TH", "th"),
    ("cmn-CN", "zh"),
    ("vi-VN", "vi"),
    ("en-US", "en"),
    ("fr-FR", "fr"),
])
def test_provider_language(code, expected):
    assert provider_language(code) == expected


@pytest.mark.asyncio
async def test_successful_synthesis(mock_http):
    responses, requests, _ = mock_http
    responses.append(httpx.Response(200, content=b"mp3-bytes"))

    audio = await tts_to_bytes("Halo", "id-ID")

    assert audio == b"mp3-bytes"
    body = json.loads(requests[0].content)
    assert body["text"] == "Halo"
    assert body["language_code"] == "id"
    assert requests[0].headers["xi-api-key"]


@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_backoff(mock_http):
    responses, requests, sleeps = mock_http
    responses.extend([httpx.Response(429), httpx.Response(429), httpx.Response(200, content=b"ok")])

    assert await tts_to_bytes("hi") == b"ok"
    assert len(requests) == 3
    assert sleeps == [1, 2]


@pytest.mark.asyncio
async def test_rate_limit_retries_exhausted(mock_http):
    responses, _, sleeps = mock_http
    responses.extend([httpx.Response(429) for _ in range(3)])

    with pytest.raises(SynthesisFailure, match="429"):
        await tts_to_bytes("hi", max_retries=2)
    assert sleeps == [1, 2]


@pytest.mark.asyncio
async def test_server_error_is_not_retried(mock_http):
    responses, requests, _ = mock_http
    responses.append(httpx.Response(500, text="boom"))

    with pytest.raises(SynthesisFailure, match="500"):
        await tts_to_bytes("hi")
    assert len(requests) == 1


@pytest.mark.asyncio
async def test_empty_body_is_a_failure(mock_http):
    responses, _, _ = mock_http
    responses.append(httpx.Response(200, content=b""))

    with pytest.raises(SynthesisFailure):
        await tts_to_bytes("hi")
