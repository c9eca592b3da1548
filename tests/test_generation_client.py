import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from app.core.exceptions import ProviderError
from app.services.generation_client import normalize_status, parse_retry_after


def _json(status_code: int, body, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=body, headers=headers)


async def test_generate_video_sends_request_and_parses(provider):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _json(200, {"id": "gen-1", "status": "queued"})

    client = provider(handler)
    result = await client.generate_video("https://img.test/a.png", "a cat dancing", "joyful")

    assert result.id == "gen-1"
    assert result.status == "pending"
    assert result.raw_status == "queued"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/generate"
    assert request.headers["Authorization"] == "Bearer test-provider-key"
    assert request.headers["User-Agent"] == "AnimateCredits/1.0"
    assert json.loads(request.content) == {
        "imageUrl": "https://img.test/a.png",
        "prompt": "a cat dancing",
        "mood": "joyful",
    }


async def test_generate_video_missing_id_is_error(provider):
    client = provider(lambda request: _json(200, {"status": "queued"}))
    with pytest.raises(ProviderError, match="missing generation id"):
        await client.generate_video("https://img.test/a.png", "p", "calm")


async def test_retries_server_errors_then_succeeds(provider):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return _json(503, {"message": "busy"})
        return _json(200, {"id": "gen-2", "status": "processing"})

    client = provider(handler, max_retries=2)
    result = await client.generate_video("https://img.test/a.png", "p", "epic")
    assert result.status == "processing"
    assert len(calls) == 3


async def test_honors_retry_after_on_429(provider):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return _json(429, {"message": "slow down"}, headers={"Retry-After": "0"})
        return _json(200, {"id": "gen-3"})

    client = provider(handler)
    result = await client.generate_video("https://img.test/a.png", "p", "epic")
    assert result.id == "gen-3"
    assert result.status == "pending"
    assert len(calls) == 2


async def test_client_errors_are_not_retried(provider):
    calls = []

    def handler(request):
        calls.append(request)
        return _json(400, {"message": "image could not be read"})

    client = provider(handler)
    with pytest.raises(ProviderError) as exc_info:
        await client.generate_video("https://img.test/a.png", "p", "calm")
    assert exc_info.value.message == "image could not be read"
    assert exc_info.value.provider_status_code == 400
    assert exc_info.value.status_code == 502
    assert len(calls) == 1


async def test_retries_exhausted(provider):
    calls = []

    def handler(request):
        calls.append(request)
        return _json(500, {"error": "boom"})

    client = provider(handler, max_retries=2)
    with pytest.raises(ProviderError, match="after 3 attempts") as exc_info:
        await client.get_generation_status("gen-1")
    assert exc_info.value.provider_status_code == 500
    assert len(calls) == 3


async def test_network_errors_are_retried(provider):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return _json(200, {"id": "gen-4", "status": "succeeded", "videoUrl": "https://cdn.test/v.mp4"})

    client = provider(handler)
    result = await client.get_generation_status("gen-4")
    assert result.status == "completed"
    assert result.video_url == "https://cdn.test/v.mp4"
    assert len(calls) == 2


async def test_non_json_body_is_error(provider):
    client = provider(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(ProviderError, match="not JSON"):
        await client.get_generation_status("gen-1")


async def test_get_generation_status(provider):
    seen = []

    def handler(request):
        seen.append(request)
        return _json(200, {"status": "FAILED", "errorMessage": "content rejected"})

    client = provider(handler)
    result = await client.get_generation_status("gen-9")
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/generation/gen-9"
    assert result.id == "gen-9"
    assert result.status == "failed"
    assert result.error == "content rejected"


async def test_unknown_status_is_none(provider):
    client = provider(lambda request: _json(200, {"id": "gen-5", "status": "rendering-frames"}))
    result = await client.get_generation_status("gen-5")
    assert result.status is None
    assert result.raw_status == "rendering-frames"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("pending", "pending"),
        ("QUEUED", "pending"),
        ("processing", "processing"),
        ("in_progress", "processing"),
        ("completed", "completed"),
        ("success", "completed"),
        ("failed", "failed"),
        ("cancelled", "failed"),
        ("", None),
        (None, None),
        ("mystery", None),
    ],
)
def test_normalize_status(raw, expected):
    assert normalize_status(raw) == expected


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after("") is None
    assert parse_retry_after("7") == 7.0
    assert parse_retry_after("-3") == 0.0
    assert parse_retry_after("soon") is None
    past = format_datetime(datetime.now(timezone.utc) - timedelta(minutes=5), usegmt=True)
    assert parse_retry_after(past) == 0.0
    future = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=120), usegmt=True)
    assert 100 < parse_retry_after(future) <= 120
