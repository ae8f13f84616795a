import asyncio
import json

import httpx
import pytest

from ambient_worker import gateway
from ambient_worker.gateway import AIGatewayClient
from ambient_worker.pipeline.errors import GenerationError


@pytest.fixture(autouse=True)
def no_jitter(monkeypatch):
    monkeypatch.setattr(gateway, "JITTER_MAX", 0)


def _client(handler):
    return AIGatewayClient(
        base_url="https://gateway.test/api/v1",
        api_key="k",
        transport=httpx.MockTransport(handler),
        poll_interval=0,
        base_delay=0,
    )


def _chat(content, cost=0.003):
    return httpx.Response(200, json={
        "choices": [{"message": {"content": content}}],
        "usage": {"cost": cost},
    })


def test_text_retries_on_rate_limit():
    seen = []

    def handler(request):
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(429, json={"error": "slow down"})
        return _chat("Soft rain.")

    result = asyncio.run(_client(handler).generate_text("system", "user"))

    assert len(seen) == 2
    assert result.output == "Soft rain."
    assert result.cost == 0.003
    assert seen[0].headers["Authorization"] == "Bearer k"


def test_text_with_schema_requests_and_parses_json():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return _chat('{"scenes": []}')

    schema = {"type": "object"}
    result = asyncio.run(_client(handler).generate_text("s", "u", output_schema=schema, model="gemini-pro"))

    assert result.output == {"scenes": []}
    assert bodies[0]["model"] == "gemini-2.5-pro"
    assert bodies[0]["response_format"]["json_schema"]["schema"] == schema


def test_text_invalid_json_raises():
    with pytest.raises(GenerationError):
        asyncio.run(_client(lambda r: _chat("not json")).generate_text("s", "u", output_schema={}))


def test_client_errors_are_not_retried():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(400, json={"error": "bad"})

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(handler).generate_text("s", "u"))
    assert len(seen) == 1


def test_gives_up_after_max_retries():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(503)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(handler).generate_text("s", "u"))
    assert len(seen) == gateway.MAX_RETRIES + 1


def _task_handler(states, result=None, submitted=None):
    states = list(states)

    def handler(request):
        if request.url.path.endswith("/jobs/createTask"):
            if submitted is not None:
                submitted.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"taskId": "t1"}})
        assert request.url.params["taskId"] == "t1"
        state = states.pop(0) if len(states) > 1 else states[0]
        record = {"state": state, "costCredits": 0.04, "failMsg": "nsfw"}
        if state == "success":
            record["resultJson"] = json.dumps(result)
        return httpx.Response(200, json={"data": record})

    return handler


def test_image_task_polls_until_success():
    submitted = []
    handler = _task_handler(
        ["waiting", "generating", "success"],
        {"resultUrls": ["https://cdn.test/a.png"]},
        submitted,
    )

    result = asyncio.run(_client(handler).generate_image(
        "misty pines", reference_images=["https://ref/1.png"], model="nano-banana",
    ))

    assert result.url == "https://cdn.test/a.png"
    assert result.cost == 0.04
    assert submitted[0]["model"] == "google/nano-banana"
    assert submitted[0]["input"]["image_urls"] == ["https://ref/1.png"]


def test_clip_passes_end_frame():
    submitted = []
    handler = _task_handler(["success"], {"resultUrls": ["https://cdn.test/c.mp4"]}, submitted)

    result = asyncio.run(_client(handler).generate_clip("start.png", "end.png", "drift", 8))

    assert result.duration == 8
    assert submitted[0]["input"]["end_image_url"] == "end.png"
    assert submitted[0]["input"]["duration"] == "8"


def test_failed_task_raises():
    with pytest.raises(GenerationError, match="nsfw"):
        asyncio.run(_client(_task_handler(["fail"])).generate_image("x"))


def test_speech_reports_duration():
    handler = _task_handler(["success"], {"resultUrls": ["https://cdn.test/vo.mp3"], "duration": 31.5})

    result = asyncio.run(_client(handler).generate_speech("hello", "v1"))

    assert result.duration == 31.5
