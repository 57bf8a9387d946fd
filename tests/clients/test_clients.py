import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from adclone import gemini, kie
from adclone.pipeline import merge
from adclone.pipeline.merge import MergeService, parse_merge_status
from adclone.pipeline.models import MergeState


# ── Kie.ai ───────────────────────────────────────────────────────────────────

def test_extract_result_url_sources():
    assert kie.extract_result_url({"resultJson": '{"resultUrls": ["https://a.png"]}'}) == "https://a.png"
    assert kie.extract_result_url({"response": {"resultUrls": ["https://b.mp4"]}}) == "https://b.mp4"
    assert kie.extract_result_url({"resultUrls": "https://c.mp4"}) == "https://c.mp4"
    assert kie.extract_result_url({"resultJson": "not json"}) is None
    assert kie.extract_result_url({}) is None


def test_create_task_returns_task_id():
    body = {"code": 200, "data": {"taskId": "t-1"}}
    with patch.object(kie, "_request_with_backoff", AsyncMock(return_value=body)) as request:
        assert asyncio.run(kie.create_task("nano-banana-pro", {"prompt": "x"})) == "t-1"

    method, path = request.await_args.args
    assert (method, path) == ("POST", "jobs/createTask")
    assert request.await_args.kwargs["json"]["model"] == "nano-banana-pro"


def test_rejected_task_raises():
    with patch.object(kie, "_request_with_backoff", AsyncMock(return_value={"code": 422, "msg": "bad input"})):
        with pytest.raises(kie.KieError, match="bad input"):
            asyncio.run(kie.veo_generate({"model": "veo3_fast"}))


def test_clamp_prompt():
    assert kie.clamp_prompt("short") == "short"
    clamped = kie.clamp_prompt("a" * 6000)
    assert len(clamped) == 5000
    assert clamped.endswith("...")


# ── fal.ai merge ─────────────────────────────────────────────────────────────

def test_parse_merge_status():
    assert parse_merge_status({"status": "IN_PROGRESS"}).state == MergeState.PENDING
    failed = parse_merge_status({"status": "FAILED", "error": "codec mismatch"})
    assert failed.state == MergeState.FAILED
    assert failed.error == "codec mismatch"


@pytest.fixture
def fal(monkeypatch):
    monkeypatch.setattr(merge, "FAL_KEY", "test-key")
    monkeypatch.setattr(merge, "NETWORK_RETRY_DELAY", 0)

    def install(handler):
        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            merge.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
    return install


def test_merge_poll_completed(fal):
    def handler(request):
        if request.url.path.endswith("/status"):
            return httpx.Response(200, json={"status": "COMPLETED"})
        return httpx.Response(200, json={"video": {"url": "https://fal/final.mp4"}})
    fal(handler)

    result = asyncio.run(MergeService().poll("req-1"))

    assert result.state == MergeState.COMPLETED
    assert result.url == "https://fal/final.mp4"


def test_merge_poll_network_error_after_retries(fal):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)
    fal(handler)

    result = asyncio.run(MergeService().poll("req-1"))

    assert result.state == MergeState.NETWORK_ERROR
    assert len(calls) == merge.NETWORK_RETRIES + 1


def test_merge_submit_sends_resolution(fal):
    seen = {}

    def handler(request):
        seen["body"] = request.read()
        return httpx.Response(200, json={"request_id": "req-9"})
    fal(handler)

    assert asyncio.run(MergeService().submit(["a.mp4", "b.mp4"], "9:16")) == "req-9"
    assert b"portrait_16_9" in seen["body"]


# ── Gemini ───────────────────────────────────────────────────────────────────

def test_gemini_json_parsing_handles_fences():
    assert gemini._parse_json_response('{"segments": []}') == {"segments": []}
    assert gemini._parse_json_response('```json\n{"segments": [1]}\n```') == {"segments": [1]}
    with pytest.raises(ValueError):
        gemini._parse_json_response("no json here")


def test_gemini_unwraps_top_level_array(monkeypatch):
    reply = {"candidates": [{"content": {"parts": [{"text": '[{"segments": []}]'}]}}]}
    monkeypatch.setattr(gemini, "_generate_content", AsyncMock(return_value=reply))

    assert asyncio.run(gemini.generate_json("plan it")) == {"segments": []}
