import asyncio
import json
from unittest.mock import AsyncMock, patch

from adclone.pipeline.models import JobState, Segment, SegmentPrompt, SegmentShot, VideoModel
from adclone.pipeline.video_director import (
    CONTENT_POLICY_MESSAGE,
    VideoDirector,
    build_video_request,
    classify_failure,
    kling_duration,
    parse_video_record,
    resolve_end_anchor,
    sanitize_failure_message,
)


def _segment(index, **fields):
    return Segment(id=f"s{index}", project_id="p", segment_index=index, **fields)


PROMPT = SegmentPrompt(
    index=2,
    first_frame_description="Close-up of a blender on a marble counter",
    is_continuation_from_prev=True,
    dialogue="Smoothies in seconds",
    shots=[SegmentShot(id=1, time_range="00:00 - 00:08", action="Blend fruit")],
)


def test_end_anchor_resolution_order():
    own = _segment(0, closing_frame_url="own")
    assert resolve_end_anchor(own, _segment(1, first_frame_url="next")) == "own"
    assert resolve_end_anchor(_segment(0), _segment(1, first_frame_url="next")) == "next"
    assert resolve_end_anchor(_segment(0), _segment(1)) is None
    assert resolve_end_anchor(_segment(2), None) is None


def test_veo_request_uses_first_and_last_frames():
    request = build_video_request(VideoModel.VEO3_FAST, PROMPT, 1, "first", "last", "9:16", "es")

    assert request.endpoint == "veo"
    assert request.payload["imageUrls"] == ["first", "last"]
    assert request.payload["aspectRatio"] == "9:16"
    body = json.loads(request.payload["prompt"])
    assert body["dialogue_language"] == "Spanish"
    assert body["is_continuation_from_prev"] is True
    assert body["shots"][0]["action"] == "Blend fruit"


def test_veo_single_frame_mode_without_anchor():
    request = build_video_request(VideoModel.VEO3, PROMPT, 0, "first", None)
    assert request.payload["imageUrls"] == ["first"]
    assert json.loads(request.payload["prompt"])["is_continuation_from_prev"] is False


def test_grok_and_kling_go_through_jobs_api():
    grok = build_video_request(VideoModel.GROK, PROMPT, 0, "first", "last")
    assert grok.endpoint == "jobs"
    assert grok.payload["image_urls"] == ["first"]

    kling = build_video_request(VideoModel.KLING_2_6, PROMPT, 0, "first", None, segment_duration=12)
    assert kling.model == "kling-2.6/image-to-video"
    assert kling.payload["duration"] == "10"
    assert "Dialogue/Narration: Smoothies in seconds" in kling.payload["prompt"]


def test_kling_duration_blocks():
    assert kling_duration(3) == "5"
    assert kling_duration(13) == "15"
    assert kling_duration(200) == "80"


def test_failure_classification():
    server = classify_failure(VideoModel.VEO3, "Internal error", "500")
    assert server.is_retryable is True
    assert server.error_message == "VEO3 server error (retryable): Internal error"

    policy = classify_failure(VideoModel.GROK, "Prompt flagged by moderation", None)
    assert policy.is_retryable is True
    assert policy.error_message.startswith("Content policy violation (retryable)")

    other = classify_failure(VideoModel.GROK, "Bad image", "422")
    assert other.is_retryable is False
    assert other.error_message == "Bad image"


def test_sanitized_messages():
    assert sanitize_failure_message("Rejected: violating content policies") == CONTENT_POLICY_MESSAGE
    assert sanitize_failure_message(None) == "Segment video generation failed"


def test_parse_video_record():
    veo_done = parse_video_record(VideoModel.VEO3, {"successFlag": 1, "response": {"resultUrls": ["https://v.mp4"]}})
    assert veo_done.state == JobState.SUCCESS
    assert veo_done.url == "https://v.mp4"

    veo_failed = parse_video_record(VideoModel.VEO3_FAST, {"successFlag": 2, "errorMessage": "boom", "failCode": 500})
    assert veo_failed.state == JobState.FAILED
    assert veo_failed.is_retryable is True

    grok_pending = parse_video_record(VideoModel.GROK, {"state": "generating"})
    assert grok_pending.state == JobState.PENDING


def test_submit_routes_by_model():
    with patch("adclone.pipeline.video_director.kie.veo_generate", AsyncMock(return_value="veo-1")) as veo, \
            patch("adclone.pipeline.video_director.kie.create_task", AsyncMock(return_value="job-1")) as jobs:
        director = VideoDirector()
        assert asyncio.run(director.submit(VideoModel.VEO3_FAST, PROMPT, 0, "first", None)) == "veo-1"
        assert asyncio.run(director.submit(VideoModel.GROK, PROMPT, 0, "first", None)) == "job-1"

    assert veo.await_count == 1
    assert jobs.await_args.args[0] == "grok-imagine/image-to-video"
