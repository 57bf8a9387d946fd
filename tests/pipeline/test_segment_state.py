import pytest

from adclone.pipeline.models import Segment, SegmentStatus
from adclone.pipeline.segment_state import (
    InvalidTransitionError,
    can_retry_video,
    closing_frame_sync,
    on_await_previous,
    on_first_frame_ready,
    on_frame_submitted,
    on_regenerate,
    on_video_failed,
    on_video_ready,
    on_video_retry,
    on_video_submitted,
)

S = SegmentStatus


def _segment(status, **fields):
    return Segment(id="s", project_id="p", segment_index=1, status=status, **fields)


def test_pending_segment_can_wait_or_start():
    assert on_await_previous(_segment(S.PENDING_FIRST_FRAME))["status"] == "awaiting_prev_first_frame"
    patch = on_frame_submitted(_segment(S.AWAITING_PREV_FIRST_FRAME), "t1")
    assert patch["status"] == "generating_first_frame"
    assert patch["first_frame_task_id"] == "t1"


def test_ready_frame_resets_approval():
    patch = on_first_frame_ready(_segment(S.GENERATING_FIRST_FRAME, video_generation_approved=True), "u")
    assert patch["video_generation_approved"] is False
    assert patch["first_frame_url"] == "u"


def test_video_requires_approval():
    with pytest.raises(InvalidTransitionError):
        on_video_submitted(_segment(S.FIRST_FRAME_READY, first_frame_url="u"), "v1")

    patch = on_video_submitted(_segment(S.FIRST_FRAME_READY, video_generation_approved=True), "v1")
    assert patch["status"] == "generating_video"


def test_retry_increments_until_cap():
    segment = _segment(S.GENERATING_VIDEO, retry_count=2)
    patch = on_video_retry(segment, "v2")
    assert patch["retry_count"] == 3
    assert patch["error_message"] == "Retrying after server error (attempt 3/3)"

    capped = _segment(S.GENERATING_VIDEO, retry_count=3)
    assert can_retry_video(capped) is False
    with pytest.raises(InvalidTransitionError):
        on_video_retry(capped, "v3")


def test_failure_keeps_retry_count():
    patch = on_video_failed(_segment(S.GENERATING_VIDEO, retry_count=1), "boom")
    assert patch == {"status": "failed", "error_message": "boom"}


def test_terminal_states_reject_transitions():
    with pytest.raises(InvalidTransitionError) as exc:
        on_video_ready(_segment(S.FAILED), "u")
    assert exc.value.current == S.FAILED
    assert exc.value.target == S.VIDEO_READY

    with pytest.raises(InvalidTransitionError):
        on_frame_submitted(_segment(S.VIDEO_READY), "t")


def test_regeneration_reopens_terminal_segment():
    patch = on_regenerate(_segment(S.VIDEO_READY), S.GENERATING_FIRST_FRAME, {"first_frame_task_id": "t"})
    assert patch["status"] == "generating_first_frame"

    with pytest.raises(InvalidTransitionError):
        on_regenerate(_segment(S.FAILED), S.VIDEO_READY, {})


def test_closing_frame_sync_is_idempotent():
    predecessor = _segment(S.FIRST_FRAME_READY, closing_frame_url=None)
    assert closing_frame_sync(predecessor, "next") == {"closing_frame_url": "next"}

    predecessor.closing_frame_url = "next"
    assert closing_frame_sync(predecessor, "next") is None
    assert closing_frame_sync(predecessor, None) is None
