"""
Segment lifecycle.

Each transition is a pure function over the current Segment returning the
row patch to persist. Callers write the patch with update_segment_if_status
so a concurrent writer that already moved the segment wins.
"""

from typing import Optional

from .constants import MAX_SEGMENT_RETRIES
from .models import Segment, SegmentStatus

S = SegmentStatus

ALLOWED_TRANSITIONS: dict[SegmentStatus, set[SegmentStatus]] = {
    S.PENDING_FIRST_FRAME: {S.AWAITING_PREV_FIRST_FRAME, S.GENERATING_FIRST_FRAME, S.FAILED},
    S.AWAITING_PREV_FIRST_FRAME: {S.GENERATING_FIRST_FRAME, S.FAILED},
    S.GENERATING_FIRST_FRAME: {S.FIRST_FRAME_READY, S.FAILED},
    S.FIRST_FRAME_READY: {S.GENERATING_VIDEO, S.FAILED},
    S.GENERATING_VIDEO: {S.GENERATING_VIDEO, S.VIDEO_READY, S.FAILED},
    S.VIDEO_READY: set(),
    S.FAILED: set(),
}

# Manual regeneration may reopen any segment into these states.
REOPEN_STATES = {S.GENERATING_FIRST_FRAME, S.FIRST_FRAME_READY, S.GENERATING_VIDEO}


class InvalidTransitionError(ValueError):
    def __init__(self, segment: Segment, target: SegmentStatus):
        self.current = segment.status
        self.target = target
        super().__init__(
            f"Segment {segment.segment_index} cannot move from {segment.status.value} to {target.value}"
        )


def _check(segment: Segment, target: SegmentStatus):
    if target not in ALLOWED_TRANSITIONS.get(segment.status, set()):
        raise InvalidTransitionError(segment, target)


def on_await_previous(segment: Segment) -> dict:
    _check(segment, S.AWAITING_PREV_FIRST_FRAME)
    return {"status": S.AWAITING_PREV_FIRST_FRAME.value, "error_message": None}


def on_frame_submitted(segment: Segment, task_id: str) -> dict:
    _check(segment, S.GENERATING_FIRST_FRAME)
    return {
        "status": S.GENERATING_FIRST_FRAME.value,
        "first_frame_task_id": task_id,
        "first_frame_url": None,
        "error_message": None,
    }


def on_first_frame_ready(segment: Segment, url: str) -> dict:
    """A fresh opening frame always needs a new approval before any video job."""
    _check(segment, S.FIRST_FRAME_READY)
    return {
        "status": S.FIRST_FRAME_READY.value,
        "first_frame_url": url,
        "video_generation_approved": False,
        "error_message": None,
    }


def on_first_frame_failed(segment: Segment, message: str = "First frame generation failed") -> dict:
    _check(segment, S.FAILED)
    return {"status": S.FAILED.value, "error_message": message}


def on_video_submitted(segment: Segment, task_id: str) -> dict:
    if segment.status != S.FIRST_FRAME_READY or not segment.video_generation_approved:
        raise InvalidTransitionError(segment, S.GENERATING_VIDEO)
    return {
        "status": S.GENERATING_VIDEO.value,
        "video_task_id": task_id,
        "video_url": None,
        "error_message": None,
    }


def on_video_ready(segment: Segment, url: str) -> dict:
    _check(segment, S.VIDEO_READY)
    return {"status": S.VIDEO_READY.value, "video_url": url, "error_message": None}


def can_retry_video(segment: Segment) -> bool:
    return segment.retry_count < MAX_SEGMENT_RETRIES


def on_video_retry(segment: Segment, task_id: str) -> dict:
    """Self-loop on generating_video with a fresh handle."""
    _check(segment, S.GENERATING_VIDEO)
    if segment.status != S.GENERATING_VIDEO or not can_retry_video(segment):
        raise InvalidTransitionError(segment, S.GENERATING_VIDEO)
    attempt = segment.retry_count + 1
    return {
        "status": S.GENERATING_VIDEO.value,
        "video_task_id": task_id,
        "retry_count": attempt,
        "error_message": f"Retrying after server error (attempt {attempt}/{MAX_SEGMENT_RETRIES})",
    }


def on_video_failed(segment: Segment, message: str) -> dict:
    _check(segment, S.FAILED)
    return {"status": S.FAILED.value, "error_message": message}


def on_regenerate(segment: Segment, target: SegmentStatus, patch: dict) -> dict:
    """Manual regeneration: reopen a segment into a generating or ready state."""
    if target not in REOPEN_STATES:
        raise InvalidTransitionError(segment, target)
    return {**patch, "status": target.value}


def closing_frame_sync(predecessor: Segment, next_first_frame_url: Optional[str]) -> Optional[dict]:
    """
    Patch that copies the next segment's opening frame into the
    predecessor's closing frame, or None when nothing would change.
    """
    if not next_first_frame_url or predecessor.closing_frame_url == next_first_frame_url:
        return None
    return {"closing_frame_url": next_first_frame_url}
