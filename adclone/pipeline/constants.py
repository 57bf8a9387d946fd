"""
Model capabilities, credit pricing and pipeline limits.
"""

import math
import os
from typing import Optional

from .models import VideoModel

# ── Limits ───────────────────────────────────────────────────────────────────

MAX_SEGMENT_RETRIES = 3
MAX_PROJECT_RETRIES = 3
MAX_PROJECT_RECOVERIES = int(os.getenv("MAX_PROJECT_RECOVERIES", "3"))
MAX_PROMPT_GENERATION_ATTEMPTS = 5
MIN_FIRST_FRAME_DESCRIPTION = 20

MAX_WORKFLOW_AGE_MINUTES = int(os.getenv("MAX_WORKFLOW_AGE_MINUTES", "30"))
MERGE_TIMEOUT_MINUTES = int(os.getenv("MERGE_TIMEOUT_MINUTES", "15"))
SINGLE_VIDEO_TIMEOUT_MINUTES = int(os.getenv("SINGLE_VIDEO_TIMEOUT_MINUTES", "40"))

KIE_PROMPT_LIMIT = 5000
MERGED_FIELD_LIMIT = 1200
MAX_REFERENCE_IMAGES = 10

DEFAULT_SEGMENT_DURATION_SECONDS = 8

# ── Progress bands ───────────────────────────────────────────────────────────

FRAME_PROGRESS_START = 25
FRAME_PROGRESS_RANGE = 45
VIDEO_PROGRESS_START = 70
VIDEO_PROGRESS_RANGE = 25
MERGE_PROGRESS = 95

# ── Segmentation ─────────────────────────────────────────────────────────────

SEGMENTED_DURATIONS = {"16", "24", "32", "40", "48", "56", "64"}

SEGMENT_SECONDS = {
    VideoModel.VEO3: 8,
    VideoModel.VEO3_FAST: 8,
    VideoModel.GROK: 6,
    VideoModel.KLING_2_6: 10,
}

MAX_SEGMENTS = {
    VideoModel.VEO3: 8,
    VideoModel.VEO3_FAST: 8,
    VideoModel.GROK: 10,
    VideoModel.KLING_2_6: 1,
}

# ── Credits ──────────────────────────────────────────────────────────────────

SEGMENT_CREDIT_COSTS = {
    VideoModel.VEO3: 150,
    VideoModel.VEO3_FAST: 20,
    VideoModel.GROK: 20,
}
KLING_BLOCK_COST = 110  # per started 5-second block


def _duration_seconds(video_duration: Optional[str]) -> Optional[float]:
    try:
        value = float(video_duration) if video_duration is not None else None
    except (TypeError, ValueError):
        return None
    if value is None or math.isnan(value) or value <= 0:
        return None
    return value


def segment_duration_for_model(model: Optional[VideoModel]) -> int:
    if model is None:
        return DEFAULT_SEGMENT_DURATION_SECONDS
    return SEGMENT_SECONDS.get(model, DEFAULT_SEGMENT_DURATION_SECONDS)


def segment_count_from_duration(video_duration: Optional[str], model: VideoModel) -> int:
    """Number of segments a requested duration splits into for a model."""
    if model == VideoModel.KLING_2_6:
        return 1

    duration = _duration_seconds(video_duration)
    segment_length = segment_duration_for_model(model)
    if duration is None or duration <= segment_length:
        return 1

    segments = min(MAX_SEGMENTS[model], int(math.floor(duration / segment_length + 0.5)))
    return max(1, segments)


def is_segmented_request(model: VideoModel, video_duration: Optional[str]) -> bool:
    duration = _duration_seconds(video_duration)
    if duration is None:
        return False
    if model == VideoModel.GROK:
        return duration > SEGMENT_SECONDS[VideoModel.GROK]
    if model == VideoModel.KLING_2_6:
        return False
    return str(video_duration).strip() in SEGMENTED_DURATIONS


def generation_cost(model: VideoModel, video_duration: Optional[str]) -> int:
    """Credits reserved at admission for one project."""
    if model == VideoModel.KLING_2_6:
        duration = max(5.0, _duration_seconds(video_duration) or 5.0)
        return KLING_BLOCK_COST * int(math.ceil(duration / 5))

    segments = segment_count_from_duration(video_duration, model)
    return SEGMENT_CREDIT_COSTS[model] * segments
