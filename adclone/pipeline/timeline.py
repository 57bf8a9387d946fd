"""
Competitor timeline parsing.

The competitor analysis (produced upstream) describes the source ad as an
ordered list of shots with timecodes. This module turns that loose JSON into
CompetitorShot models with consistent, gap-free timing.
"""

import math
from typing import Any, Optional

from .models import CompetitorShot, CompetitorTimeline


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        try:
            num = float(value)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_duration(value: Optional[float], fallback: int = 8) -> int:
    if value is None or value <= 0:
        return fallback
    return max(1, _round_half_up(value))


def parse_timecode(value: Optional[str]) -> Optional[float]:
    """Parse SS, MM:SS or HH:MM:SS into seconds."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    parts = []
    for part in trimmed.split(":"):
        try:
            number = float(part)
        except ValueError:
            return None
        if number < 0:
            return None
        parts.append(number)

    if len(parts) == 1:
        return parts[0]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    return parts[0] * 3600 + parts[1] * 60 + parts[2]


def format_timecode(seconds: float) -> str:
    if seconds is None or seconds < 0 or math.isnan(seconds):
        return "00:00"
    total = _round_half_up(seconds)
    return f"{total // 60:02d}:{total % 60:02d}"


def parse_competitor_timeline(
    analysis: Optional[dict],
    fallback_duration: Optional[float] = None,
) -> CompetitorTimeline:
    """
    Build a CompetitorTimeline from an analysis_result payload.

    Shots without a start time continue from where the previous shot ended.
    Durations come from duration_seconds, else end - start, else 8 seconds.
    """
    if not isinstance(analysis, dict):
        analysis = {}
    raw_shots = analysis.get("shots") if isinstance(analysis.get("shots"), list) else []

    shots: list[CompetitorShot] = []
    rolling_start = 0.0

    for position, raw in enumerate(raw_shots):
        if not isinstance(raw, dict):
            continue

        shot_id = clamp_duration(_to_number(raw.get("shot_id")), position + 1)
        provided_start = parse_timecode(_to_text(raw.get("start_time")))
        provided_end = parse_timecode(_to_text(raw.get("end_time")))
        provided_duration = _to_number(raw.get("duration_seconds"))

        start = provided_start if provided_start is not None else rolling_start
        span = None
        if provided_start is not None and provided_end is not None:
            span = provided_end - provided_start
        duration = clamp_duration(provided_duration, clamp_duration(span))
        if span is not None:
            duration = clamp_duration(span, duration)
        end = start + duration

        shots.append(CompetitorShot(
            id=shot_id,
            start_time=format_timecode(start),
            end_time=format_timecode(end),
            duration_seconds=duration,
            first_frame_description=_to_text(raw.get("first_frame_description")),
            subject=_to_text(raw.get("subject")),
            context_environment=_to_text(raw.get("context_environment")),
            action=_to_text(raw.get("action")),
            style=_to_text(raw.get("style")),
            camera_motion_positioning=_to_text(raw.get("camera_motion_positioning")),
            composition=_to_text(raw.get("composition")),
            ambiance_colour_lighting=_to_text(raw.get("ambiance_colour_lighting")),
            audio=_to_text(raw.get("audio")),
            start_time_seconds=start,
            end_time_seconds=end,
            contains_brand=bool(raw.get("contains_brand")),
            contains_product=bool(raw.get("contains_product")),
        ))
        rolling_start = end

    total = sum(shot.duration_seconds for shot in shots)
    fallback = clamp_duration(fallback_duration, total)
    detected = _to_number(analysis.get("video_duration_seconds"))
    video_duration = clamp_duration(detected if detected is not None else fallback, fallback)

    return CompetitorTimeline(video_duration_seconds=video_duration, shots=shots)
