import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from adclone.pipeline import planner
from adclone.pipeline.models import (
    CompetitorShot,
    EmptyPromptContainer,
    FrameType,
    LegacyPromptContainer,
    Project,
    SegmentedPromptContainer,
)
from adclone.pipeline.planner import (
    PlanValidationError,
    build_plan_from_competitor_shots,
    compress_competitor_shots,
    generate_storyboard,
    hydrate_segment_prompt,
    normalize_segment_prompts,
    normalize_segment_shots,
    plan_segments,
    read_prompt_container,
    recover_segment_plan,
    resolve_frame_description,
    serialize_segment_prompt,
    validate_storyboard,
)


def _shot(i, **fields):
    start = (i - 1) * 4
    defaults = dict(
        id=i,
        start_time=f"00:{start:02d}",
        end_time=f"00:{start + 4:02d}",
        duration_seconds=4,
        start_time_seconds=start,
        end_time_seconds=start + 4,
        first_frame_description=f"Frame {i}",
        action=f"Action {i}",
        subject=f"Subject {i}",
    )
    defaults.update(fields)
    return CompetitorShot(**defaults)


def _storyboard(count, description="A woman opens the glass door of a bright kitchen"):
    return {
        "segments": [
            {
                "first_frame_description": description,
                "is_continuation_from_prev": True,
                "shots": [{"action": "walks in"}, {"action": "smiles"}],
            }
            for _ in range(count)
        ]
    }


# ── Competitor compression ───────────────────────────────────────────────────

def test_equal_counts_map_one_to_one():
    shots = [_shot(i) for i in range(1, 4)]
    assert compress_competitor_shots(shots, 3) == shots

    plan = build_plan_from_competitor_shots(3, shots, 8)
    assert [p.first_frame_description for p in plan] == ["Frame 1", "Frame 2", "Frame 3"]


def test_five_shots_into_three_segments_buckets_one_two_two():
    shots = [_shot(i, contains_product=(i == 5)) for i in range(1, 6)]

    merged = compress_competitor_shots(shots, 3)

    assert [m.first_frame_description for m in merged] == ["Frame 1", "Frame 2\nFrame 3", "Frame 4\nFrame 5"]
    assert merged[1].action == "Action 2\nAction 3"
    assert merged[1].duration_seconds == 8
    assert merged[1].start_time == "00:04"
    assert merged[1].end_time == "00:12"
    assert [m.contains_product for m in merged] == [False, False, True]
    assert [m.id for m in merged] == [1, 2, 3]


def test_merged_text_is_clamped():
    shots = [_shot(i, action="x" * 700) for i in range(1, 3)]
    merged = compress_competitor_shots(shots, 1)
    assert len(merged[0].action) <= 1200


def test_merge_duration_falls_back_to_sum_when_span_is_zero():
    shots = [_shot(1, start_time_seconds=0, end_time_seconds=0, duration_seconds=3),
             _shot(2, start_time_seconds=0, end_time_seconds=0, duration_seconds=5)]
    assert compress_competitor_shots(shots, 1)[0].duration_seconds == 8


# ── Normalization ────────────────────────────────────────────────────────────

def test_first_segment_is_never_a_continuation():
    plan = normalize_segment_prompts(_storyboard(3), 3, segment_duration=8)
    assert [p.is_continuation_from_prev for p in plan] == [False, True, True]


def test_shots_are_retimed_relative_to_segment_start():
    storyboard = _storyboard(1)
    storyboard["segments"][0]["shots"] = [
        {"time_range": "00:30 - 00:35", "action": "a"},
        {"time_range": "00:35 - 00:40", "action": "b"},
        {"time_range": "00:40 - 00:45", "action": "c"},
    ]

    shots = normalize_segment_prompts(storyboard, 1, segment_duration=8)[0].shots

    assert [s.start_seconds for s in shots] == [0, 3, 5]
    assert [s.end_seconds for s in shots] == [3, 5, 8]
    assert shots[0].time_range.startswith("00:00")
    assert [s.id for s in shots] == [1, 2, 3]


@pytest.mark.parametrize("count, duration", [(3, 8), (4, 10), (1, 8), (5, 6)])
def test_shot_ranges_are_contiguous_and_reach_segment_end(count, duration):
    shots = normalize_segment_shots([{}] * count, duration, "en", {})

    assert shots[0].start_seconds == 0
    assert shots[-1].end_seconds == duration
    for previous, current in zip(shots, shots[1:]):
        assert previous.end_seconds == current.start_seconds


def test_missing_description_falls_back_to_competitor_shot():
    payload = {"segments": [{"first_frame_description": "  ", "shots": []}]}
    plan = normalize_segment_prompts(payload, 1, [_shot(1, contains_brand=True)], 8)
    assert plan[0].first_frame_description == "Frame 1"
    assert plan[0].contains_brand is True


def test_short_payload_is_padded_with_last_entry():
    plan = normalize_segment_prompts(_storyboard(1), 3, segment_duration=8)
    assert len(plan) == 3
    assert plan[2].first_frame_description == plan[0].first_frame_description


def test_serialized_prompt_rehydrates_without_text_service():
    original = normalize_segment_prompts(_storyboard(2), 2, segment_duration=8)[1]
    stored = serialize_segment_prompt(original)

    hydrated = hydrate_segment_prompt(stored, 1, 8, contains_brand=True, contains_product=False)

    assert hydrated.first_frame_description == original.first_frame_description
    assert hydrated.is_continuation_from_prev is True
    assert hydrated.contains_brand is True
    assert [s.action for s in hydrated.shots] == ["walks in", "smiles"]
    assert hydrated.index == 2


def test_frame_description_prefers_first_frame_text_for_opening():
    prompt = normalize_segment_prompts(_storyboard(1), 1, segment_duration=8)[0]
    assert resolve_frame_description(prompt, FrameType.FIRST).startswith("A woman opens")
    assert resolve_frame_description(prompt, FrameType.CLOSING) == "walks in"


# ── Prompt container migration ───────────────────────────────────────────────

def test_prompt_container_versions():
    assert isinstance(read_prompt_container(None), EmptyPromptContainer)
    assert isinstance(read_prompt_container("not json"), EmptyPromptContainer)

    segmented = read_prompt_container('{"segments": [{"first_frame_description": "x"}], "ad_copy": "Buy"}')
    assert isinstance(segmented, SegmentedPromptContainer)
    assert segmented.metadata == {"ad_copy": "Buy"}

    legacy = read_prompt_container({"video_ad_prompt": {"description": "Hero", "lighting": "Soft"}})
    assert isinstance(legacy, LegacyPromptContainer)
    assert legacy.description == "Hero"


# ── Plan sources ─────────────────────────────────────────────────────────────

def test_plan_without_shots_or_storyboard_uses_hero_defaults():
    plan = plan_segments(2, 8)
    assert len(plan) == 2
    assert all(p.first_frame_description for p in plan)
    assert all(p.shots for p in plan)


def test_recover_plan_pads_stored_plan_to_segment_count():
    project = Project(
        id="p",
        user_id="u",
        is_segmented=True,
        segment_count=3,
        segment_duration_seconds=8,
        segment_plan={"segments": [{"first_frame_description": "Stored opening frame", "shots": []}]},
    )
    plan = recover_segment_plan(project)
    assert len(plan) == 3
    assert plan[2].first_frame_description == "Stored opening frame"


def test_recover_plan_uses_legacy_container():
    project = Project(id="p", user_id="u", is_segmented=True, segment_count=2,
                      video_prompts={"description": "Legacy hero frame", "setting": "Beach"})
    plan = recover_segment_plan(project)
    assert [p.first_frame_description for p in plan] == ["Legacy hero frame", "Legacy hero frame"]
    assert plan[0].context_environment == "Beach"


# ── Storyboard validation ────────────────────────────────────────────────────

def test_storyboard_count_mismatch_is_rejected():
    with pytest.raises(PlanValidationError, match="returned 2 segments but 3 were requested"):
        validate_storyboard(_storyboard(2), 3)


def test_storyboard_short_description_is_rejected():
    with pytest.raises(PlanValidationError, match="at least 20 characters"):
        validate_storyboard(_storyboard(1, description="too short"), 1)


def test_storyboard_missing_fields_are_rejected():
    data = {"segments": [{"first_frame_description": "A long enough opening frame description"}]}
    with pytest.raises(PlanValidationError, match="is_continuation_from_prev, shots"):
        validate_storyboard(data, 1)


def test_storyboard_retries_then_succeeds():
    responses = [{"segments": []}, _storyboard(2)]
    with patch.object(planner, "PROMPT_RETRY_BACKOFF_SECONDS", 0), \
            patch.object(planner.gemini, "generate_json", AsyncMock(side_effect=responses)) as generate:
        result = asyncio.run(generate_storyboard(2, 8, "English"))

    assert generate.await_count == 2
    assert len(result["segments"]) == 2


def test_storyboard_fails_after_five_attempts():
    with patch.object(planner, "PROMPT_RETRY_BACKOFF_SECONDS", 0), \
            patch.object(planner.gemini, "generate_json", AsyncMock(return_value={"segments": []})) as generate:
        with pytest.raises(PlanValidationError, match="failed after 5 attempts"):
            asyncio.run(generate_storyboard(2, 8, "English"))

    assert generate.await_count == 5
