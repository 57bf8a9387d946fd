"""
Creative Planner: competitor timeline / AI storyboard → SegmentPlan.

Resolution order for a project with N segments:
  1. Competitor timeline with exactly N shots → 1:1 mapping
  2. Competitor timeline with more than N shots → proportional compression
  3. AI storyboard (Gemini), validated and retried up to 5 times
  4. Hero-product defaults, so no segment is ever left without a prompt

Plans are persisted in a compact serialized form and re-hydrated on every
tick without calling the text service again.
"""

import asyncio
import json
import logging
import math
from typing import Any, Iterable, Optional

from .. import gemini
from .constants import (
    DEFAULT_SEGMENT_DURATION_SECONDS,
    MAX_PROMPT_GENERATION_ATTEMPTS,
    MERGED_FIELD_LIMIT,
    MIN_FIRST_FRAME_DESCRIPTION,
)
from .models import (
    BrandContext,
    CompetitorShot,
    EmptyPromptContainer,
    FrameType,
    LegacyPromptContainer,
    Project,
    PromptContainer,
    SegmentDetails,
    SegmentedPromptContainer,
    SegmentPrompt,
    SegmentShot,
)
from .timeline import format_timecode

logger = logging.getLogger(__name__)

PROMPT_RETRY_BACKOFF_SECONDS = 2

SHOT_TEXT_FIELDS = (
    "audio",
    "style",
    "action",
    "subject",
    "dialogue",
    "composition",
    "context_environment",
    "ambiance_colour_lighting",
    "camera_motion_positioning",
)

REQUIRED_SEGMENT_FIELDS = ("first_frame_description", "is_continuation_from_prev", "shots")

SEGMENT_DEFAULTS = SegmentDetails(
    description="Cinematic hero moment highlighting the product",
    setting="Premium studio environment",
    camera_type="Wide cinematic shot",
    camera_movement="Slow push-in",
    action="Showcase the hero product in use",
    lighting="Soft commercial lighting with warm highlights",
    dialogue="Narrate the key benefit in a concise sentence",
    music="Tasteful cinematic underscore",
    ending="Hold on the hero product for a strong finish",
    other_details="Maintain polished advertising aesthetics and consistent color palette",
    language="English",
    first_frame_prompt="Hero product centered in frame with premium lighting",
)

HERO_PRODUCT_TEMPLATE = {
    "audio": "Warm instrumental underscore",
    "style": "Premium lifestyle realism",
    "action": "Showcase product hero shot",
    "subject": "Hero product",
    "composition": "Wide cinematic shot",
    "context_environment": "Professional studio",
    "first_frame_description": "Hero product centered with premium lighting",
    "ambiance_colour_lighting": "Soft glam lighting",
    "camera_motion_positioning": "Slow push-in",
    "dialogue": "Narrate the core benefit in a concise line",
}


class PlanValidationError(ValueError):
    """The storyboard could not be produced in a usable shape."""


def clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _first_text(*values: Any) -> str:
    for value in values:
        cleaned = clean_text(value)
        if cleaned:
            return cleaned
    return ""


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ── Shot normalization ───────────────────────────────────────────────────────

def _relative_range(start: float, end: float) -> tuple[str, float, float, float]:
    return (
        f"{format_timecode(start)} - {format_timecode(end)}",
        start,
        end,
        max(1, _round_half_up(end - start)),
    )


def normalize_segment_shots(
    raw_shots: Any,
    segment_duration: float,
    language: str,
    fallback: dict,
    competitor_shot: Optional[CompetitorShot] = None,
) -> list[SegmentShot]:
    """
    Re-time shots so they are relative to the segment start and cover it.

    Any time_range coming from the text service is ignored: shot i of n
    spans [round(i * duration / n), round((i + 1) * duration / n)] and the
    last shot ends exactly at the segment end.
    """
    duration = segment_duration if segment_duration and segment_duration > 0 else DEFAULT_SEGMENT_DURATION_SECONDS

    if isinstance(raw_shots, list) and raw_shots:
        count = len(raw_shots)
        bounds = [_round_half_up(i * duration / count) for i in range(count)] + [duration]
        shots = []
        for position, raw in enumerate(raw_shots):
            record = raw if isinstance(raw, dict) else {}
            display, start, end, shot_duration = _relative_range(bounds[position], bounds[position + 1])
            fields = {name: _first_text(record.get(name), fallback.get(name)) for name in SHOT_TEXT_FIELDS}
            shots.append(SegmentShot(
                id=position + 1,
                time_range=display,
                start_seconds=start,
                end_seconds=end,
                duration_seconds=shot_duration,
                language=_first_text(record.get("language")) or language,
                **fields,
            ))
        return shots

    display, start, end, shot_duration = _relative_range(0, duration)
    if competitor_shot is not None:
        return [SegmentShot(
            id=1,
            time_range=display,
            start_seconds=start,
            end_seconds=end,
            duration_seconds=shot_duration,
            audio=competitor_shot.audio,
            style=competitor_shot.style,
            action=competitor_shot.action,
            subject=competitor_shot.subject,
            dialogue="",
            language=language,
            composition=competitor_shot.composition,
            context_environment=competitor_shot.context_environment,
            ambiance_colour_lighting=competitor_shot.ambiance_colour_lighting,
            camera_motion_positioning=competitor_shot.camera_motion_positioning,
        )]

    return [SegmentShot(
        id=1,
        time_range=display,
        start_seconds=start,
        end_seconds=end,
        duration_seconds=shot_duration,
        language=language,
        **{name: _first_text(fallback.get(name)) for name in SHOT_TEXT_FIELDS},
    )]


# ── Segment normalization ────────────────────────────────────────────────────

def normalize_segment_prompts(
    prompts: Optional[dict],
    segment_count: int,
    competitor_shots: Optional[list[CompetitorShot]] = None,
    segment_duration: Optional[float] = None,
) -> list[SegmentPrompt]:
    """
    Coerce a loose {"segments": [...]} payload into exactly segment_count
    SegmentPrompts. Missing entries reuse the last provided one; competitor
    shots fill in flags and opening-frame descriptions the payload lacks.
    """
    raw_segments = []
    if isinstance(prompts, dict) and isinstance(prompts.get("segments"), list):
        raw_segments = [seg for seg in prompts["segments"] if isinstance(seg, dict)]

    duration = segment_duration or DEFAULT_SEGMENT_DURATION_SECONDS
    normalized: list[SegmentPrompt] = []

    for index in range(segment_count):
        if index < len(raw_segments):
            source = raw_segments[index]
        else:
            source = raw_segments[-1] if raw_segments else {}
        shot = competitor_shots[index] if competitor_shots and index < len(competitor_shots) else None
        language = clean_text(source.get("language")) or "en"

        shots = normalize_segment_shots(source.get("shots"), duration, language, source, shot)
        primary = shots[0].model_dump() if shots else {}

        fields = {
            name: clean_text(source.get(name)) or clean_text(primary.get(name)) or ""
            for name in SHOT_TEXT_FIELDS
        }

        contains_brand = source.get("contains_brand")
        if not isinstance(contains_brand, bool):
            contains_brand = shot.contains_brand if shot else None
        contains_product = source.get("contains_product")
        if not isinstance(contains_product, bool):
            contains_product = shot.contains_product if shot else None

        continuation = source.get("is_continuation_from_prev")
        source_index = source.get("index")

        normalized.append(SegmentPrompt(
            index=source_index if isinstance(source_index, int) and not isinstance(source_index, bool) else (shot.id if shot else index + 1),
            first_frame_description=(
                clean_text(source.get("first_frame_description"))
                or (clean_text(shot.first_frame_description) if shot else None)
                or ""
            ),
            is_continuation_from_prev=False if index == 0 else continuation is True,
            contains_brand=contains_brand,
            contains_product=contains_product,
            first_frame_image_size=source.get("first_frame_image_size"),
            language=clean_text(source.get("language")) or clean_text(primary.get("language")) or language,
            shots=shots,
            **fields,
        ))

    return normalized


def serialize_segment_prompt(prompt: SegmentPrompt) -> dict:
    return {
        "first_frame_description": prompt.first_frame_description or "",
        "is_continuation_from_prev": bool(prompt.is_continuation_from_prev),
        "shots": [shot.model_dump() for shot in prompt.shots],
    }


def serialize_segment_plan(prompts: Iterable[SegmentPrompt]) -> dict:
    return {"segments": [serialize_segment_prompt(prompt) for prompt in prompts]}


def hydrate_segment_plan(
    plan: Optional[dict],
    segment_count: int,
    segment_duration: Optional[float] = None,
    competitor_shots: Optional[list[CompetitorShot]] = None,
) -> list[SegmentPrompt]:
    if not isinstance(plan, dict):
        return []
    segments = plan.get("segments")
    if not isinstance(segments, list) or not segments:
        return []
    count = segment_count if segment_count > 0 else len(segments)
    return normalize_segment_prompts(plan, count, competitor_shots, segment_duration)


def hydrate_segment_prompt(
    stored: Optional[dict],
    segment_index: int,
    segment_duration: Optional[float] = None,
    contains_brand: Optional[bool] = None,
    contains_product: Optional[bool] = None,
) -> SegmentPrompt:
    """Rebuild one segment's prompt from the row's serialized form."""
    stored = stored if isinstance(stored, dict) else {}
    prompt = normalize_segment_prompts({"segments": [stored]}, 1, None, segment_duration)[0]
    prompt.index = segment_index + 1
    prompt.is_continuation_from_prev = segment_index > 0 and stored.get("is_continuation_from_prev") is True
    prompt.contains_brand = contains_brand
    prompt.contains_product = contains_product
    return prompt


# ── Prompt container migration ───────────────────────────────────────────────

def read_prompt_container(raw: Any) -> PromptContainer:
    """
    Migrate a stored video_prompts value into one of the known schema
    versions. Strings are parsed as JSON; nested legacy wrappers
    (video_ad_prompt and friends) are unwrapped.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored video_prompts is not valid JSON, ignoring it")
            return EmptyPromptContainer()

    if not isinstance(raw, dict) or not raw:
        return EmptyPromptContainer()

    segments = raw.get("segments")
    if isinstance(segments, list) and segments:
        metadata = {key: value for key, value in raw.items() if key != "segments"}
        return SegmentedPromptContainer(
            segments=[seg for seg in segments if isinstance(seg, dict)],
            metadata=metadata,
        )

    for wrapper in ("video_advertisement_prompt", "video_ad_prompt", "advertisement_prompt"):
        if isinstance(raw.get(wrapper), dict):
            return read_prompt_container(raw[wrapper])

    legacy_fields = LegacyPromptContainer.model_fields.keys() - {"kind"}
    if any(isinstance(raw.get(name), str) for name in legacy_fields):
        return LegacyPromptContainer(**{
            name: raw[name] for name in legacy_fields if isinstance(raw.get(name), str)
        })

    return EmptyPromptContainer()


def default_segment_prompt(index: int, language: str = "English") -> SegmentPrompt:
    return SegmentPrompt(index=index + 1, language=language, **HERO_PRODUCT_TEMPLATE)


def legacy_segment_prompt(container: LegacyPromptContainer, index: int, language: str = "English") -> SegmentPrompt:
    return SegmentPrompt(
        index=index + 1,
        audio=container.music or "Warm instrumental",
        style="Premium lifestyle realism",
        action=container.action or "Showcase product details",
        subject="Hero product",
        composition=container.camera_type or "Wide cinematic shot",
        context_environment=container.setting or "Premium studio environment",
        first_frame_description=container.description or "Hero frame showing product clearly",
        ambiance_colour_lighting=container.lighting or "Soft commercial lighting",
        camera_motion_positioning=container.camera_movement or "Slow push-in",
        dialogue=container.dialogue or "Narrate the primary benefit in one sentence",
        language=container.language or language,
    )


def ensure_segment_shots(prompt: SegmentPrompt, segment_duration: float, language: str = "English") -> SegmentPrompt:
    """Give a prompt without shots a single full-length shot built from its own fields."""
    if prompt.shots:
        return prompt
    source = prompt.model_dump(exclude={"shots"})
    for name, value in HERO_PRODUCT_TEMPLATE.items():
        if name in SHOT_TEXT_FIELDS and not source.get(name):
            source[name] = value
    source["language"] = source.get("language") or language
    hydrated = normalize_segment_prompts({"segments": [source]}, 1, None, segment_duration)[0]
    hydrated.index = prompt.index
    hydrated.is_continuation_from_prev = prompt.is_continuation_from_prev
    return hydrated


# ── Competitor compression ───────────────────────────────────────────────────

def _join_text(values: Iterable[str]) -> str:
    joined = "\n".join(value.strip() for value in values if value and value.strip())
    if len(joined) > MERGED_FIELD_LIMIT:
        joined = joined[:MERGED_FIELD_LIMIT].rstrip()
    return joined


def merge_shot_group(shots: list[CompetitorShot], segment_index: int) -> CompetitorShot:
    """Collapse consecutive competitor shots into one segment-sized shot."""
    first = shots[0]
    last = shots[-1]
    span = _round_half_up(last.end_time_seconds - first.start_time_seconds)
    duration = max(1, span or sum(shot.duration_seconds for shot in shots))

    return CompetitorShot(
        id=segment_index + 1,
        start_time=first.start_time,
        end_time=last.end_time,
        duration_seconds=duration,
        first_frame_description=_join_text(s.first_frame_description for s in shots),
        subject=_join_text(s.subject for s in shots),
        context_environment=_join_text(s.context_environment for s in shots),
        action=_join_text(s.action for s in shots),
        style=_join_text(s.style for s in shots),
        camera_motion_positioning=_join_text(s.camera_motion_positioning for s in shots),
        composition=_join_text(s.composition for s in shots),
        ambiance_colour_lighting=_join_text(s.ambiance_colour_lighting for s in shots),
        audio=_join_text(s.audio for s in shots),
        start_time_seconds=first.start_time_seconds,
        end_time_seconds=last.end_time_seconds,
        contains_brand=any(s.contains_brand for s in shots),
        contains_product=any(s.contains_product for s in shots),
    )


def compress_competitor_shots(shots: list[CompetitorShot], segment_count: int) -> list[CompetitorShot]:
    """
    Partition shots into segment_count buckets by index ratio (not by
    duration) and merge each bucket. 5 shots into 3 segments gives buckets
    of 1, 2 and 2 shots.
    """
    if segment_count <= 0 or not shots:
        return []
    if segment_count == len(shots):
        return list(shots)

    total = len(shots)
    merged = []
    for i in range(segment_count):
        start = math.floor(i / segment_count * total)
        end = max(start + 1, math.floor((i + 1) / segment_count * total))
        bucket = shots[start:min(end, total)]
        if not bucket:
            bucket = [shots[max(0, min(start, total - 1))]]
        merged.append(merge_shot_group(bucket, i))
    return merged


def build_plan_from_competitor_shots(
    segment_count: int,
    competitor_shots: list[CompetitorShot],
    segment_duration: Optional[float] = None,
) -> list[SegmentPrompt]:
    if segment_count <= 0 or not competitor_shots:
        return []

    effective = compress_competitor_shots(competitor_shots, segment_count)
    if segment_duration is None:
        total = sum(shot.duration_seconds or DEFAULT_SEGMENT_DURATION_SECONDS for shot in effective)
        segment_duration = max(1, _round_half_up(total / segment_count))

    placeholders = {"segments": [{"index": i + 1} for i in range(segment_count)]}
    return normalize_segment_prompts(placeholders, segment_count, effective, segment_duration)


# ── Derived creative direction ───────────────────────────────────────────────

def derive_segment_details(prompt: SegmentPrompt) -> SegmentDetails:
    primary = prompt.shots[0] if prompt.shots else None

    def pick(name: str) -> Optional[str]:
        return clean_text(getattr(primary, name, None)) or clean_text(getattr(prompt, name))

    subject = pick("subject")
    action = pick("action")
    style = pick("style")
    parts = [action, f"Hero focus: {subject}" if subject else None, f"Style: {style}" if style else None]
    description = ". ".join(part for part in parts if part) or SEGMENT_DEFAULTS.description

    return SegmentDetails(
        description=description,
        setting=pick("context_environment") or SEGMENT_DEFAULTS.setting,
        camera_type=pick("composition") or SEGMENT_DEFAULTS.camera_type,
        camera_movement=pick("camera_motion_positioning") or SEGMENT_DEFAULTS.camera_movement,
        action=action or SEGMENT_DEFAULTS.action,
        lighting=pick("ambiance_colour_lighting") or SEGMENT_DEFAULTS.lighting,
        dialogue=pick("dialogue") or SEGMENT_DEFAULTS.dialogue,
        music=pick("audio") or SEGMENT_DEFAULTS.music,
        ending=action or SEGMENT_DEFAULTS.ending,
        other_details=f"Visual style: {style}" if style else SEGMENT_DEFAULTS.other_details,
        language=clean_text(prompt.language) or SEGMENT_DEFAULTS.language,
        first_frame_prompt=clean_text(prompt.first_frame_description) or description,
    )


def resolve_frame_description(prompt: SegmentPrompt, frame_type: FrameType) -> str:
    details = derive_segment_details(prompt)
    if frame_type == FrameType.FIRST:
        return details.first_frame_prompt or details.description
    return details.ending or details.description


# ── Storyboard generation ────────────────────────────────────────────────────

STORYBOARD_PROMPT = """You are a senior advertising director. Write a storyboard for a {duration}-second
video advertisement split into exactly {segment_count} segments of about {segment_seconds} seconds each.
Dialogue language: {language}. Keep each segment's dialogue under {word_limit} words.

{context}

Respond with ONLY a JSON object, no markdown, no explanation:
{{
  "segments": [
    {{
      "first_frame_description": "At least 20 characters describing exactly what the opening frame shows",
      "is_continuation_from_prev": true/false,
      "contains_brand": true/false,
      "contains_product": true/false,
      "shots": [
        {{
          "time_range": "00:00 - 00:04",
          "audio": "...", "style": "...", "action": "...", "subject": "...",
          "dialogue": "...", "language": "{language}", "composition": "...",
          "context_environment": "...", "ambiance_colour_lighting": "...",
          "camera_motion_positioning": "..."
        }}
      ]
    }}
  ]
}}

Rules:
- Exactly {segment_count} entries in "segments", in playback order
- 2 to 4 shots per segment, time ranges relative to the segment start
- The first segment is never a continuation
- Mention props, environments and characters explicitly
"""


def build_storyboard_prompt(
    segment_count: int,
    segment_seconds: int,
    language: str,
    user_requirements: Optional[str] = None,
    brand_context: Optional[BrandContext] = None,
    competitor_analysis: Optional[dict] = None,
) -> str:
    context_lines = []
    if competitor_analysis:
        context_lines.append(
            "Recreate the pacing and structure of this competitor ad for our product:\n"
            + json.dumps(competitor_analysis, ensure_ascii=False)[:6000]
        )
    if brand_context:
        for label, value in (
            ("Product Details", brand_context.product_details),
            ("Brand", brand_context.brand_name),
            ("Brand Slogan", brand_context.brand_slogan),
            ("Brand Details", brand_context.brand_details),
        ):
            if value:
                context_lines.append(f"{label}: {value}")
    if user_requirements:
        context_lines.append(f"User Requirements (blend these into the storyboard):\n{user_requirements}")

    return STORYBOARD_PROMPT.format(
        duration=segment_count * segment_seconds,
        segment_count=segment_count,
        segment_seconds=segment_seconds,
        language=language,
        word_limit=max(12, _round_half_up(segment_seconds * 2.2)),
        context="\n".join(context_lines) or "Invent a premium, cinematic product story.",
    )


def validate_storyboard(data: Any, segment_count: int) -> dict:
    """Raise PlanValidationError unless data is a usable storyboard."""
    segments = data.get("segments") if isinstance(data, dict) else None
    if not isinstance(segments, list):
        segments = []

    if len(segments) != segment_count:
        raise PlanValidationError(
            f"AI response returned {len(segments)} segments but {segment_count} were requested"
        )

    for position, segment in enumerate(segments, start=1):
        if not isinstance(segment, dict):
            raise PlanValidationError(f"Segment {position} is not an object")
        missing = [name for name in REQUIRED_SEGMENT_FIELDS if segment.get(name) is None]
        if missing:
            raise PlanValidationError(f"Segment {position} missing fields: {', '.join(missing)}")
        description = segment["first_frame_description"]
        if not isinstance(description, str) or len(description.strip()) < MIN_FIRST_FRAME_DESCRIPTION:
            raise PlanValidationError(
                f"Segment {position} has invalid first_frame_description - must be at least "
                f"{MIN_FIRST_FRAME_DESCRIPTION} characters describing the visual scene. Received: {description!r}"
            )

    return {"segments": segments}


async def generate_storyboard(
    segment_count: int,
    segment_seconds: int,
    language: str,
    image_url: Optional[str] = None,
    user_requirements: Optional[str] = None,
    brand_context: Optional[BrandContext] = None,
    competitor_analysis: Optional[dict] = None,
) -> dict:
    """
    Ask the text service for a storyboard and validate it.

    Retries up to MAX_PROMPT_GENERATION_ATTEMPTS with linear backoff; the
    last failure is raised as a fatal PlanValidationError.
    """
    prompt = build_storyboard_prompt(
        segment_count, segment_seconds, language, user_requirements, brand_context, competitor_analysis
    )
    last_error: Optional[Exception] = None

    for attempt in range(1, MAX_PROMPT_GENERATION_ATTEMPTS + 1):
        try:
            logger.info(f"Storyboard attempt {attempt}/{MAX_PROMPT_GENERATION_ATTEMPTS} ({segment_count} segments)")
            data = await gemini.generate_json(prompt, image_url=image_url)
            return validate_storyboard(data, segment_count)
        except Exception as e:
            last_error = e
            logger.warning(f"Storyboard attempt {attempt} failed: {e}")
            if attempt < MAX_PROMPT_GENERATION_ATTEMPTS:
                await asyncio.sleep(attempt * PROMPT_RETRY_BACKOFF_SECONDS)

    raise PlanValidationError(
        f"Prompt generation failed after {MAX_PROMPT_GENERATION_ATTEMPTS} attempts: {last_error}"
    )


# ── Plan assembly ────────────────────────────────────────────────────────────

def plan_segments(
    segment_count: int,
    segment_duration: float,
    competitor_shots: Optional[list[CompetitorShot]] = None,
    storyboard: Optional[dict] = None,
    language: str = "English",
) -> list[SegmentPrompt]:
    """Choose the plan source for segment_count segments (no network calls)."""
    shots = competitor_shots or []

    if shots and len(shots) >= segment_count:
        return build_plan_from_competitor_shots(segment_count, shots, segment_duration)

    if storyboard:
        return normalize_segment_prompts(storyboard, segment_count, shots or None, segment_duration)

    return [
        ensure_segment_shots(default_segment_prompt(index, language), segment_duration, language)
        for index in range(segment_count)
    ]


async def build_segment_plan(
    segment_count: int,
    segment_duration: int,
    language: str,
    competitor_shots: Optional[list[CompetitorShot]] = None,
    competitor_analysis: Optional[dict] = None,
    image_url: Optional[str] = None,
    user_requirements: Optional[str] = None,
    brand_context: Optional[BrandContext] = None,
) -> list[SegmentPrompt]:
    """Plan a project, calling the text service only when the timeline is too short."""
    storyboard = None
    if len(competitor_shots or []) < segment_count:
        if gemini.is_configured():
            storyboard = await generate_storyboard(
                segment_count,
                segment_duration,
                language,
                image_url=image_url,
                user_requirements=user_requirements,
                brand_context=brand_context,
                competitor_analysis=competitor_analysis,
            )
        else:
            logger.warning("Text service not configured, planning with hero-product defaults")

    return plan_segments(segment_count, segment_duration, competitor_shots, storyboard, language)


def recover_segment_plan(
    project: Project,
    competitor_shots: Optional[list[CompetitorShot]] = None,
) -> list[SegmentPrompt]:
    """
    Rebuild the plan for a project whose segment rows are missing.

    Preference: stored plan → prompt container → competitor rebuild →
    defaults, then padded to segment_count with the last prompt.
    """
    duration = project.segment_duration_seconds or DEFAULT_SEGMENT_DURATION_SECONDS
    language = project.language or "English"
    plan = hydrate_segment_plan(project.segment_plan, project.segment_count, duration)

    container = read_prompt_container(project.video_prompts)
    if not plan and isinstance(container, SegmentedPromptContainer):
        count = project.segment_count if project.segment_count > 0 else len(container.segments)
        plan = normalize_segment_prompts({"segments": container.segments}, count, None, duration)

    count = project.segment_count if project.segment_count > 0 else max(1, len(plan))

    if (not plan or len(plan) != count) and competitor_shots:
        rebuilt = build_plan_from_competitor_shots(count, competitor_shots, duration)
        if len(rebuilt) == count:
            plan = rebuilt

    if not plan:
        if isinstance(container, LegacyPromptContainer):
            plan = [
                ensure_segment_shots(legacy_segment_prompt(container, index, language), duration, language)
                for index in range(count)
            ]
        else:
            plan = [
                ensure_segment_shots(default_segment_prompt(index, language), duration, language)
                for index in range(count)
            ]

    while len(plan) < count:
        padded = plan[-1].model_copy(deep=True)
        padded.index = len(plan) + 1
        plan.append(padded)

    return plan[:count]
