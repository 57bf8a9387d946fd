"""
Video Director: end anchors, model-specific requests and failure handling.

veo3 / veo3_fast go through veo/generate with first-and-last-frame mode;
grok and kling_2_6 go through jobs/createTask with the opening frame only.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel

from .. import kie
from .constants import DEFAULT_SEGMENT_DURATION_SECONDS, KIE_PROMPT_LIMIT, segment_duration_for_model
from .models import JobState, Segment, SegmentPrompt, VideoModel, VideoPoll
from .planner import clean_text
from .timeline import format_timecode

logger = logging.getLogger(__name__)

NARRATOR = {"descriptor": "Calm professional narrator", "tone": "warm and confident"}

CONTENT_POLICY_PHRASES = ("content polic", "violating content policies", "flagged by", "safety check failed")
CONTENT_POLICY_MESSAGE = (
    "Content policy violation. Please try regenerating with a different prompt or adjust your requirements."
)

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "ar": "Arabic",
    "ru": "Russian",
    "hi": "Hindi",
    "tr": "Turkish",
    "pl": "Polish",
    "sv": "Swedish",
}

JOBS_MODELS = {VideoModel.GROK, VideoModel.KLING_2_6}


class VideoRequest(BaseModel):
    endpoint: str  # "veo" or "jobs"
    model: str
    payload: dict


def language_name(code: Optional[str]) -> str:
    if not code:
        return "English"
    return LANGUAGE_NAMES.get(code.lower(), code)


def resolve_end_anchor(segment: Segment, next_segment: Optional[Segment]) -> Optional[str]:
    """Own closing frame, else the next segment's opening frame, else single-frame mode."""
    if segment.closing_frame_url:
        return segment.closing_frame_url
    if next_segment is not None and next_segment.first_frame_url:
        return next_segment.first_frame_url
    return None


def _structured_prompt(prompt: SegmentPrompt, segment_index: int, language: str, duration: int, ad_copy: Optional[str]) -> dict:
    action = clean_text(prompt.action) or ""
    dialogue = ad_copy or prompt.dialogue or ""
    music = clean_text(prompt.audio) or ""
    full_range = f"00:00 - {format_timecode(duration)}"

    source_shots = [shot.model_dump() for shot in prompt.shots] or [{}]
    shots = []
    for shot in source_shots:
        shots.append({
            "time_range": shot.get("time_range") or full_range,
            "audio": clean_text(shot.get("audio")) or music,
            "style": clean_text(shot.get("style")) or prompt.style,
            "action": clean_text(shot.get("action")) or action,
            "subject": clean_text(shot.get("subject")) or prompt.subject,
            "dialogue": clean_text(shot.get("dialogue")) or dialogue,
            "language": clean_text(shot.get("language")) or language,
            "composition": clean_text(shot.get("composition")) or prompt.composition,
            "context_environment": clean_text(shot.get("context_environment")) or prompt.context_environment,
            "ambiance_colour_lighting": clean_text(shot.get("ambiance_colour_lighting")) or prompt.ambiance_colour_lighting,
            "camera_motion_positioning": clean_text(shot.get("camera_motion_positioning")) or prompt.camera_motion_positioning,
        })

    return {
        "is_continuation_from_prev": bool(prompt.is_continuation_from_prev and segment_index > 0),
        "first_frame_description": prompt.first_frame_description,
        "narrator": dict(NARRATOR),
        "dialogue_language": language_name(language),
        "shots": shots,
    }


def kling_duration(segment_duration: float) -> str:
    """Kling renders 5-second blocks between 5 and 80 seconds."""
    blocks = int(segment_duration / 5 + 0.5) * 5
    return str(min(80, max(5, blocks)))


def _kling_prompt(prompt: SegmentPrompt, segment_index: int, dialogue: str) -> str:
    lines = [
        f"First frame: {prompt.first_frame_description}" if prompt.first_frame_description else None,
        f"Action: {prompt.action}" if prompt.action else None,
        f"Subject: {prompt.subject}" if prompt.subject else None,
        f"Style: {prompt.style}" if prompt.style else None,
        f"Environment: {prompt.context_environment}" if prompt.context_environment else None,
        f"Lighting: {prompt.ambiance_colour_lighting}" if prompt.ambiance_colour_lighting else None,
        f"Dialogue/Narration: {dialogue}" if dialogue else None,
    ]
    return "\n".join(line for line in lines if line) or f"Segment {segment_index + 1} commercial beat"


def build_video_request(
    model: VideoModel,
    prompt: SegmentPrompt,
    segment_index: int,
    first_frame_url: str,
    closing_frame_url: Optional[str],
    aspect_ratio: str = "16:9",
    language: str = "en",
    segment_duration: Optional[int] = None,
    ad_copy: Optional[str] = None,
) -> VideoRequest:
    duration = segment_duration or segment_duration_for_model(model) or DEFAULT_SEGMENT_DURATION_SECONDS
    structured = _structured_prompt(prompt, segment_index, language, duration, ad_copy)
    full_prompt = kie.clamp_prompt(json.dumps(structured, ensure_ascii=False), KIE_PROMPT_LIMIT)

    if model == VideoModel.GROK:
        return VideoRequest(
            endpoint="jobs",
            model="grok-imagine/image-to-video",
            payload={"image_urls": [first_frame_url], "prompt": full_prompt, "mode": "normal"},
        )

    if model == VideoModel.KLING_2_6:
        dialogue = ad_copy or prompt.dialogue or ""
        return VideoRequest(
            endpoint="jobs",
            model="kling-2.6/image-to-video",
            payload={
                "prompt": kie.clamp_prompt(_kling_prompt(prompt, segment_index, dialogue), KIE_PROMPT_LIMIT),
                "image_urls": [first_frame_url],
                "sound": True,
                "duration": kling_duration(duration),
            },
        )

    has_closing = bool(closing_frame_url) and closing_frame_url != first_frame_url
    return VideoRequest(
        endpoint="veo",
        model=model.value,
        payload={
            "prompt": full_prompt,
            "model": model.value,
            "aspectRatio": "9:16" if aspect_ratio == "9:16" else "16:9",
            "generationType": "FIRST_AND_LAST_FRAMES_2_VIDEO",
            "imageUrls": [first_frame_url, closing_frame_url] if has_closing else [first_frame_url],
            "enableAudio": True,
            "enableTranslation": False,
        },
    )


# ── Failure classification ───────────────────────────────────────────────────

def is_content_policy(message: Optional[str]) -> bool:
    lowered = (message or "").lower()
    return any(phrase in lowered for phrase in CONTENT_POLICY_PHRASES)


def classify_failure(model: VideoModel, message: Optional[str], fail_code: Optional[str]) -> VideoPoll:
    """Server errors (failCode 500) and content-policy rejections are retryable."""
    message = message or "Video generation failed"
    policy = is_content_policy(message)
    if policy or str(fail_code or "") == "500":
        if policy:
            error_type = "Content policy violation"
        elif model in JOBS_MODELS:
            error_type = "KIE server error"
        else:
            error_type = "VEO3 server error"
        return VideoPoll(state=JobState.FAILED, error_message=f"{error_type} (retryable): {message}", is_retryable=True)
    return VideoPoll(state=JobState.FAILED, error_message=message, is_retryable=False)


def sanitize_failure_message(message: Optional[str]) -> str:
    if is_content_policy(message):
        return CONTENT_POLICY_MESSAGE
    return message or "Segment video generation failed"


def parse_video_record(model: VideoModel, record: dict) -> VideoPoll:
    if not record:
        return VideoPoll(state=JobState.PENDING)

    state = str(record.get("state") or "").lower()
    flag = record.get("successFlag")
    fail_code = record.get("failCode")
    url = kie.extract_result_url(record)

    if model in JOBS_MODELS:
        succeeded = state in ("success", "succeeded") or flag == 1 or (url is not None and not state)
        failed = state in ("failed", "fail") or flag in (2, 3)
        message = record.get("failMsg") or record.get("errorMessage")
    else:
        succeeded = flag == 1
        failed = flag in (2, 3)
        message = record.get("errorMessage") or record.get("failMsg")

    if succeeded:
        if url:
            return VideoPoll(state=JobState.SUCCESS, url=url)
        return VideoPoll(state=JobState.PENDING)
    if failed:
        return classify_failure(model, message, fail_code)
    return VideoPoll(state=JobState.PENDING)


class VideoDirector:
    """Submits and polls segment video jobs on the video service."""

    async def submit(
        self,
        model: VideoModel,
        prompt: SegmentPrompt,
        segment_index: int,
        first_frame_url: str,
        closing_frame_url: Optional[str],
        aspect_ratio: str = "16:9",
        language: str = "en",
        segment_duration: Optional[int] = None,
        ad_copy: Optional[str] = None,
    ) -> str:
        request = build_video_request(
            model, prompt, segment_index, first_frame_url, closing_frame_url,
            aspect_ratio, language, segment_duration, ad_copy,
        )
        logger.info(
            f"Segment {segment_index + 1}: video request model={request.model}, "
            f"end_anchor={'yes' if closing_frame_url else 'no'}"
        )
        if request.endpoint == "jobs":
            return await kie.create_task(request.model, request.payload)
        return await kie.veo_generate(request.payload)

    async def poll(self, model: VideoModel, task_id: str) -> VideoPoll:
        if model in JOBS_MODELS:
            record = await kie.get_job_record(task_id)
        else:
            record = await kie.get_veo_record(task_id)
        return parse_video_record(model, record)
