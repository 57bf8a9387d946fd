"""
Frame Director: keyframe routing and image-job submission.

For one (segment, frame type) pick how the keyframe is rendered:
  1. Continuation: image-to-image from the previous segment's opening frame
  2. Brand: image-to-image from the brand logo
  3. Product: image-to-image from the product photos
  4. Text: text-to-image from the scene description

Competitor clone mode (the reference ad is a video or image) skips the
routing and renders the frame description directly, with continuation and
product photos as optional references.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from .. import kie
from .constants import KIE_PROMPT_LIMIT, MAX_REFERENCE_IMAGES
from .models import BrandContext, FrameAssets, FramePoll, FrameType, JobState, SegmentPrompt
from .planner import derive_segment_details, resolve_frame_description

logger = logging.getLogger(__name__)

IMAGE_MODEL = "nano-banana-pro"
IMAGE_RESOLUTION = "1K"
IMAGE_FORMAT = "png"


class FrameRequest(BaseModel):
    mode: str  # clone | continuation | brand | product | text
    prompt: str
    references: list[str] = Field(default_factory=list)
    aspect_ratio: str = "16:9"

    def to_input(self) -> dict:
        payload = {
            "prompt": kie.clamp_prompt(self.prompt, KIE_PROMPT_LIMIT),
            "aspect_ratio": self.aspect_ratio,
            "resolution": IMAGE_RESOLUTION,
            "output_format": IMAGE_FORMAT,
        }
        if self.references:
            payload["image_input"] = list(self.references)
        return payload


def _dedupe(urls: list[Optional[str]]) -> list[str]:
    seen = []
    for url in urls:
        if isinstance(url, str) and url and url not in seen:
            seen.append(url)
    return seen[:MAX_REFERENCE_IMAGES]


def _brand_lines(brand: Optional[BrandContext]) -> str:
    if not brand or not brand.brand_name:
        return ""
    return (
        "\n\nBrand Context:"
        f"\n- Brand: {brand.brand_name}"
        f"\n- Slogan: {brand.brand_slogan}"
        f"\n- Details: {brand.brand_details}"
    )


def _text_prompt(prompt: SegmentPrompt, index: int, frame_type: FrameType, brand: Optional[BrandContext]) -> str:
    label = "opening" if frame_type == FrameType.FIRST else "closing"
    derived = derive_segment_details(prompt)
    composition = (
        "Strong opening frame that captures attention"
        if frame_type == FrameType.FIRST
        else "Smooth closing that transitions naturally"
    )
    return (
        f"Segment {index + 1} {label} frame for a premium advertisement.\n\n"
        f"Scene Description:\n- {resolve_frame_description(prompt, frame_type)}\n\n"
        "Creative Direction:\n"
        f"- Setting: {derived.setting}\n"
        f"- Camera: {derived.camera_type} with {derived.camera_movement}\n"
        f"- Action: {derived.action}\n"
        f"- Lighting: {derived.lighting}\n"
        "- Style: Professional, high-quality commercial photography\n"
        f"- Composition: {composition}{_brand_lines(brand)}\n\n"
        "Technical Requirements:\n"
        "- No text overlays, no watermarks, no borders\n"
        "- Photorealistic rendering\n"
        "- Commercial-grade quality"
    )


_REFERENCE_GUIDANCE = {
    "continuation": "Use the provided previous frame as the canonical reference. Keep the same characters, "
                    "wardrobe, environment and lighting so the cut feels continuous.",
    "brand": "Use the provided brand logo/asset as the canonical reference. Maintain identical brand styling, "
             "colors, and visual identity.",
    "product": "Use the provided product image as the canonical reference. Maintain identical product "
               "proportions, textures, materials, and branding.",
}


def _reference_prompt(prompt: SegmentPrompt, index: int, frame_type: FrameType, mode: str) -> str:
    label = "opening" if frame_type == FrameType.FIRST else "closing"
    derived = derive_segment_details(prompt)
    description = resolve_frame_description(prompt, frame_type)
    transition = "into the upcoming motion clip" if frame_type == FrameType.FIRST else "out of the prior scene"
    return (
        f"Segment {index + 1} {label} frame for a premium advertisement.\n\n"
        f"{_REFERENCE_GUIDANCE[mode]}\n\n"
        "Scene Focus:\n"
        f"- Description: {description}\n"
        f"- Setting: {derived.setting}\n"
        f"- Camera: {derived.camera_type} with {derived.camera_movement}\n"
        f"- Lighting: {derived.lighting}\n\n"
        "Render Instructions:\n"
        f"- Ensure composition seamlessly transitions {transition}\n"
        "- No text overlays, no watermarks, no borders"
    )


def build_frame_request(
    prompt: SegmentPrompt,
    segment_index: int,
    frame_type: FrameType,
    aspect_ratio: str,
    assets: Optional[FrameAssets] = None,
    continuation_url: Optional[str] = None,
) -> FrameRequest:
    """Route one keyframe to a rendering mode. Pure; no network calls."""
    assets = assets or FrameAssets()
    products = [url for url in assets.product_image_urls if url]
    use_continuation = bool(
        continuation_url and frame_type == FrameType.FIRST and prompt.is_continuation_from_prev
    )
    continuation = [continuation_url] if use_continuation else []

    if assets.competitor_file_type in ("video", "image"):
        return FrameRequest(
            mode="clone",
            prompt=resolve_frame_description(prompt, frame_type),
            references=_dedupe(continuation + products),
            aspect_ratio=aspect_ratio,
        )

    wants_brand = prompt.contains_brand is True and bool(assets.brand_logo_url)
    wants_product = prompt.contains_product is True and bool(products)
    combined = _dedupe(
        continuation
        + ([assets.brand_logo_url] if wants_brand else [])
        + (products if wants_product else [])
    )

    if use_continuation:
        mode = "continuation"
    elif wants_brand:
        mode = "brand"
    elif wants_product:
        mode = "product"
    else:
        if prompt.contains_brand and not assets.brand_logo_url:
            logger.warning(f"Segment {segment_index + 1}: brand shot without logo, falling back to text")
        elif prompt.contains_product and not products:
            logger.warning(f"Segment {segment_index + 1}: product shot without photos, falling back to text")
        return FrameRequest(
            mode="text",
            prompt=_text_prompt(prompt, segment_index, frame_type, assets.brand_context),
            aspect_ratio=aspect_ratio,
        )

    return FrameRequest(
        mode=mode,
        prompt=_reference_prompt(prompt, segment_index, frame_type, mode),
        references=combined,
        aspect_ratio=aspect_ratio,
    )


def parse_frame_record(record: dict) -> FramePoll:
    state = str(record.get("state") or "").lower()
    flag = record.get("successFlag")

    if state == "success" or flag == 1:
        url = kie.extract_result_url(record)
        if url:
            return FramePoll(state=JobState.SUCCESS, url=url)
        return FramePoll(state=JobState.PENDING)
    if state in ("failed", "fail") or flag in (2, 3):
        return FramePoll(state=JobState.FAILED)
    return FramePoll(state=JobState.PENDING)


class FrameDirector:
    """Submits and polls keyframe jobs on the image service."""

    async def submit(
        self,
        prompt: SegmentPrompt,
        segment_index: int,
        frame_type: FrameType,
        aspect_ratio: str,
        assets: Optional[FrameAssets] = None,
        continuation_url: Optional[str] = None,
    ) -> str:
        request = build_frame_request(prompt, segment_index, frame_type, aspect_ratio, assets, continuation_url)
        logger.info(
            f"Segment {segment_index + 1} {frame_type.value} frame: mode={request.mode}, "
            f"references={len(request.references)}"
        )
        return await kie.create_task(IMAGE_MODEL, request.to_input())

    async def poll(self, task_id: str) -> FramePoll:
        record = await kie.get_job_record(task_id)
        return parse_frame_record(record)
