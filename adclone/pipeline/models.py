"""
Pydantic models and enums for the segmented ad-clone pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    PROCESSING = "processing"
    SEGMENT_FRAMES_READY = "segment_frames_ready"
    AWAITING_MERGE = "awaiting_merge"
    MERGING_SEGMENTS = "merging_segments"
    COMPLETED = "completed"
    FAILED = "failed"


class ProjectStep(str, Enum):
    PLANNING = "planning"
    GENERATING_SEGMENT_FRAMES = "generating_segment_frames"
    REVIEWING_SEGMENT_FRAMES = "reviewing_segment_frames"
    GENERATING_SEGMENT_VIDEOS = "generating_segment_videos"
    AWAITING_MERGE = "awaiting_merge"
    MERGING_SEGMENTS = "merging_segments"
    GENERATING_COVER = "generating_cover"
    GENERATING_VIDEO = "generating_video"
    COMPLETED = "completed"


# ── Segment Status ───────────────────────────────────────────────────────────

class SegmentStatus(str, Enum):
    PENDING_FIRST_FRAME = "pending_first_frame"
    AWAITING_PREV_FIRST_FRAME = "awaiting_prev_first_frame"
    GENERATING_FIRST_FRAME = "generating_first_frame"
    FIRST_FRAME_READY = "first_frame_ready"
    GENERATING_VIDEO = "generating_video"
    VIDEO_READY = "video_ready"
    FAILED = "failed"


class VideoModel(str, Enum):
    VEO3 = "veo3"
    VEO3_FAST = "veo3_fast"
    GROK = "grok"
    KLING_2_6 = "kling_2_6"


class FrameType(str, Enum):
    FIRST = "first"
    CLOSING = "closing"


class JobState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class MergeState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    NETWORK_ERROR = "network_error"


# ── Creative Script ──────────────────────────────────────────────────────────

class SegmentShot(BaseModel):
    """One sub-beat of a segment, timed relative to the segment start."""
    id: int = 1
    time_range: str = ""
    start_seconds: float = 0
    end_seconds: float = 0
    duration_seconds: float = 0
    audio: str = ""
    style: str = ""
    action: str = ""
    subject: str = ""
    dialogue: str = ""
    language: str = ""
    composition: str = ""
    context_environment: str = ""
    ambiance_colour_lighting: str = ""
    camera_motion_positioning: str = ""


class SegmentPrompt(BaseModel):
    index: int = 1  # one-based, as written into the plan
    first_frame_description: str = ""
    is_continuation_from_prev: bool = False
    contains_brand: Optional[bool] = None
    contains_product: Optional[bool] = None
    first_frame_image_size: Optional[str] = None
    audio: str = ""
    style: str = ""
    action: str = ""
    subject: str = ""
    dialogue: str = ""
    language: str = ""
    composition: str = ""
    context_environment: str = ""
    ambiance_colour_lighting: str = ""
    camera_motion_positioning: str = ""
    shots: list[SegmentShot] = Field(default_factory=list)


class SegmentDetails(BaseModel):
    """Flattened creative direction derived from a SegmentPrompt."""
    description: str
    setting: str
    camera_type: str
    camera_movement: str
    action: str
    lighting: str
    dialogue: str
    music: str
    ending: str
    other_details: str
    language: str
    first_frame_prompt: str


class CompetitorShot(BaseModel):
    id: int
    start_time: str = "00:00"
    end_time: str = "00:00"
    duration_seconds: int = 8
    first_frame_description: str = ""
    subject: str = ""
    context_environment: str = ""
    action: str = ""
    style: str = ""
    camera_motion_positioning: str = ""
    composition: str = ""
    ambiance_colour_lighting: str = ""
    audio: str = ""
    start_time_seconds: float = 0
    end_time_seconds: float = 0
    contains_brand: bool = False
    contains_product: bool = False


class CompetitorTimeline(BaseModel):
    video_duration_seconds: Optional[int] = None
    shots: list[CompetitorShot] = Field(default_factory=list)


# ── Prompt container schema versions ─────────────────────────────────────────

class SegmentedPromptContainer(BaseModel):
    kind: Literal["segmented"] = "segmented"
    segments: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LegacyPromptContainer(BaseModel):
    """Single flat prompt written by the pre-segment workflow."""
    kind: Literal["legacy"] = "legacy"
    description: str = ""
    setting: str = ""
    camera_type: str = ""
    camera_movement: str = ""
    action: str = ""
    lighting: str = ""
    dialogue: str = ""
    music: str = ""
    ending: str = ""
    other_details: str = ""
    language: str = ""
    ad_copy: str = ""


class EmptyPromptContainer(BaseModel):
    kind: Literal["empty"] = "empty"


PromptContainer = Union[SegmentedPromptContainer, LegacyPromptContainer, EmptyPromptContainer]


# ── Persisted Rows ───────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    user_id: str
    status: ProjectStatus = ProjectStatus.PROCESSING
    current_step: Optional[str] = None
    progress_percentage: int = 0
    video_model: VideoModel = VideoModel.VEO3_FAST
    video_aspect_ratio: str = "16:9"
    video_duration: Optional[str] = None
    language: str = "en"
    credits_cost: int = 0
    is_segmented: bool = False
    segment_count: int = 0
    segment_duration_seconds: Optional[int] = None
    segment_plan: Optional[dict[str, Any]] = None
    segment_status: Optional[dict[str, Any]] = None
    video_prompts: Optional[Union[dict[str, Any], str]] = None
    competitor_ad_id: Optional[str] = None
    cover_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    video_task_id: Optional[str] = None
    video_url: Optional[str] = None
    fal_merge_task_id: Optional[str] = None
    merge_started_at: Optional[datetime] = None
    merged_video_url: Optional[str] = None
    retry_count: int = 0
    recovery_count: int = 0
    refunded_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None


class Segment(BaseModel):
    id: str
    project_id: str
    segment_index: int
    status: SegmentStatus = SegmentStatus.PENDING_FIRST_FRAME
    prompt: Optional[dict[str, Any]] = None
    first_frame_task_id: Optional[str] = None
    first_frame_url: Optional[str] = None
    closing_frame_task_id: Optional[str] = None
    closing_frame_url: Optional[str] = None
    video_task_id: Optional[str] = None
    video_url: Optional[str] = None
    contains_brand: bool = False
    contains_product: bool = False
    video_generation_approved: bool = False
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── External job results ─────────────────────────────────────────────────────

class FramePoll(BaseModel):
    state: JobState
    url: Optional[str] = None


class VideoPoll(BaseModel):
    state: JobState
    url: Optional[str] = None
    error_message: Optional[str] = None
    is_retryable: bool = False


class MergePoll(BaseModel):
    state: MergeState
    url: Optional[str] = None
    error: Optional[str] = None


# ── Frame routing inputs ─────────────────────────────────────────────────────

class BrandContext(BaseModel):
    brand_name: str = ""
    brand_slogan: str = ""
    brand_details: str = ""
    product_details: str = ""


class FrameAssets(BaseModel):
    """Reference material available to the Frame Director for one project."""
    brand_logo_url: Optional[str] = None
    product_image_urls: list[str] = Field(default_factory=list)
    brand_context: Optional[BrandContext] = None
    competitor_file_type: Optional[Literal["video", "image"]] = None


# ── API Request / Response Models ────────────────────────────────────────────

class ProjectStartRequest(BaseModel):
    user_id: str
    video_model: VideoModel = VideoModel.VEO3_FAST
    video_duration: str = Field("8", description="Target duration in seconds, e.g. '16'")
    video_aspect_ratio: Literal["16:9", "9:16"] = "16:9"
    language: str = "en"
    competitor_ad_id: Optional[str] = None
    brand_logo_url: Optional[str] = None
    product_image_urls: list[str] = Field(default_factory=list)
    brand_context: Optional[BrandContext] = None
    user_requirements: Optional[str] = None
    ad_copy: Optional[str] = None


class ProjectStartResponse(BaseModel):
    project_id: str
    credits_used: int


class SegmentRegenerateRequest(BaseModel):
    prompt: Optional[dict[str, Any]] = None
    regenerate: Literal["photo", "video", "both", "none"] = "none"


class MonitorTickRequest(BaseModel):
    project_id: Optional[str] = None


class TickSummary(BaseModel):
    processed: int = 0
    completed: int = 0
    failed: int = 0
    total_records: int = 0


class SegmentStatusEntry(BaseModel):
    index: int
    status: SegmentStatus
    firstFrameUrl: Optional[str] = None
    closingFrameUrl: Optional[str] = None
    videoUrl: Optional[str] = None
    errorMessage: Optional[str] = None


class SegmentStatusPayload(BaseModel):
    total: int
    framesReady: int
    videosReady: int
    segments: list[SegmentStatusEntry] = Field(default_factory=list)
    mergedVideoUrl: Optional[str] = None


class ProjectResponse(BaseModel):
    id: str
    user_id: str
    status: ProjectStatus
    current_step: Optional[str] = None
    progress_percentage: int = 0
    video_model: VideoModel
    is_segmented: bool = False
    segment_count: int = 0
    segment_status: Optional[SegmentStatusPayload] = None
    awaiting_merge: bool = False
    merge_task_id: Optional[str] = None
    merged_video_url: Optional[str] = None
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
