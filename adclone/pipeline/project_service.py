"""
Project Admission & Manual Operations.

Manages the user-driven side of a clone project:
  - Admit (credit saga + background planning workflow)
  - Approve a ready first frame and start its video
  - Edit / regenerate one segment
  - Start the merge once every segment video is ready
  - Read project state

Everything after admission that is not a manual action is driven by the
monitor tick (monitor.py).
"""

import asyncio
import logging
from typing import Optional
from uuid import uuid4

from .. import metrics
from .constants import (
    FRAME_PROGRESS_START,
    MERGE_PROGRESS,
    VIDEO_PROGRESS_START,
    generation_cost,
    is_segmented_request,
    segment_count_from_duration,
    segment_duration_for_model,
)
from .credits import CreditLedger
from .frame_director import FrameDirector
from .merge import MergeService
from .models import (
    FrameAssets,
    FrameType,
    Project,
    ProjectResponse,
    ProjectStartRequest,
    ProjectStartResponse,
    ProjectStatus,
    ProjectStep,
    Segment,
    SegmentPrompt,
    SegmentRegenerateRequest,
    SegmentStatus,
    SegmentStatusPayload,
)
from .monitor import build_segment_status, stored_ad_copy, stored_frame_assets
from .planner import (
    build_segment_plan,
    hydrate_segment_prompt,
    serialize_segment_plan,
    serialize_segment_prompt,
)
from .segment_state import on_frame_submitted, on_regenerate, on_video_submitted
from .store import ProjectNotFoundError, ProjectStore, now_utc
from .timeline import parse_competitor_timeline
from .video_director import VideoDirector, resolve_end_anchor

logger = logging.getLogger(__name__)

S = SegmentStatus

EDITABLE_STATUSES = (
    ProjectStatus.PROCESSING,
    ProjectStatus.SEGMENT_FRAMES_READY,
    ProjectStatus.AWAITING_MERGE,
    ProjectStatus.FAILED,
)
# FAILED: a merge that failed or timed out clears its task id and can be retried.
MERGEABLE_STATUSES = (
    ProjectStatus.PROCESSING,
    ProjectStatus.SEGMENT_FRAMES_READY,
    ProjectStatus.AWAITING_MERGE,
    ProjectStatus.FAILED,
)


class InvalidStateError(ValueError):
    """The request does not apply to the project or segment as it is now."""


class ConflictError(RuntimeError):
    """A job for the targeted resource is already running or done."""


def _aspect_ratio(project: Project) -> str:
    return "9:16" if project.video_aspect_ratio == "9:16" else "16:9"


def _frame_assets(request: ProjectStartRequest, competitor_file_type: Optional[str]) -> FrameAssets:
    return FrameAssets(
        brand_logo_url=request.brand_logo_url,
        product_image_urls=request.product_image_urls,
        brand_context=request.brand_context,
        competitor_file_type=competitor_file_type if competitor_file_type in ("video", "image") else None,
    )


def _project_to_response(project: Project) -> ProjectResponse:
    snapshot = None
    if project.segment_status:
        snapshot = SegmentStatusPayload(**project.segment_status)
    return ProjectResponse(
        id=project.id,
        user_id=project.user_id,
        status=project.status,
        current_step=project.current_step,
        progress_percentage=project.progress_percentage,
        video_model=project.video_model,
        is_segmented=project.is_segmented,
        segment_count=project.segment_count,
        segment_status=snapshot,
        awaiting_merge=project.status == ProjectStatus.AWAITING_MERGE,
        merge_task_id=project.fal_merge_task_id,
        merged_video_url=project.merged_video_url,
        video_url=project.video_url,
        error_message=project.error_message,
        created_at=project.created_at,
    )


class ProjectService:
    def __init__(
        self,
        store: Optional[ProjectStore] = None,
        ledger: Optional[CreditLedger] = None,
        frames: Optional[FrameDirector] = None,
        videos: Optional[VideoDirector] = None,
        merger: Optional[MergeService] = None,
    ):
        self.store = store or ProjectStore()
        self.ledger = ledger or CreditLedger()
        self.frames = frames or FrameDirector()
        self.videos = videos or VideoDirector()
        self.merger = merger or MergeService()
        self._background: set[asyncio.Task] = set()

    # ═════════════════════════════════════════════════════════════════════════
    # A. Admission (credit saga)
    # ═════════════════════════════════════════════════════════════════════════

    async def admit_project(self, request: ProjectStartRequest) -> ProjectStartResponse:
        """
        POST /projects/start

        1. Check the balance covers the generation cost
        2. Deduct the cost
        3. Record the usage transaction and insert the project
           (refund immediately if either fails)
        4. Schedule the planning workflow in the background
        """
        segmented = is_segmented_request(request.video_model, request.video_duration)
        segment_count = segment_count_from_duration(request.video_duration, request.video_model) if segmented else 1
        cost = generation_cost(request.video_model, request.video_duration)
        project_id = str(uuid4())

        # ── 1-2. Reserve credits ─────────────────────────────────────────
        self.ledger.check_balance(request.user_id, cost)
        balance = self.ledger.deduct(request.user_id, cost)

        # ── 3. Record usage + create project ─────────────────────────────
        try:
            self.ledger.record_transaction(
                request.user_id,
                "usage",
                cost,
                f"Ad clone - {request.video_model.value} {request.video_duration}s",
                project_id,
                balance,
            )
            project = self.store.insert_project({
                "id": project_id,
                "user_id": request.user_id,
                "status": ProjectStatus.PROCESSING,
                "current_step": ProjectStep.PLANNING,
                "progress_percentage": 5,
                "video_model": request.video_model,
                "video_aspect_ratio": request.video_aspect_ratio,
                "video_duration": request.video_duration,
                "language": request.language,
                "credits_cost": cost,
                "is_segmented": segmented,
                "segment_count": segment_count,
                "segment_duration_seconds": segment_duration_for_model(request.video_model) if segmented else None,
                "competitor_ad_id": request.competitor_ad_id,
            })
        except Exception as e:
            logger.error(f"[{project_id}] Admission failed after deduction, refunding {cost} credits: {e}", exc_info=True)
            self._refund(request.user_id, cost, project_id, "Ad clone - project creation failed")
            raise

        # ── 4. Kick off planning ─────────────────────────────────────────
        task = asyncio.create_task(self.run_workflow(project, request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        logger.info(f"[{project_id}] Admitted: {segment_count} segment(s), {cost} credits")
        return ProjectStartResponse(project_id=project.id, credits_used=cost)

    def _refund(self, user_id: str, amount: int, project_id: str, description: str) -> bool:
        try:
            balance = self.ledger.refund(user_id, amount)
            self.ledger.record_transaction(user_id, "refund", amount, description, project_id, balance)
        except Exception as e:
            logger.critical(
                f"[{project_id}] Refund of {amount} credits to {user_id} failed, reconcile manually: {e}",
                exc_info=True,
            )
            return False
        metrics.inc_counter("credits.refunds")
        return True

    async def run_workflow(self, project: Project, request: ProjectStartRequest) -> None:
        """Background planning workflow. Irrecoverable failure refunds once."""
        try:
            if project.is_segmented:
                await self.start_segmented_workflow(project, request)
            else:
                await self.start_single_workflow(project, request)
        except Exception as e:
            logger.error(f"[{project.id}] Workflow failed: {e}", exc_info=True)
            metrics.record_error("workflow", type(e).__name__, str(e), project.id)
            marked = self.store.update_project_if_status(project.id, [ProjectStatus.PROCESSING], {
                "status": ProjectStatus.FAILED,
                "error_message": f"Workflow failed: {e}",
                "refunded_at": now_utc(),
                "last_processed_at": now_utc(),
            })
            if not marked:
                logger.warning(f"[{project.id}] Project already left processing, no refund issued")
                return
            metrics.inc_counter("projects.failed")
            self._refund(project.user_id, project.credits_cost, project.id, "Ad clone - workflow failed")

    # ═════════════════════════════════════════════════════════════════════════
    # B. Background workflows
    # ═════════════════════════════════════════════════════════════════════════

    def _competitor(self, competitor_ad_id: Optional[str]):
        if not competitor_ad_id:
            return None, None, []
        ad = self.store.get_competitor_ad(competitor_ad_id)
        if not ad:
            logger.warning(f"Competitor ad {competitor_ad_id} not found, planning without it")
            return None, None, []
        analysis = ad.get("analysis_result")
        timeline = parse_competitor_timeline(analysis, ad.get("video_duration_seconds"))
        return ad.get("file_type"), analysis if isinstance(analysis, dict) else None, timeline.shots

    async def _plan(self, project: Project, request: ProjectStartRequest, segment_count: int):
        file_type, analysis, shots = self._competitor(request.competitor_ad_id)
        image_url = next(iter(request.product_image_urls), None) or request.brand_logo_url
        plan = await build_segment_plan(
            segment_count,
            segment_duration_for_model(project.video_model),
            project.language,
            competitor_shots=shots,
            competitor_analysis=analysis,
            image_url=image_url,
            user_requirements=request.user_requirements,
            brand_context=request.brand_context,
        )
        return plan, file_type

    def _prompt_container(self, plan: list[SegmentPrompt], request: ProjectStartRequest) -> dict:
        """Segmented video_prompts container; metadata keeps the assets the tick re-uses."""
        return {
            **serialize_segment_plan(plan),
            "brand_logo_url": request.brand_logo_url,
            "product_image_urls": request.product_image_urls,
            "brand_context": request.brand_context.model_dump() if request.brand_context else None,
            "ad_copy": request.ad_copy,
        }

    async def start_segmented_workflow(self, project: Project, request: ProjectStartRequest) -> None:
        plan, file_type = await self._plan(project, request, project.segment_count)
        if not plan:
            raise RuntimeError("Planner returned no segments")

        self.store.delete_segments(project.id)
        segments = self.store.insert_segments([
            {
                "project_id": project.id,
                "segment_index": index,
                "status": S.PENDING_FIRST_FRAME,
                "prompt": serialize_segment_prompt(prompt),
                "contains_brand": bool(prompt.contains_brand),
                "contains_product": bool(prompt.contains_product),
            }
            for index, prompt in enumerate(plan)
        ])
        if len(segments) != len(plan):
            raise RuntimeError(f"Expected {len(plan)} segment rows, store returned {len(segments)}")

        self.store.update_project(project.id, {
            "segment_plan": serialize_segment_plan(plan),
            "segment_count": len(plan),
            "video_prompts": self._prompt_container(plan, request),
            "segment_status": build_segment_status(segments),
            "current_step": ProjectStep.GENERATING_SEGMENT_FRAMES,
            "progress_percentage": FRAME_PROGRESS_START,
        })
        logger.info(f"[{project.id}] Planned {len(plan)} segments")

        assets = _frame_assets(request, file_type)
        aspect_ratio = _aspect_ratio(project)
        last = len(segments) - 1
        for segment, prompt in zip(segments, plan):
            if segment.segment_index > 0 and prompt.is_continuation_from_prev:
                # Opening frame depends on the predecessor's; the tick submits it.
                self.store.update_segment(segment.id, {"status": S.AWAITING_PREV_FIRST_FRAME})
                continue

            task_id = await self.frames.submit(prompt, segment.segment_index, FrameType.FIRST, aspect_ratio, assets)
            patch = on_frame_submitted(segment, task_id)
            if segment.segment_index == last:
                patch["closing_frame_task_id"] = await self.frames.submit(
                    prompt, segment.segment_index, FrameType.CLOSING, aspect_ratio, assets
                )
            self.store.update_segment(segment.id, patch)

        if last > 0 and plan[last].is_continuation_from_prev:
            closing_task = await self.frames.submit(plan[last], last, FrameType.CLOSING, aspect_ratio, assets)
            self.store.update_segment(segments[last].id, {"closing_frame_task_id": closing_task})

    async def start_single_workflow(self, project: Project, request: ProjectStartRequest) -> None:
        plan, file_type = await self._plan(project, request, 1)
        prompt = plan[0]
        cover_task = await self.frames.submit(
            prompt, 0, FrameType.FIRST, _aspect_ratio(project), _frame_assets(request, file_type)
        )
        self.store.update_project(project.id, {
            "segment_plan": serialize_segment_plan(plan),
            "video_prompts": self._prompt_container(plan, request),
            "cover_task_id": cover_task,
            "current_step": ProjectStep.GENERATING_COVER,
            "progress_percentage": FRAME_PROGRESS_START,
            "last_processed_at": now_utc(),
        })
        logger.info(f"[{project.id}] Cover frame submitted: {cover_task}")

    # ═════════════════════════════════════════════════════════════════════════
    # C. Manual operations
    # ═════════════════════════════════════════════════════════════════════════

    def _load(self, project_id: str, segment_index: Optional[int] = None):
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        if segment_index is None:
            return project, None, []
        if not project.is_segmented:
            raise InvalidStateError("Segment operations are only available for segmented projects")
        segments = self.store.list_segments(project_id)
        segment = next((s for s in segments if s.segment_index == segment_index), None)
        if segment is None:
            raise ProjectNotFoundError(f"Segment {segment_index} not found")
        return project, segment, segments

    def _segment_prompt(self, project: Project, segment: Segment) -> SegmentPrompt:
        return hydrate_segment_prompt(
            segment.prompt,
            segment.segment_index,
            project.segment_duration_seconds or segment_duration_for_model(project.video_model),
            segment.contains_brand,
            segment.contains_product,
        )

    async def _start_segment_video(
        self, project: Project, segment: Segment, segments: list[Segment], prompt: SegmentPrompt
    ) -> str:
        next_segment = next((s for s in segments if s.segment_index == segment.segment_index + 1), None)
        return await self.videos.submit(
            project.video_model,
            prompt,
            segment.segment_index,
            segment.first_frame_url,
            resolve_end_anchor(segment, next_segment),
            _aspect_ratio(project),
            project.language,
            project.segment_duration_seconds or segment_duration_for_model(project.video_model),
            stored_ad_copy(project),
        )

    def _refresh_snapshot(self, project: Project, extra: Optional[dict] = None) -> dict:
        segments = self.store.list_segments(project.id)
        patch = {
            "segment_status": build_segment_status(segments, project.merged_video_url),
            "last_processed_at": now_utc(),
            **(extra or {}),
        }
        if segments and all(s.video_task_id or s.video_url for s in segments):
            patch.setdefault("current_step", ProjectStep.GENERATING_SEGMENT_VIDEOS)
            patch.setdefault("progress_percentage", VIDEO_PROGRESS_START)
        self.store.update_project(project.id, patch)
        return patch["segment_status"]

    async def approve_segment_video(self, project_id: str, segment_index: int) -> dict:
        """
        POST /projects/{id}/segments/{index}/generate-video

        Approve a reviewed first frame and submit its video job right away.
        """
        project, segment, segments = self._load(project_id, segment_index)

        if not segment.first_frame_url:
            raise InvalidStateError("First frame not ready. Please wait for frame generation to complete.")
        if segment.video_url:
            raise ConflictError("Video already generated for this segment. Use regenerate to create a new one.")
        if segment.video_task_id or segment.status == S.GENERATING_VIDEO:
            raise ConflictError("Video generation already in progress for this segment.")
        if segment.status != S.FIRST_FRAME_READY:
            raise ConflictError(f"Segment is {segment.status.value}; regenerate it instead.")

        segment.video_generation_approved = True
        task_id = await self._start_segment_video(project, segment, segments, self._segment_prompt(project, segment))
        patch = {**on_video_submitted(segment, task_id), "video_generation_approved": True}
        if not self.store.update_segment_if_status(segment.id, [S.FIRST_FRAME_READY], patch):
            raise ConflictError("Segment changed while starting its video. Refresh and try again.")

        extra = {}
        remaining = [
            s for s in segments
            if s.segment_index != segment_index and s.status == S.FIRST_FRAME_READY and not s.video_generation_approved
        ]
        if not remaining and project.status == ProjectStatus.SEGMENT_FRAMES_READY:
            extra = {"status": ProjectStatus.PROCESSING, "current_step": ProjectStep.GENERATING_SEGMENT_VIDEOS}
        snapshot = self._refresh_snapshot(project, extra)

        logger.info(f"[{project_id}#{segment_index}] Video approved and started: {task_id}")
        return {"segment_index": segment_index, "video_task_id": task_id, "segment_status": snapshot}

    async def regenerate_segment(
        self, project_id: str, segment_index: int, request: SegmentRegenerateRequest
    ) -> dict:
        """
        PATCH /projects/{id}/segments/{index}

        Merge prompt edits into the stored segment prompt and optionally
        re-render its first frame ("photo"), its video ("video") or both.
        """
        project, segment, segments = self._load(project_id, segment_index)
        if project.refunded_at:
            raise InvalidStateError("Project credits were refunded; start a new generation instead")
        if project.status not in EDITABLE_STATUSES:
            raise InvalidStateError(f"Project is {project.status.value} and can no longer be edited")

        regenerate_photo = request.regenerate in ("photo", "both")
        regenerate_video = request.regenerate in ("video", "both")

        if regenerate_photo and segment.status == S.GENERATING_FIRST_FRAME:
            raise ConflictError("First frame regeneration already in progress. Please wait until it completes.")
        if regenerate_video and segment.status == S.GENERATING_VIDEO:
            raise ConflictError("Video regeneration already running. Please wait until the current job finishes.")
        if regenerate_video and not regenerate_photo and not segment.first_frame_url:
            raise InvalidStateError("First frame missing. Please regenerate the first frame before the video.")

        existing = self._segment_prompt(project, segment)
        merged = SegmentPrompt(**{**existing.model_dump(), **(request.prompt or {})})
        merged.contains_brand = existing.contains_brand
        merged.contains_product = existing.contains_product
        if segment_index == 0:
            merged.is_continuation_from_prev = False

        patch = {"prompt": serialize_segment_prompt(merged)}
        aspect_ratio = _aspect_ratio(project)
        assets = self._stored_assets(project)

        continuation_url = None
        if regenerate_photo and merged.is_continuation_from_prev:
            previous = next((s for s in segments if s.segment_index == segment_index - 1), None)
            continuation_url = previous.first_frame_url if previous else None
            if not continuation_url:
                raise ConflictError("Previous segment frame not ready. Wait for it before regenerating this segment.")

        target = None
        if regenerate_photo:
            task_id = await self.frames.submit(merged, segment_index, FrameType.FIRST, aspect_ratio, assets, continuation_url)
            patch.update({
                "first_frame_task_id": task_id,
                "first_frame_url": None,
                "video_generation_approved": False,
                "video_url": None,
                "video_task_id": None,
                "retry_count": 0,
                "error_message": None,
            })
            if segment_index == len(segments) - 1:
                patch["closing_frame_task_id"] = await self.frames.submit(
                    merged, segment_index, FrameType.CLOSING, aspect_ratio, assets
                )
                patch["closing_frame_url"] = None
            target = S.GENERATING_FIRST_FRAME

        if regenerate_video:
            patch.update({"video_url": None, "video_task_id": None, "retry_count": 0, "error_message": None})
            if not regenerate_photo:
                task_id = await self._start_segment_video(project, segment, segments, merged)
                patch.update({"video_task_id": task_id, "video_generation_approved": True})
                target = S.GENERATING_VIDEO

        if target is not None:
            patch = on_regenerate(segment, target, patch)
        self.store.update_segment(segment.id, patch)

        extra = {}
        if target is not None and project.status in (ProjectStatus.AWAITING_MERGE, ProjectStatus.FAILED):
            extra = {
                "status": ProjectStatus.PROCESSING,
                "current_step": ProjectStep.GENERATING_SEGMENT_VIDEOS,
                "error_message": None,
            }
        snapshot = self._refresh_snapshot(project, extra)

        logger.info(f"[{project_id}#{segment_index}] Segment updated (regenerate={request.regenerate})")
        return {"segment_index": segment_index, "segment_status": snapshot}

    def _stored_assets(self, project: Project) -> FrameAssets:
        file_type = None
        if project.competitor_ad_id:
            ad = self.store.get_competitor_ad(project.competitor_ad_id) or {}
            file_type = ad.get("file_type")
        return stored_frame_assets(project, file_type)

    async def start_merge(self, project_id: str) -> dict:
        """POST /projects/{id}/merge: the human gate before stitching."""
        project, _, _ = self._load(project_id)
        if not project.is_segmented:
            raise InvalidStateError("Manual merge only applies to segmented projects")
        if project.refunded_at:
            raise InvalidStateError("Project credits were refunded; start a new generation instead")
        if project.merged_video_url:
            raise InvalidStateError("Project already merged")
        if project.fal_merge_task_id:
            raise InvalidStateError("Merge already in progress")
        if project.status not in MERGEABLE_STATUSES:
            raise InvalidStateError(f"Project is {project.status.value} and cannot be merged")

        segments = self.store.list_segments(project_id)
        if not segments or not all(s.video_url for s in segments):
            raise InvalidStateError("Segments are still rendering. Wait until all videos are ready.")

        request_id = await self.merger.submit([s.video_url for s in segments], _aspect_ratio(project))
        written = self.store.update_project_if_status(project_id, MERGEABLE_STATUSES, {
            "status": ProjectStatus.MERGING_SEGMENTS,
            "current_step": ProjectStep.MERGING_SEGMENTS,
            "fal_merge_task_id": request_id,
            "merge_started_at": now_utc(),
            "error_message": None,
            "progress_percentage": MERGE_PROGRESS,
            "last_processed_at": now_utc(),
        })
        if not written:
            raise ConflictError("Project changed while starting the merge. Refresh and try again.")

        logger.info(f"[{project_id}] Merge started: {request_id}")
        return {"project_id": project_id, "merge_task_id": request_id}

    def get_project_state(self, project_id: str) -> ProjectResponse:
        project, _, _ = self._load(project_id)
        if project.is_segmented and not project.segment_status:
            project.segment_status = build_segment_status(
                self.store.list_segments(project_id), project.merged_video_url
            )
        return _project_to_response(project)
