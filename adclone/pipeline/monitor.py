"""
Monitor Tick: reconciliation over persisted project state.

Invoked periodically (in-process scheduler or POST /monitor/tick). Each call
looks at a bounded batch of projects and advances each one by at most one
step per external job; nothing here waits on a job to finish.

Per segmented project, in order:
  1. Staleness (30 minutes since creation)
  2. Segment recovery when rows are missing
  3. Bounded un-fail while segments are still alive
  4. Frame synchronization, ascending index
  5. Video kickoff for approved frames
  6. Video polling with capped retries
  7. Progress + status snapshot
  8. Merge handoff (human gate)
  9. Merge polling
"""

import os
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from .. import metrics
from ..tick_lock import TickLock
from .constants import (
    FRAME_PROGRESS_RANGE,
    FRAME_PROGRESS_START,
    MAX_PROJECT_RECOVERIES,
    MAX_PROJECT_RETRIES,
    MAX_WORKFLOW_AGE_MINUTES,
    MERGE_PROGRESS,
    MERGE_TIMEOUT_MINUTES,
    SINGLE_VIDEO_TIMEOUT_MINUTES,
    VIDEO_PROGRESS_RANGE,
    VIDEO_PROGRESS_START,
    segment_duration_for_model,
)
from .frame_director import FrameDirector
from .merge import MergeService
from .models import (
    CompetitorShot,
    FrameAssets,
    FrameType,
    JobState,
    LegacyPromptContainer,
    MergeState,
    Project,
    ProjectStatus,
    ProjectStep,
    Segment,
    SegmentedPromptContainer,
    SegmentPrompt,
    SegmentStatus,
    SegmentStatusEntry,
    SegmentStatusPayload,
    TickSummary,
    VideoModel,
)
from .planner import (
    hydrate_segment_prompt,
    read_prompt_container,
    recover_segment_plan,
    serialize_segment_plan,
    serialize_segment_prompt,
)
from .segment_state import (
    can_retry_video,
    closing_frame_sync,
    on_await_previous,
    on_first_frame_failed,
    on_first_frame_ready,
    on_frame_submitted,
    on_video_failed,
    on_video_ready,
    on_video_retry,
    on_video_submitted,
)
from .store import ProjectNotFoundError, ProjectStore, now_utc
from .timeline import parse_competitor_timeline
from .video_director import VideoDirector, resolve_end_anchor, sanitize_failure_message

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
MONITOR_BATCH_LIMIT = int(os.getenv("MONITOR_BATCH_LIMIT", "10"))

# awaiting_merge is a human gate: only a targeted tick looks at it.
TICK_STATUSES = (
    ProjectStatus.PROCESSING,
    ProjectStatus.SEGMENT_FRAMES_READY,
    ProjectStatus.MERGING_SEGMENTS,
)
LIVE_STATUSES = (
    ProjectStatus.PROCESSING,
    ProjectStatus.SEGMENT_FRAMES_READY,
    ProjectStatus.AWAITING_MERGE,
    ProjectStatus.MERGING_SEGMENTS,
)
WORKING_STATUSES = (ProjectStatus.PROCESSING, ProjectStatus.SEGMENT_FRAMES_READY)

TRANSIENT_MARKERS = (
    "connection timeout",
    "connect timeout",
    "und_err_connect_timeout",
    "fetch failed",
    "econnreset",
    "etimedout",
)

TIMEOUT_MESSAGE = f"Workflow timeout: exceeded {MAX_WORKFLOW_AGE_MINUTES} minutes since creation"
RECOVERY_FAILED_MESSAGE = "Failed to initialize segment tasks. Please restart this generation."

# Cleared when a merge fails so the retry starts from the merge gate.
MERGE_RESET = {"fal_merge_task_id": None, "merge_started_at": None}

S = SegmentStatus


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code in (429, 502, 503, 504):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def frame_progress(frames_ready: int, total: int) -> int:
    if total <= 0:
        return FRAME_PROGRESS_START
    return FRAME_PROGRESS_START + _round_half_up(FRAME_PROGRESS_RANGE * frames_ready / total)


def video_progress(videos_ready: int, total: int) -> int:
    if total <= 0:
        return VIDEO_PROGRESS_START
    return VIDEO_PROGRESS_START + _round_half_up(VIDEO_PROGRESS_RANGE * videos_ready / total)


def build_segment_status(segments: list[Segment], merged_video_url: Optional[str] = None) -> dict:
    payload = SegmentStatusPayload(
        total=len(segments),
        framesReady=sum(1 for s in segments if s.first_frame_url),
        videosReady=sum(1 for s in segments if s.video_url),
        segments=[
            SegmentStatusEntry(
                index=s.segment_index,
                status=s.status,
                firstFrameUrl=s.first_frame_url,
                closingFrameUrl=s.closing_frame_url,
                videoUrl=s.video_url,
                errorMessage=s.error_message,
            )
            for s in segments
        ],
        mergedVideoUrl=merged_video_url,
    )
    return payload.model_dump(mode="json")


def stored_frame_assets(project: Project, competitor_file_type: Optional[str] = None) -> FrameAssets:
    """Brand/product references saved with the prompt container at admission."""
    container = read_prompt_container(project.video_prompts)
    metadata = container.metadata if isinstance(container, SegmentedPromptContainer) else {}
    return FrameAssets(
        brand_logo_url=metadata.get("brand_logo_url"),
        product_image_urls=[url for url in metadata.get("product_image_urls") or [] if url],
        brand_context=metadata.get("brand_context"),
        competitor_file_type=competitor_file_type if competitor_file_type in ("video", "image") else None,
    )


def stored_ad_copy(project: Project) -> Optional[str]:
    """Dialogue override saved with the prompt container, if any."""
    container = read_prompt_container(project.video_prompts)
    if isinstance(container, LegacyPromptContainer):
        return container.ad_copy.strip() or None
    if isinstance(container, SegmentedPromptContainer):
        value = container.metadata.get("ad_copy")
        return (value.strip() or None) if isinstance(value, str) else None
    return None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _minutes_since(then: Optional[datetime], now: datetime) -> float:
    then = _as_utc(then)
    if then is None:
        return 0.0
    return (now - then).total_seconds() / 60


def apply_patch(segment: Segment, patch: dict) -> None:
    """Mirror a persisted patch onto the in-memory segment."""
    for key, value in patch.items():
        if key == "status":
            value = SegmentStatus(value)
        setattr(segment, key, value)


@dataclass
class TickContext:
    """Per-invocation state for one project. Never shared across ticks."""
    project: Project
    segments: list[Segment] = field(default_factory=list)
    competitor_file_type: Optional[str] = None
    competitor_shots: list[CompetitorShot] = field(default_factory=list)
    changed: bool = False
    error_message: Optional[str] = None
    _plan: Optional[list[SegmentPrompt]] = None

    @property
    def segment_duration(self) -> int:
        return self.project.segment_duration_seconds or segment_duration_for_model(self.project.video_model)

    @property
    def aspect_ratio(self) -> str:
        return "9:16" if self.project.video_aspect_ratio == "9:16" else "16:9"

    @property
    def frame_assets(self) -> FrameAssets:
        return stored_frame_assets(self.project, self.competitor_file_type)

    @property
    def ad_copy(self) -> Optional[str]:
        return stored_ad_copy(self.project)

    def plan(self) -> list[SegmentPrompt]:
        if self._plan is None:
            self._plan = recover_segment_plan(self.project, self.competitor_shots or None)
        return self._plan

    def prompt_for(self, segment: Segment) -> SegmentPrompt:
        stored = segment.prompt if isinstance(segment.prompt, dict) else None
        if stored and (stored.get("shots") or stored.get("first_frame_description")):
            return hydrate_segment_prompt(
                stored,
                segment.segment_index,
                self.segment_duration,
                segment.contains_brand,
                segment.contains_product,
            )
        plan = self.plan()
        source = plan[min(segment.segment_index, len(plan) - 1)]
        prompt = source.model_copy(deep=True)
        prompt.index = segment.segment_index + 1
        if segment.segment_index == 0:
            prompt.is_continuation_from_prev = False
        return prompt

    def next_segment(self, segment: Segment) -> Optional[Segment]:
        for other in self.segments:
            if other.segment_index == segment.segment_index + 1:
                return other
        return None

    def previous_segment(self, segment: Segment) -> Optional[Segment]:
        for other in self.segments:
            if other.segment_index == segment.segment_index - 1:
                return other
        return None


class ProjectMonitor:
    def __init__(
        self,
        store: Optional[ProjectStore] = None,
        frames: Optional[FrameDirector] = None,
        videos: Optional[VideoDirector] = None,
        merger: Optional[MergeService] = None,
        lock: Optional[TickLock] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store or ProjectStore()
        self.frames = frames or FrameDirector()
        self.videos = videos or VideoDirector()
        self.merger = merger or MergeService()
        self.lock = lock or TickLock()
        self.now = now or now_utc

    # ═════════════════════════════════════════════════════════════════════════
    # Entry point
    # ═════════════════════════════════════════════════════════════════════════

    async def tick(self, project_id: Optional[str] = None) -> TickSummary:
        started = time.time()
        metrics.inc_counter("monitor.ticks")

        if project_id:
            project = self.store.get_project(project_id)
            if project is None:
                raise ProjectNotFoundError(f"Project {project_id} not found")
            projects = [project]
        else:
            failed_since = self.now() - timedelta(minutes=MAX_WORKFLOW_AGE_MINUTES)
            projects = self.store.list_projects_for_tick(TICK_STATUSES, MONITOR_BATCH_LIMIT, failed_since)

        summary = TickSummary(total_records=len(projects))
        metrics.set_gauge("monitor.batch_size", len(projects))
        logger.info(f"Monitor tick: {len(projects)} project(s) to reconcile")

        for project in projects:
            if not self.lock.acquire(project.id):
                continue
            try:
                outcome = await self.process_project(project)
                summary.processed += 1
                metrics.inc_counter("monitor.projects")
                if outcome == ProjectStatus.COMPLETED:
                    summary.completed += 1
                elif outcome == ProjectStatus.FAILED:
                    summary.failed += 1
            except Exception as e:
                if is_transient_error(e):
                    logger.warning(f"[{project.id}] Transient error, retrying next tick: {e}")
                    self.store.touch_project(project.id)
                else:
                    logger.error(f"[{project.id}] Tick failed: {e}", exc_info=True)
                    metrics.record_error("monitor", type(e).__name__, str(e), project.id)
                    if self._fail_project(project.id, str(e) or "Processing error"):
                        summary.failed += 1
            finally:
                self.lock.release(project.id)

        metrics.record_latency("monitor.tick", (time.time() - started) * 1000)
        metrics.set_gauge("monitor.last_tick_at", time.time())
        logger.info(
            f"Monitor tick done: {summary.processed} processed, {summary.completed} completed, "
            f"{summary.failed} failed"
        )
        return summary

    async def process_project(self, project: Project) -> Optional[ProjectStatus]:
        """Advance one project. Returns COMPLETED/FAILED when this tick made it terminal."""
        if project.status == ProjectStatus.COMPLETED:
            return None

        age = _minutes_since(project.created_at, self.now())
        if age > MAX_WORKFLOW_AGE_MINUTES:
            if project.status in WORKING_STATUSES:
                logger.warning(f"[{project.id}] Exceeded {MAX_WORKFLOW_AGE_MINUTES} minutes since creation")
                return ProjectStatus.FAILED if self._fail_project(project.id, TIMEOUT_MESSAGE, WORKING_STATUSES) else None
            if project.status == ProjectStatus.FAILED:
                return None

        if project.status == ProjectStatus.FAILED and project.refunded_at:
            # Credits went back to the user; the project stays dead.
            return None

        ctx = TickContext(project=project)
        if project.is_segmented:
            return await self._process_segmented(ctx)
        return await self._process_single(ctx)

    # ═════════════════════════════════════════════════════════════════════════
    # Project-level helpers
    # ═════════════════════════════════════════════════════════════════════════

    def _fail_project(
        self, project_id: str, message: str, expected=LIVE_STATUSES, extra: Optional[dict] = None
    ) -> bool:
        written = self.store.update_project_if_status(project_id, expected, {
            "status": ProjectStatus.FAILED.value,
            "error_message": message,
            "last_processed_at": self.now(),
            **(extra or {}),
        })
        if written:
            metrics.inc_counter("projects.failed")
            logger.error(f"[{project_id}] Project failed: {message}")
        return written

    def _load_competitor(self, ctx: TickContext) -> None:
        if not ctx.project.competitor_ad_id:
            return
        ad = self.store.get_competitor_ad(ctx.project.competitor_ad_id)
        if not ad:
            return
        ctx.competitor_file_type = ad.get("file_type")
        if ad.get("analysis_result"):
            timeline = parse_competitor_timeline(ad["analysis_result"], ad.get("video_duration_seconds"))
            ctx.competitor_shots = timeline.shots

    def _write_segment(self, ctx: TickContext, segment: Segment, expected, patch: dict) -> bool:
        if not self.store.update_segment_if_status(segment.id, expected, patch):
            logger.info(
                f"[{ctx.project.id}#{segment.segment_index}] Segment moved on concurrently, skipping write"
            )
            return False
        apply_patch(segment, patch)
        ctx.changed = True
        return True

    # ═════════════════════════════════════════════════════════════════════════
    # Segmented path
    # ═════════════════════════════════════════════════════════════════════════

    async def _process_segmented(self, ctx: TickContext) -> Optional[ProjectStatus]:
        project = ctx.project
        self._load_competitor(ctx)

        ctx.segments = self.store.list_segments(project.id)
        if not ctx.segments:
            logger.warning(f"[{project.id}] Segmented project has no segment rows, attempting recovery")
            ctx.segments = self._recover_segments(ctx)
            if not ctx.segments:
                return ProjectStatus.FAILED if self._fail_project(project.id, RECOVERY_FAILED_MESSAGE) else None

        if project.status == ProjectStatus.FAILED and not self._unfail(ctx):
            return None

        await self._sync_frames(ctx)
        await self._start_videos(ctx)
        await self._poll_videos(ctx)

        if all(s.status == S.FAILED for s in ctx.segments):
            message = ctx.error_message or "All segments failed"
            return ProjectStatus.FAILED if self._fail_project(project.id, message) else None

        self._persist_progress(ctx)

        if all(s.video_url for s in ctx.segments) and not project.fal_merge_task_id:
            self._hand_off_merge(ctx)
            return None

        if (
            project.fal_merge_task_id
            and project.status == ProjectStatus.MERGING_SEGMENTS
            and not project.video_url
        ):
            return await self._poll_merge(ctx)
        return None

    def _recover_segments(self, ctx: TickContext) -> list[Segment]:
        project = ctx.project
        plan = ctx.plan()
        if not plan:
            return []

        self.store.update_project(project.id, {
            "segment_plan": serialize_segment_plan(plan),
            "segment_count": len(plan),
        })
        rows = [
            {
                "project_id": project.id,
                "segment_index": index,
                "status": S.PENDING_FIRST_FRAME.value,
                "prompt": serialize_segment_prompt(prompt),
                "contains_brand": bool(prompt.contains_brand),
                "contains_product": bool(prompt.contains_product),
            }
            for index, prompt in enumerate(plan)
        ]
        segments = self.store.insert_segments(rows)
        if segments:
            logger.info(f"[{project.id}] Recovered {len(segments)} segment rows")
            ctx.changed = True
        return segments

    def _unfail(self, ctx: TickContext) -> bool:
        project = ctx.project
        if not any(s.status != S.FAILED for s in ctx.segments):
            return False
        if project.recovery_count >= MAX_PROJECT_RECOVERIES:
            logger.info(f"[{project.id}] Un-fail limit reached ({project.recovery_count})")
            return False

        # A failed merge leaves every video in place: go back to the merge gate.
        if all(s.video_url for s in ctx.segments):
            status, step = ProjectStatus.AWAITING_MERGE, ProjectStep.AWAITING_MERGE
        else:
            status, step = ProjectStatus.PROCESSING, ProjectStep.GENERATING_SEGMENT_VIDEOS
        written = self.store.update_project_if_status(project.id, [ProjectStatus.FAILED], {
            "status": status.value,
            "current_step": step.value,
            "recovery_count": project.recovery_count + 1,
            "last_processed_at": self.now(),
        })
        if written:
            project.status = status
            project.current_step = step.value
            project.recovery_count += 1
            logger.info(f"[{project.id}] Recovered from failed status into {status.value}")
        return written

    # ── Frames ───────────────────────────────────────────────────────────────

    async def _sync_frames(self, ctx: TickContext) -> None:
        for segment in ctx.segments:
            try:
                await self._sync_segment_frames(ctx, segment)
            except Exception as e:
                self._isolate_segment_error(ctx, segment, e, "frame generation")

    async def _sync_segment_frames(self, ctx: TickContext, segment: Segment) -> None:
        tag = f"[{ctx.project.id}#{segment.segment_index}]"
        prompt = ctx.prompt_for(segment)
        previous = ctx.previous_segment(segment)
        previous_url = previous.first_frame_url if previous else None
        needs_continuation = prompt.is_continuation_from_prev and segment.segment_index > 0
        is_last = segment.segment_index == len(ctx.segments) - 1

        if segment.status == S.AWAITING_PREV_FIRST_FRAME:
            if needs_continuation and not previous_url:
                logger.info(f"{tag} Waiting for previous frame")
                return
            await self._submit_first_frame(ctx, segment, prompt, previous_url if needs_continuation else None)
            return

        if segment.status == S.PENDING_FIRST_FRAME and not segment.first_frame_task_id:
            if needs_continuation and not previous_url:
                self._write_segment(ctx, segment, [S.PENDING_FIRST_FRAME], on_await_previous(segment))
                return
            logger.info(f"{tag} Recovering stuck segment, creating first frame task")
            await self._submit_first_frame(ctx, segment, prompt, previous_url if needs_continuation else None)
            return

        if segment.status == S.GENERATING_FIRST_FRAME and segment.first_frame_task_id and not segment.first_frame_url:
            result = await self.frames.poll(segment.first_frame_task_id)
            if result.state == JobState.SUCCESS and result.url:
                if self._write_segment(ctx, segment, [S.GENERATING_FIRST_FRAME], on_first_frame_ready(segment, result.url)):
                    metrics.inc_counter("segments.frames_ready")
                    logger.info(f"{tag} First frame ready")
            elif result.state == JobState.FAILED:
                message = f"Segment {segment.segment_index + 1} first frame failed"
                if self._write_segment(ctx, segment, [S.GENERATING_FIRST_FRAME], on_first_frame_failed(segment, message)):
                    ctx.error_message = message
                    metrics.inc_counter("segments.failed")

        if previous is not None and segment.first_frame_url:
            patch = closing_frame_sync(previous, segment.first_frame_url)
            if patch:
                self.store.update_segment(previous.id, patch)
                apply_patch(previous, patch)
                ctx.changed = True
                logger.info(f"{tag} Synchronized segment {previous.segment_index} closing frame")

        if (
            is_last
            and segment.closing_frame_task_id
            and not segment.closing_frame_url
            and segment.status not in (S.VIDEO_READY, S.FAILED)
        ):
            result = await self.frames.poll(segment.closing_frame_task_id)
            if result.state == JobState.SUCCESS and result.url:
                patch = {"closing_frame_url": result.url}
                self.store.update_segment(segment.id, patch)
                apply_patch(segment, patch)
                ctx.changed = True
            elif result.state == JobState.FAILED:
                message = f"Segment {segment.segment_index + 1} closing frame failed"
                expected = [S.GENERATING_FIRST_FRAME, S.FIRST_FRAME_READY]
                if segment.status in expected and self._write_segment(
                    ctx, segment, expected, on_first_frame_failed(segment, message)
                ):
                    ctx.error_message = message
                    metrics.inc_counter("segments.failed")

    async def _submit_first_frame(
        self,
        ctx: TickContext,
        segment: Segment,
        prompt: SegmentPrompt,
        continuation_url: Optional[str],
    ) -> None:
        expected = [segment.status]
        task_id = await self.frames.submit(
            prompt,
            segment.segment_index,
            FrameType.FIRST,
            ctx.aspect_ratio,
            ctx.frame_assets,
            continuation_url,
        )
        if not self._write_segment(ctx, segment, expected, on_frame_submitted(segment, task_id)):
            return

        is_last = segment.segment_index == len(ctx.segments) - 1
        if is_last and not segment.closing_frame_task_id:
            closing_task = await self.frames.submit(
                prompt, segment.segment_index, FrameType.CLOSING, ctx.aspect_ratio, ctx.frame_assets, None
            )
            patch = {"closing_frame_task_id": closing_task}
            self.store.update_segment(segment.id, patch)
            apply_patch(segment, patch)

    # ── Videos ───────────────────────────────────────────────────────────────

    async def _submit_video(self, ctx: TickContext, segment: Segment) -> str:
        anchor = resolve_end_anchor(segment, ctx.next_segment(segment))
        return await self.videos.submit(
            ctx.project.video_model,
            ctx.prompt_for(segment),
            segment.segment_index,
            segment.first_frame_url,
            anchor,
            ctx.aspect_ratio,
            ctx.project.language,
            ctx.segment_duration,
            ctx.ad_copy,
        )

    async def _start_videos(self, ctx: TickContext) -> None:
        started = False
        for segment in ctx.segments:
            if segment.video_task_id or segment.video_url or not segment.first_frame_url:
                continue
            if segment.status != S.FIRST_FRAME_READY or not segment.video_generation_approved:
                continue
            try:
                task_id = await self._submit_video(ctx, segment)
                if self._write_segment(ctx, segment, [S.FIRST_FRAME_READY], on_video_submitted(segment, task_id)):
                    started = True
            except Exception as e:
                self._isolate_segment_error(ctx, segment, e, "video generation")

        if started:
            self.store.update_project(ctx.project.id, {
                "current_step": ProjectStep.GENERATING_SEGMENT_VIDEOS.value,
                "progress_percentage": VIDEO_PROGRESS_START,
            })

    async def _poll_videos(self, ctx: TickContext) -> None:
        for segment in ctx.segments:
            if segment.status != S.GENERATING_VIDEO or not segment.video_task_id or segment.video_url:
                continue
            try:
                await self._poll_segment_video(ctx, segment)
            except Exception as e:
                self._isolate_segment_error(ctx, segment, e, "video generation")

    async def _poll_segment_video(self, ctx: TickContext, segment: Segment) -> None:
        tag = f"[{ctx.project.id}#{segment.segment_index}]"
        result = await self.videos.poll(ctx.project.video_model, segment.video_task_id)

        if result.state == JobState.SUCCESS and result.url:
            if self._write_segment(ctx, segment, [S.GENERATING_VIDEO], on_video_ready(segment, result.url)):
                metrics.inc_counter("segments.videos_ready")
                logger.info(f"{tag} Video ready")
            return

        if result.state != JobState.FAILED:
            return

        if result.is_retryable and can_retry_video(segment):
            logger.warning(f"{tag} Retryable video failure ({segment.retry_count + 1}): {result.error_message}")
            task_id = await self._submit_video(ctx, segment)
            if self._write_segment(ctx, segment, [S.GENERATING_VIDEO], on_video_retry(segment, task_id)):
                metrics.inc_counter("segments.video_retries")
            return

        if result.is_retryable:
            logger.error(f"{tag} Max retries exceeded")
        message = sanitize_failure_message(result.error_message)
        if self._write_segment(ctx, segment, [S.GENERATING_VIDEO], on_video_failed(segment, message)):
            ctx.error_message = message
            metrics.inc_counter("segments.failed")
            logger.error(f"{tag} Video failed: {result.error_message}")

    def _isolate_segment_error(self, ctx: TickContext, segment: Segment, error: Exception, phase: str) -> None:
        tag = f"[{ctx.project.id}#{segment.segment_index}]"
        if is_transient_error(error):
            logger.warning(f"{tag} Transient error during {phase}, retrying next tick: {error}")
            return
        logger.error(f"{tag} {phase} error: {error}", exc_info=True)
        metrics.record_error("monitor.segment", type(error).__name__, str(error), ctx.project.id)
        if segment.status in (S.VIDEO_READY, S.FAILED):
            return
        message = f"Segment {segment.segment_index + 1} {phase} failed"
        patch = {"status": S.FAILED.value, "error_message": message}
        self.store.update_segment(segment.id, patch)
        apply_patch(segment, patch)
        ctx.changed = True
        ctx.error_message = message
        metrics.inc_counter("segments.failed")

    # ── Progress / merge ─────────────────────────────────────────────────────

    def _persist_progress(self, ctx: TickContext) -> None:
        project = ctx.project
        if not ctx.changed:
            self.store.touch_project(project.id)
            return

        segments = ctx.segments
        total = len(segments)
        videos_phase = any(s.video_task_id or s.video_url for s in segments)
        if videos_phase:
            progress = video_progress(sum(1 for s in segments if s.video_url), total)
        else:
            progress = frame_progress(sum(1 for s in segments if s.first_frame_url), total)

        patch = {
            "segment_status": build_segment_status(segments, project.merged_video_url),
            "progress_percentage": progress,
            "last_processed_at": self.now(),
        }
        first_frame = segments[0].first_frame_url if segments else None
        if first_frame and not project.cover_image_url:
            patch["cover_image_url"] = first_frame
        if ctx.error_message:
            patch["error_message"] = ctx.error_message

        if project.status in WORKING_STATUSES:
            awaiting_review = any(
                s.status == S.FIRST_FRAME_READY and not s.video_generation_approved for s in segments
            )
            if awaiting_review:
                patch["status"] = ProjectStatus.SEGMENT_FRAMES_READY.value
                patch["current_step"] = ProjectStep.REVIEWING_SEGMENT_FRAMES.value
            else:
                patch["status"] = ProjectStatus.PROCESSING.value
                patch["current_step"] = (
                    ProjectStep.GENERATING_SEGMENT_VIDEOS.value
                    if videos_phase
                    else ProjectStep.GENERATING_SEGMENT_FRAMES.value
                )
            self.store.update_project_if_status(project.id, WORKING_STATUSES, patch)
        else:
            self.store.update_project(project.id, patch)

        logger.info(f"[{project.id}] Progress {progress}%")

    def _hand_off_merge(self, ctx: TickContext) -> None:
        project = ctx.project
        if project.status == ProjectStatus.AWAITING_MERGE:
            return
        written = self.store.update_project_if_status(project.id, WORKING_STATUSES, {
            "status": ProjectStatus.AWAITING_MERGE.value,
            "current_step": ProjectStep.AWAITING_MERGE.value,
            "segment_status": build_segment_status(ctx.segments, project.merged_video_url),
            "progress_percentage": MERGE_PROGRESS,
            "last_processed_at": self.now(),
        })
        if written:
            logger.info(f"[{project.id}] All segment videos ready, awaiting merge confirmation")

    async def _poll_merge(self, ctx: TickContext) -> Optional[ProjectStatus]:
        project = ctx.project
        started_at = project.merge_started_at or project.last_processed_at or project.created_at
        elapsed = _minutes_since(started_at, self.now())
        if elapsed > MERGE_TIMEOUT_MINUTES:
            message = f"Video merging timeout after {elapsed:.1f} minutes. Please retry."
            return ProjectStatus.FAILED if self._fail_project(project.id, message, extra=MERGE_RESET) else None

        result = await self.merger.poll(project.fal_merge_task_id)
        if result.state == MergeState.COMPLETED and result.url:
            written = self.store.update_project_if_status(project.id, [ProjectStatus.MERGING_SEGMENTS], {
                "status": ProjectStatus.COMPLETED.value,
                "current_step": ProjectStep.COMPLETED.value,
                "progress_percentage": 100,
                "video_url": result.url,
                "merged_video_url": result.url,
                "segment_status": build_segment_status(ctx.segments, result.url),
                "last_processed_at": self.now(),
            })
            if written:
                metrics.inc_counter("projects.completed")
                logger.info(f"[{project.id}] Merge completed")
                return ProjectStatus.COMPLETED
            return None
        if result.state == MergeState.FAILED:
            message = f"Video merging failed: {result.error or 'unknown error'}"
            return ProjectStatus.FAILED if self._fail_project(project.id, message, extra=MERGE_RESET) else None
        if result.state == MergeState.NETWORK_ERROR:
            logger.warning(f"[{project.id}] Network error checking merge, will retry: {result.error}")
        return None

    # ═════════════════════════════════════════════════════════════════════════
    # Single-video path
    # ═════════════════════════════════════════════════════════════════════════

    def _single_duration(self, project: Project) -> int:
        if project.video_model == VideoModel.KLING_2_6:
            try:
                return max(5, int(float(project.video_duration or 5)))
            except ValueError:
                return 5
        return segment_duration_for_model(project.video_model)

    async def _submit_single_video(self, ctx: TickContext, cover_url: str) -> str:
        project = ctx.project
        return await self.videos.submit(
            project.video_model,
            ctx.plan()[0],
            0,
            cover_url,
            None,
            ctx.aspect_ratio,
            project.language,
            self._single_duration(project),
            ctx.ad_copy,
        )

    async def _process_single(self, ctx: TickContext) -> Optional[ProjectStatus]:
        project = ctx.project
        if project.status != ProjectStatus.PROCESSING:
            return None

        idle = _minutes_since(project.last_processed_at, self.now())
        if idle > SINGLE_VIDEO_TIMEOUT_MINUTES:
            message = f"Task timeout: no progress for {SINGLE_VIDEO_TIMEOUT_MINUTES} minutes"
            return ProjectStatus.FAILED if self._fail_project(project.id, message) else None

        if project.current_step == ProjectStep.GENERATING_COVER and project.cover_task_id and not project.cover_image_url:
            result = await self.frames.poll(project.cover_task_id)
            if result.state == JobState.SUCCESS and result.url:
                task_id = await self._submit_single_video(ctx, result.url)
                self.store.update_project_if_status(project.id, [ProjectStatus.PROCESSING], {
                    "cover_image_url": result.url,
                    "video_task_id": task_id,
                    "current_step": ProjectStep.GENERATING_VIDEO.value,
                    "progress_percentage": VIDEO_PROGRESS_START,
                    "last_processed_at": self.now(),
                })
                logger.info(f"[{project.id}] Cover ready, video started: {task_id}")
            elif result.state == JobState.FAILED:
                return ProjectStatus.FAILED if self._fail_project(project.id, "Cover image generation failed") else None
            return None

        if project.current_step == ProjectStep.GENERATING_VIDEO and project.video_task_id and not project.video_url:
            result = await self.videos.poll(project.video_model, project.video_task_id)
            if result.state == JobState.SUCCESS and result.url:
                written = self.store.update_project_if_status(project.id, [ProjectStatus.PROCESSING], {
                    "status": ProjectStatus.COMPLETED.value,
                    "current_step": ProjectStep.COMPLETED.value,
                    "progress_percentage": 100,
                    "video_url": result.url,
                    "last_processed_at": self.now(),
                })
                if written:
                    metrics.inc_counter("projects.completed")
                    return ProjectStatus.COMPLETED
                return None

            if result.state == JobState.FAILED:
                if result.is_retryable and project.retry_count < MAX_PROJECT_RETRIES:
                    attempt = project.retry_count + 1
                    logger.warning(f"[{project.id}] Retryable video failure ({attempt}/{MAX_PROJECT_RETRIES})")
                    task_id = await self._submit_single_video(ctx, project.cover_image_url)
                    self.store.update_project_if_status(project.id, [ProjectStatus.PROCESSING], {
                        "video_task_id": task_id,
                        "retry_count": attempt,
                        "error_message": f"Retrying after server error (attempt {attempt}/{MAX_PROJECT_RETRIES})",
                        "last_processed_at": self.now(),
                    })
                    metrics.inc_counter("segments.video_retries")
                    return None
                message = f"Video generation failed: {sanitize_failure_message(result.error_message)}"
                return ProjectStatus.FAILED if self._fail_project(project.id, message) else None
        return None
