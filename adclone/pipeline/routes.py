"""
FastAPI routes for the ad-clone pipeline.

Project Endpoints:
  POST  /projects/start                                   — Admit project (reserve credits)
  GET   /projects/{id}                                    — Project state + segment snapshot
  POST  /projects/{id}/segments/{index}/generate-video    — Approve frame, start its video
  PATCH /projects/{id}/segments/{index}                   — Edit / regenerate one segment
  POST  /projects/{id}/merge                              — Start the merge

Monitor Endpoints:
  POST  /monitor/tick                                     — Reconcile one project or a batch
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from .credits import InsufficientCreditsError
from .models import (
    MonitorTickRequest,
    ProjectResponse,
    ProjectStartRequest,
    ProjectStartResponse,
    SegmentRegenerateRequest,
    TickSummary,
)
from .monitor import ProjectMonitor
from .project_service import ConflictError, InvalidStateError, ProjectService
from .store import ProjectNotFoundError
from ..tick_lock import TickLock

logger = logging.getLogger(__name__)

# Singleton instances, created on first request
_service: Optional[ProjectService] = None
_monitor: Optional[ProjectMonitor] = None


def get_service() -> ProjectService:
    global _service
    if _service is None:
        _service = ProjectService()
    return _service


def get_monitor() -> ProjectMonitor:
    global _monitor
    if _monitor is None:
        _monitor = ProjectMonitor(lock=TickLock.from_env())
    return _monitor


def _raise_http(e: Exception, action: str):
    if isinstance(e, InsufficientCreditsError):
        raise HTTPException(status_code=402, detail=str(e))
    if isinstance(e, ProjectNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidStateError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConflictError):
        raise HTTPException(status_code=409, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail=f"{action} failed")


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


@project_router.post("/start", response_model=ProjectStartResponse)
async def start_project(request: ProjectStartRequest):
    """
    Reserve credits → create project → plan in the background.

    Errors:
      - 402: Insufficient credits
      - 500: Admission failed
    """
    try:
        return await get_service().admit_project(request)
    except Exception as e:
        _raise_http(e, "Project start")


@project_router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str):
    try:
        return get_service().get_project_state(project_id)
    except Exception as e:
        _raise_http(e, "Project lookup")


@project_router.post("/{project_id}/segments/{segment_index}/generate-video")
async def generate_segment_video(project_id: str, segment_index: int):
    """
    Approve a reviewed first frame and start the segment's video.

    Errors:
      - 400: First frame not ready
      - 404: Project or segment not found
      - 409: Video already in progress or done
    """
    if segment_index < 0:
        raise HTTPException(status_code=400, detail="Invalid segment index")
    try:
        return await get_service().approve_segment_video(project_id, segment_index)
    except Exception as e:
        _raise_http(e, "Segment video start")


@project_router.patch("/{project_id}/segments/{segment_index}")
async def update_segment(project_id: str, segment_index: int, request: SegmentRegenerateRequest):
    """
    Edit a segment prompt and optionally regenerate its photo, video or both.

    Errors:
      - 400: Not editable / first frame missing
      - 404: Project or segment not found
      - 409: Targeted job still generating
    """
    if segment_index < 0:
        raise HTTPException(status_code=400, detail="Invalid segment index")
    try:
        return await get_service().regenerate_segment(project_id, segment_index, request)
    except Exception as e:
        _raise_http(e, "Segment update")


@project_router.post("/{project_id}/merge")
async def merge_project(project_id: str):
    try:
        return await get_service().start_merge(project_id)
    except Exception as e:
        _raise_http(e, "Merge start")


# ═════════════════════════════════════════════════════════════════════════════
# Monitor Router
# ═════════════════════════════════════════════════════════════════════════════

monitor_router = APIRouter(prefix="/monitor", tags=["monitor"])


@monitor_router.post("/tick", response_model=TickSummary)
async def monitor_tick(request: Optional[MonitorTickRequest] = None):
    """Reconcile one project (when project_id is given) or the next batch."""
    try:
        return await get_monitor().tick(request.project_id if request else None)
    except Exception as e:
        _raise_http(e, "Monitor tick")
