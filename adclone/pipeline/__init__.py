"""
Ad Clone Pipeline

Segmented generation orchestrator for cloning competitor ads:
  Planning   — competitor timeline / storyboard → per-segment prompts
  Frames     — first and closing keyframes per segment
  Videos     — one video job per segment, capped retries
  Monitor    — periodic reconciliation tick, merge handoff
  Projects   — admission credit saga and manual review operations
"""

from .monitor import ProjectMonitor
from .project_service import ProjectService
from .routes import monitor_router, project_router
from .models import ProjectStatus, SegmentStatus

__all__ = [
    "ProjectMonitor",
    "ProjectService",
    "project_router",
    "monitor_router",
    "ProjectStatus",
    "SegmentStatus",
]
