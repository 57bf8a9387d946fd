"""
Persistent store for clone projects and their segments.

All access goes through the Supabase service role (RLS bypass). Status-guarded
updates (`update_*_if_status`) are the optimistic concurrency primitive: the
write only lands if the row is still in one of the expected statuses.
"""

import os
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from supabase import create_client, Client

from .models import CompetitorTimeline, Project, Segment
from .timeline import parse_competitor_timeline

logger = logging.getLogger(__name__)

PROJECTS_TABLE = "clone_projects"
SEGMENTS_TABLE = "clone_segments"
COMPETITOR_ADS_TABLE = "competitor_ads"


class ProjectNotFoundError(LookupError):
    pass


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return now_utc().isoformat()


def _to_row(patch: dict) -> dict:
    """Make a patch JSON-safe for PostgREST."""
    row = {}
    for key, value in patch.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        row[key] = value
    return row


def _statuses(expected: Iterable[Any]) -> list[str]:
    return [s.value if isinstance(s, Enum) else s for s in expected]


class ProjectStore:
    """Supabase-backed rows for projects, segments and competitor ads."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = _get_service_client()
        return self._client

    # ── Projects ─────────────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Optional[Project]:
        result = self.sb.table(PROJECTS_TABLE).select("*").eq("id", project_id).limit(1).execute()
        rows = result.data or []
        return Project(**rows[0]) if rows else None

    def list_projects_for_tick(
        self,
        statuses: Iterable[Any],
        limit: int,
        failed_since: Optional[datetime] = None,
    ) -> list[Project]:
        """
        Projects in `statuses`, least recently processed first. When
        `failed_since` is given, failed projects created after it are
        included too (candidates for un-fail).
        """
        active = ",".join(_statuses(statuses))
        query = self.sb.table(PROJECTS_TABLE).select("*")
        if failed_since is not None:
            query = query.or_(f"status.in.({active}),and(status.eq.failed,created_at.gte.{failed_since.isoformat()})")
        else:
            query = query.in_("status", _statuses(statuses))
        result = query.order("last_processed_at", desc=False).limit(limit).execute()
        return [Project(**row) for row in result.data or []]

    def insert_project(self, row: dict) -> Project:
        payload = _to_row({**row, "created_at": row.get("created_at") or _now_iso(), "last_processed_at": _now_iso()})
        result = self.sb.table(PROJECTS_TABLE).insert(payload).execute()
        rows = result.data or []
        if not rows:
            raise RuntimeError("Project insert returned no row")
        return Project(**rows[0])

    def update_project(self, project_id: str, patch: dict) -> None:
        payload = _to_row({**patch, "updated_at": _now_iso()})
        self.sb.table(PROJECTS_TABLE).update(payload).eq("id", project_id).execute()

    def update_project_if_status(self, project_id: str, expected: Iterable[Any], patch: dict) -> bool:
        payload = _to_row({**patch, "updated_at": _now_iso()})
        result = (
            self.sb.table(PROJECTS_TABLE)
            .update(payload)
            .eq("id", project_id)
            .in_("status", _statuses(expected))
            .execute()
        )
        return bool(result.data)

    def touch_project(self, project_id: str) -> None:
        self.update_project(project_id, {"last_processed_at": _now_iso()})

    # ── Segments ─────────────────────────────────────────────────────────────

    def list_segments(self, project_id: str) -> list[Segment]:
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .select("*")
            .eq("project_id", project_id)
            .order("segment_index", desc=False)
            .execute()
        )
        return [Segment(**row) for row in result.data or []]

    def get_segment(self, project_id: str, segment_index: int) -> Optional[Segment]:
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .select("*")
            .eq("project_id", project_id)
            .eq("segment_index", segment_index)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return Segment(**rows[0]) if rows else None

    def insert_segments(self, rows: list[dict]) -> list[Segment]:
        if not rows:
            return []
        result = self.sb.table(SEGMENTS_TABLE).insert([_to_row(row) for row in rows]).execute()
        return sorted((Segment(**row) for row in result.data or []), key=lambda s: s.segment_index)

    def delete_segments(self, project_id: str) -> None:
        self.sb.table(SEGMENTS_TABLE).delete().eq("project_id", project_id).execute()

    def update_segment(self, segment_id: str, patch: dict) -> None:
        payload = _to_row({**patch, "updated_at": _now_iso()})
        self.sb.table(SEGMENTS_TABLE).update(payload).eq("id", segment_id).execute()

    def update_segment_if_status(self, segment_id: str, expected: Iterable[Any], patch: dict) -> bool:
        payload = _to_row({**patch, "updated_at": _now_iso()})
        result = (
            self.sb.table(SEGMENTS_TABLE)
            .update(payload)
            .eq("id", segment_id)
            .in_("status", _statuses(expected))
            .execute()
        )
        return bool(result.data)

    # ── Competitor timeline (read-only) ──────────────────────────────────────

    def get_competitor_ad(self, competitor_ad_id: str) -> Optional[dict]:
        result = (
            self.sb.table(COMPETITOR_ADS_TABLE)
            .select("file_type, analysis_result, video_duration_seconds")
            .eq("id", competitor_ad_id)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return rows[0] if rows else None

    def get_competitor_timeline(self, competitor_ad_id: Optional[str]) -> Optional[CompetitorTimeline]:
        if not competitor_ad_id:
            return None
        ad = self.get_competitor_ad(competitor_ad_id)
        if not ad:
            logger.warning(f"Competitor ad {competitor_ad_id} not found")
            return None
        return parse_competitor_timeline(ad.get("analysis_result"), ad.get("video_duration_seconds"))
