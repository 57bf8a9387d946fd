"""
Shared in-memory collaborators for the pipeline tests.

FakeStore mirrors the ProjectStore surface (including the status-guarded
updates); the directors and merge service record submissions and answer
polls from a per-task result table.
"""

import itertools
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import pytest

from adclone import metrics
from adclone.pipeline.credits import InsufficientCreditsError
from adclone.pipeline.models import (
    FramePoll,
    JobState,
    MergePoll,
    MergeState,
    Project,
    ProjectStatus,
    Segment,
    VideoPoll,
)
from adclone.pipeline.monitor import ProjectMonitor
from adclone.pipeline.timeline import parse_competitor_timeline
from adclone.tick_lock import TickLock

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _plain(patch: dict) -> dict:
    return {key: value.value if isinstance(value, Enum) else value for key, value in patch.items()}


def _values(statuses) -> set:
    return {s.value if isinstance(s, Enum) else s for s in statuses}


class FakeStore:
    def __init__(self):
        self.projects: dict[str, Project] = {}
        self.segments: dict[str, Segment] = {}
        self.competitor_ads: dict[str, dict] = {}
        self.segment_writes: list[tuple[str, dict]] = []
        self.touched: list[str] = []
        self._ids = itertools.count(1)
        self.fail_insert = False

    # ── Projects ─────────────────────────────────────────────────────────────

    def add_project(self, **fields) -> Project:
        fields.setdefault("id", f"proj-{next(self._ids)}")
        fields.setdefault("user_id", "user-1")
        fields.setdefault("created_at", NOW - timedelta(minutes=5))
        fields.setdefault("last_processed_at", NOW - timedelta(minutes=1))
        project = Project(**fields)
        self.projects[project.id] = project
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    def list_projects_for_tick(self, statuses, limit, failed_since=None) -> list[Project]:
        wanted = _values(statuses)
        rows = []
        for project in self.projects.values():
            if project.status.value in wanted:
                rows.append(project)
            elif (
                failed_since is not None
                and project.status == ProjectStatus.FAILED
                and project.created_at
                and project.created_at >= failed_since
            ):
                rows.append(project)
        rows.sort(key=lambda p: p.last_processed_at or NOW)
        return [p.model_copy(deep=True) for p in rows[:limit]]

    def insert_project(self, row: dict) -> Project:
        if self.fail_insert:
            raise RuntimeError("insert failed")
        project = Project(**{"created_at": NOW, "last_processed_at": NOW, **_plain(row)})
        self.projects[project.id] = project
        return project.model_copy(deep=True)

    def update_project(self, project_id: str, patch: dict) -> None:
        current = self.projects[project_id]
        self.projects[project_id] = Project(**{**current.model_dump(), **_plain(patch)})

    def update_project_if_status(self, project_id: str, expected, patch: dict) -> bool:
        current = self.projects.get(project_id)
        if current is None or current.status.value not in _values(expected):
            return False
        self.update_project(project_id, patch)
        return True

    def touch_project(self, project_id: str) -> None:
        self.touched.append(project_id)
        self.update_project(project_id, {"last_processed_at": NOW})

    # ── Segments ─────────────────────────────────────────────────────────────

    def add_segment(self, project_id: str, segment_index: int, **fields) -> Segment:
        segment = Segment(id=f"{project_id}-seg-{segment_index}", project_id=project_id,
                          segment_index=segment_index, **fields)
        self.segments[segment.id] = segment
        return segment

    def list_segments(self, project_id: str) -> list[Segment]:
        rows = [s for s in self.segments.values() if s.project_id == project_id]
        return [s.model_copy(deep=True) for s in sorted(rows, key=lambda s: s.segment_index)]

    def get_segment(self, project_id: str, segment_index: int) -> Optional[Segment]:
        for segment in self.list_segments(project_id):
            if segment.segment_index == segment_index:
                return segment
        return None

    def segment(self, project_id: str, segment_index: int) -> Segment:
        return self.get_segment(project_id, segment_index)

    def insert_segments(self, rows: list[dict]) -> list[Segment]:
        created = []
        for row in rows:
            row = _plain(row)
            created.append(self.add_segment(row.pop("project_id"), row.pop("segment_index"), **row))
        return [s.model_copy(deep=True) for s in created]

    def delete_segments(self, project_id: str) -> None:
        for key in [k for k, s in self.segments.items() if s.project_id == project_id]:
            del self.segments[key]

    def update_segment(self, segment_id: str, patch: dict) -> None:
        self.segment_writes.append((segment_id, dict(patch)))
        current = self.segments[segment_id]
        self.segments[segment_id] = Segment(**{**current.model_dump(), **_plain(patch)})

    def update_segment_if_status(self, segment_id: str, expected, patch: dict) -> bool:
        current = self.segments.get(segment_id)
        if current is None or current.status.value not in _values(expected):
            return False
        self.update_segment(segment_id, patch)
        return True

    # ── Competitor ads ───────────────────────────────────────────────────────

    def get_competitor_ad(self, competitor_ad_id: str) -> Optional[dict]:
        return self.competitor_ads.get(competitor_ad_id)

    def get_competitor_timeline(self, competitor_ad_id):
        ad = self.competitor_ads.get(competitor_ad_id) if competitor_ad_id else None
        if not ad:
            return None
        return parse_competitor_timeline(ad.get("analysis_result"), ad.get("video_duration_seconds"))


class FakeLedger:
    def __init__(self, balances: Optional[dict] = None):
        self.balances = dict(balances or {"user-1": 100})
        self.transactions: list[dict] = []
        self.refunds: list[int] = []
        self.fail_refund = False

    def get_balance(self, user_id: str) -> int:
        if user_id not in self.balances:
            raise LookupError(f"No credit profile for user {user_id}")
        return self.balances[user_id]

    def check_balance(self, user_id: str, required: int) -> int:
        balance = self.get_balance(user_id)
        if balance < required:
            raise InsufficientCreditsError(required, balance)
        return balance

    def deduct(self, user_id: str, amount: int) -> int:
        self.balances[user_id] = self.check_balance(user_id, amount) - amount
        return self.balances[user_id]

    def refund(self, user_id: str, amount: int) -> int:
        if self.fail_refund:
            raise RuntimeError("ledger unavailable")
        self.refunds.append(amount)
        self.balances[user_id] = self.get_balance(user_id) + amount
        return self.balances[user_id]

    def record_transaction(self, user_id, type, amount, description, project_id=None, balance_after=None):
        self.transactions.append({
            "user_id": user_id,
            "type": type,
            "amount": -abs(amount) if type == "usage" else abs(amount),
            "project_id": project_id,
            "balance_after": balance_after,
        })


class FakeFrames:
    def __init__(self):
        self.submissions: list[dict] = []
        self.results: dict[str, FramePoll] = {}
        self.errors: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    async def submit(self, prompt, segment_index, frame_type, aspect_ratio, assets=None, continuation_url=None):
        task_id = f"frame-{next(self._ids)}"
        self.submissions.append({
            "task_id": task_id,
            "segment_index": segment_index,
            "frame_type": frame_type,
            "assets": assets,
            "continuation_url": continuation_url,
        })
        return task_id

    async def poll(self, task_id):
        if task_id in self.errors:
            raise self.errors[task_id]
        return self.results.get(task_id, FramePoll(state=JobState.PENDING))

    def succeed(self, task_id, url=None):
        self.results[task_id] = FramePoll(state=JobState.SUCCESS, url=url or f"https://img.test/{task_id}.png")

    def fail(self, task_id):
        self.results[task_id] = FramePoll(state=JobState.FAILED)


class FakeVideos:
    def __init__(self):
        self.submissions: list[dict] = []
        self.results: dict[str, VideoPoll] = {}
        self.default = VideoPoll(state=JobState.PENDING)
        self._ids = itertools.count(1)

    async def submit(self, model, prompt, segment_index, first_frame_url, closing_frame_url,
                     aspect_ratio="16:9", language="en", segment_duration=None, ad_copy=None):
        task_id = f"video-{next(self._ids)}"
        self.submissions.append({
            "task_id": task_id,
            "segment_index": segment_index,
            "first_frame_url": first_frame_url,
            "closing_frame_url": closing_frame_url,
            "ad_copy": ad_copy,
        })
        return task_id

    async def poll(self, model, task_id):
        return self.results.get(task_id, self.default)

    def succeed(self, task_id, url=None):
        self.results[task_id] = VideoPoll(state=JobState.SUCCESS, url=url or f"https://cdn.test/{task_id}.mp4")


class FakeMerger:
    def __init__(self):
        self.submissions: list[list[str]] = []
        self.result = MergePoll(state=MergeState.PENDING)

    async def submit(self, video_urls, aspect_ratio="16:9"):
        self.submissions.append(list(video_urls))
        return f"merge-{len(self.submissions)}"

    async def poll(self, request_id):
        return self.result


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def frames():
    return FakeFrames()


@pytest.fixture
def videos():
    return FakeVideos()


@pytest.fixture
def merger():
    return FakeMerger()


@pytest.fixture
def monitor(store, frames, videos, merger):
    return ProjectMonitor(store, frames, videos, merger, lock=TickLock(), now=lambda: NOW)
