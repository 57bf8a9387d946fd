"""
Segment merge via fal.ai ffmpeg-api (queue REST API).

fal.ai queue protocol:
  POST /fal-ai/ffmpeg-api/merge-videos                → { request_id }
  GET  /fal-ai/ffmpeg-api/requests/{id}/status        → { status: IN_QUEUE|IN_PROGRESS|COMPLETED|FAILED }
  GET  /fal-ai/ffmpeg-api/requests/{id}               → { video: { url } }

Submission happens once (the manual merge operation); polling happens on
every tick while the project is merging_segments.
"""

import os
import asyncio
import logging

import httpx

from .models import MergePoll, MergeState

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
FAL_KEY = os.environ.get("FAL_KEY", "")
FAL_API_BASE = "https://queue.fal.run"
MERGE_ENDPOINT = "fal-ai/ffmpeg-api/merge-videos"
MERGE_APP = "fal-ai/ffmpeg-api"

NETWORK_RETRIES = 3
NETWORK_RETRY_DELAY = 2.0

RESOLUTIONS = {"16:9": "landscape_16_9", "9:16": "portrait_16_9"}


def _get_headers() -> dict:
    if not FAL_KEY:
        raise RuntimeError("FAL_KEY not set")
    return {"Authorization": f"Key {FAL_KEY}", "Content-Type": "application/json"}


def parse_merge_status(status_data: dict) -> MergePoll:
    status = str(status_data.get("status") or "").upper()
    if status in ("FAILED", "ERROR"):
        return MergePoll(state=MergeState.FAILED, error=status_data.get("error") or "Merge failed")
    return MergePoll(state=MergeState.PENDING)


class MergeService:
    async def submit(self, video_urls: list[str], aspect_ratio: str = "16:9") -> str:
        """Queue a merge job and return its request id."""
        payload = {
            "video_urls": video_urls,
            "target_fps": 30,
            "resolution": RESOLUTIONS.get(aspect_ratio, RESOLUTIONS["16:9"]),
        }
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(f"{FAL_API_BASE}/{MERGE_ENDPOINT}", json=payload, headers=_get_headers())
        resp.raise_for_status()
        request_id = resp.json().get("request_id")
        if not request_id:
            raise RuntimeError(f"No request_id in fal.ai response: {resp.text[:200]}")
        logger.info(f"[Merge] Queued {len(video_urls)} segments: request_id={request_id}")
        return request_id

    async def poll(self, request_id: str) -> MergePoll:
        """
        Check a merge job. Network failures are retried NETWORK_RETRIES times;
        if they persist the result is NETWORK_ERROR and the caller leaves the
        project untouched.
        """
        headers = _get_headers()
        status_url = f"{FAL_API_BASE}/{MERGE_APP}/requests/{request_id}/status"
        result_url = f"{FAL_API_BASE}/{MERGE_APP}/requests/{request_id}"

        for attempt in range(NETWORK_RETRIES + 1):
            try:
                async with httpx.AsyncClient(timeout=30) as client:
                    status_resp = await client.get(status_url, headers=headers)
                    status_resp.raise_for_status()
                    status_data = status_resp.json()

                    if str(status_data.get("status") or "").upper() != "COMPLETED":
                        return parse_merge_status(status_data)

                    result_resp = await client.get(result_url, headers=headers)
                    result_resp.raise_for_status()
                    url = ((result_resp.json() or {}).get("video") or {}).get("url")
                if not url:
                    return MergePoll(state=MergeState.FAILED, error="Merge completed without a video URL")
                return MergePoll(state=MergeState.COMPLETED, url=url)
            except httpx.TransportError as e:
                if attempt < NETWORK_RETRIES:
                    logger.warning(
                        f"[Merge] Network error on attempt {attempt + 1}/{NETWORK_RETRIES + 1}: {e} "
                        f"- retrying in {NETWORK_RETRY_DELAY:.0f}s"
                    )
                    await asyncio.sleep(NETWORK_RETRY_DELAY)
                    continue
                logger.warning(f"[Merge] Network error persists after {NETWORK_RETRIES} retries: {e}")
                return MergePoll(state=MergeState.NETWORK_ERROR, error=f"Network connectivity issue: {e}")

        return MergePoll(state=MergeState.NETWORK_ERROR, error="Network connectivity issue")
