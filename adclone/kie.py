"""
Kie.ai client for keyframe images and segment videos.

Two API families are used:
  - jobs/createTask + jobs/recordInfo: nano-banana-pro images, grok and kling video
  - veo/generate + veo/record-info: veo3 and veo3_fast video
"""

import os
import json
import random
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = os.environ.get("KIE_API_BASE", "https://api.kie.ai/api/v1")
REQUEST_TIMEOUT = 30

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class KieError(RuntimeError):
    """Kie.ai rejected a request or returned an unusable body."""


async def _request_with_backoff(method: str, path: str, **kwargs) -> dict:
    """
    Make an HTTP request with exponential backoff on 429/5xx and transport errors.

    Transport errors that survive every retry are re-raised unchanged so the
    monitor can treat them as transient.
    """
    if not KIE_API_KEY:
        raise KieError("KIE_API_KEY not set")

    url = f"{KIE_API_BASE}/{path}"
    headers = {"Authorization": f"Bearer {KIE_API_KEY}", "Content-Type": "application/json"}

    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                if attempt >= MAX_RETRIES:
                    raise
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"Kie.ai request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                    f"- retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = int(retry_after)
                else:
                    delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"Kie.ai {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
                    f"- retrying in {delay:.1f}s (path={path})"
                )
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return response.json()

    raise KieError(f"Request to {path} failed after {MAX_RETRIES + 1} attempts")


def _task_id_from(body: Any, label: str) -> str:
    if not isinstance(body, dict) or body.get("code") != 200:
        message = body.get("msg") if isinstance(body, dict) else None
        raise KieError(f"{label} rejected: {message or body}")
    task_id = (body.get("data") or {}).get("taskId")
    if not task_id:
        raise KieError(f"{label} returned no taskId")
    return task_id


def _record_data(body: Any, label: str) -> dict:
    if not isinstance(body, dict) or body.get("code") != 200:
        message = body.get("msg") if isinstance(body, dict) else None
        raise KieError(f"{label} failed: {message or body}")
    return body.get("data") or {}


async def create_task(model: str, input: dict) -> str:
    """Submit a jobs/createTask request and return its taskId."""
    body = await _request_with_backoff("POST", "jobs/createTask", json={"model": model, "input": input})
    task_id = _task_id_from(body, f"createTask({model})")
    logger.info(f"Kie.ai task created: model={model}, taskId={task_id}")
    return task_id


async def veo_generate(payload: dict) -> str:
    """Submit a veo/generate request and return its taskId."""
    body = await _request_with_backoff("POST", "veo/generate", json=payload)
    task_id = _task_id_from(body, f"veo/generate({payload.get('model')})")
    logger.info(f"Kie.ai veo task created: model={payload.get('model')}, taskId={task_id}")
    return task_id


async def get_job_record(task_id: str) -> dict:
    body = await _request_with_backoff("GET", "jobs/recordInfo", params={"taskId": task_id})
    return _record_data(body, "jobs/recordInfo")


async def get_veo_record(task_id: str) -> dict:
    body = await _request_with_backoff("GET", "veo/record-info", params={"taskId": task_id})
    return _record_data(body, "veo/record-info")


def extract_result_url(record: dict) -> Optional[str]:
    """
    Find the first result URL in a record. Kie.ai puts it in resultJson
    (a JSON string on the jobs API), in response.resultUrls (veo), or at the
    top level depending on the model.
    """
    result_json = record.get("resultJson")
    if isinstance(result_json, str) and result_json:
        try:
            result_json = json.loads(result_json)
        except json.JSONDecodeError:
            result_json = None
    candidates = [
        (result_json or {}).get("resultUrls") if isinstance(result_json, dict) else None,
        (record.get("response") or {}).get("resultUrls") if isinstance(record.get("response"), dict) else None,
        record.get("resultUrls"),
    ]
    for urls in candidates:
        if isinstance(urls, list) and urls and isinstance(urls[0], str):
            return urls[0]
        if isinstance(urls, str) and urls:
            return urls
    return None


def clamp_prompt(prompt: str, limit: int = 5000) -> str:
    if len(prompt) <= limit:
        return prompt
    return prompt[: limit - 3].rstrip() + "..."
