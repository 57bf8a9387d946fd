"""
Gemini integration for storyboard generation.

- Text/JSON generation: Google Gemini via the generateContent REST endpoint
- Optional product image is sent inline so the storyboard matches the real product
"""

import os
import json
import base64
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
STORYBOARD_MODEL = os.environ.get("STORYBOARD_MODEL", "gemini-2.0-flash")


def is_configured() -> bool:
    return bool(GEMINI_API_KEY)


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent"


def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


async def _download_image_part(url: str) -> dict:
    """Download an image and wrap it as an inlineData part."""
    async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
    return {
        "inlineData": {
            "mimeType": _guess_mime(url),
            "data": base64.b64encode(resp.content).decode("utf-8"),
        }
    }


def _parse_json_response(text: str) -> dict:
    """Parse JSON from a Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            return json.loads(json_block.strip())
        raise ValueError(f"Gemini returned invalid JSON: {text[:200]}")


async def _generate_content(model: str, parts: list, config: dict | None = None) -> dict:
    """Call Gemini generateContent REST endpoint."""
    if not GEMINI_API_KEY:
        raise RuntimeError("GEMINI_API_KEY not set")

    body: dict = {
        "contents": [{"parts": parts}],
    }
    if config:
        body["generationConfig"] = config

    async with httpx.AsyncClient(timeout=60) as client:
        resp = await client.post(
            _api_url(model),
            params={"key": GEMINI_API_KEY},
            json=body,
        )

    if resp.status_code != 200:
        raise RuntimeError(f"Gemini API error {resp.status_code}: {resp.text[:500]}")

    return resp.json()


async def generate_json(prompt: str, image_url: Optional[str] = None) -> dict:
    """
    Ask Gemini for a JSON document.

    Returns the parsed object. A top-level array is unwrapped to its first
    element since the storyboard schema is a single object.
    """
    parts: list = []
    if image_url:
        parts.append(await _download_image_part(image_url))
    parts.append({"text": prompt})

    result = await _generate_content(
        STORYBOARD_MODEL,
        parts,
        {"temperature": 0.7, "responseMimeType": "application/json"},
    )

    candidates = result.get("candidates", [])
    if not candidates:
        raise ValueError("Gemini returned no candidates")

    text = candidates[0].get("content", {}).get("parts", [{}])[0].get("text", "")
    parsed = _parse_json_response(text)
    if isinstance(parsed, list):
        logger.warning("Gemini returned an array instead of an object, taking first element")
        parsed = parsed[0] if parsed else {}
    return parsed
