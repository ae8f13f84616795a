"""
AI gateway client — text, image, clip, speech, music and sound-effect
generation behind one HTTP API.

Text goes through the OpenAI-compatible chat endpoint. Media calls submit a
task and poll it until it finishes.

Automatically retries on 429 / 5xx with exponential backoff.
"""

import os
import json
import random
import asyncio
import logging
from typing import Optional

import httpx

from .pipeline.errors import GenerationError
from .pipeline.providers import AudioResult, MediaResult, TextResult

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
AI_GATEWAY_URL = os.environ.get("AI_GATEWAY_URL", "https://api.kie.ai/api/v1")
AI_GATEWAY_API_KEY = os.environ.get("AI_GATEWAY_API_KEY", "")

DEFAULT_TEXT_MODEL = os.environ.get("DEFAULT_TEXT_MODEL", "gemini-2.5-flash")

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 5
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8, 16, 32
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

TASK_POLL_INTERVAL = 5  # seconds
TASK_MAX_POLL_ATTEMPTS = 120  # 10 minutes max

# Map our internal model IDs to gateway model names
MODEL_API_NAMES = {
    "gemini-flash": "gemini-2.5-flash",
    "gemini-pro": "gemini-2.5-pro",
    "nano-banana": "google/nano-banana",
    "nano-banana-pro": "google/nano-banana-pro",
    "seedance-1.0-pro": "bytedance/seedance-v1-pro",
    "kling-2.6-pro": "kling/v2-6-pro",
    "veo-3.1-fast": "veo3_fast",
}

SPEECH_MODEL = "elevenlabs/text-to-speech"
MUSIC_MODEL = "elevenlabs/music"
SFX_MODEL = "mmaudio/video-to-audio"


class AIGatewayClient:
    """Implements every generator contract the pipeline needs."""

    def __init__(
        self,
        base_url: str = AI_GATEWAY_URL,
        api_key: str = AI_GATEWAY_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: float = TASK_POLL_INTERVAL,
        base_delay: float = BASE_DELAY,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._transport = transport
        self.poll_interval = poll_interval
        self.base_delay = base_delay

    # ── HTTP ─────────────────────────────────────────────────────────────

    async def _request_with_backoff(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

        Uses: base_delay * 2^attempt + random jitter
        Max retries: 5 → delays of ~2s, 4s, 8s, 16s, 32s
        """
        url = f"{self.base_url}{path}"
        headers = kwargs.pop("headers", {})
        headers.setdefault("Authorization", f"Bearer {self.api_key}")

        async with httpx.AsyncClient(timeout=120, transport=self._transport) as client:
            for attempt in range(MAX_RETRIES + 1):
                try:
                    response = await client.request(method, url, headers=headers, **kwargs)
                except httpx.TransportError as e:
                    if attempt >= MAX_RETRIES:
                        raise
                    delay = self.base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                    logger.warning(
                        f"Gateway request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                        f"— retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue

                if response.status_code not in RETRYABLE_STATUS_CODES:
                    response.raise_for_status()
                    return response

                if attempt >= MAX_RETRIES:
                    response.raise_for_status()

                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = int(retry_after)
                else:
                    delay = self.base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

                logger.warning(
                    f"Gateway {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
                    f"— retrying in {delay:.1f}s (url={url})"
                )
                await asyncio.sleep(delay)

        raise GenerationError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")

    async def _run_task(self, model: str, payload: dict) -> dict:
        """Submit a media task and poll until it succeeds. Returns the task record."""
        resp = await self._request_with_backoff(
            "POST", "/jobs/createTask", json={"model": model, "input": payload},
        )
        data = resp.json().get("data") or {}
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise GenerationError(f"Gateway submit failed — no task id: {resp.text[:300]}")

        logger.info(f"Gateway task submitted: model={model} task_id={task_id}")

        for attempt in range(TASK_MAX_POLL_ATTEMPTS):
            await asyncio.sleep(self.poll_interval)
            status_resp = await self._request_with_backoff(
                "GET", "/jobs/recordInfo", params={"taskId": task_id},
            )
            record = status_resp.json().get("data") or {}
            state = str(record.get("state", "")).lower()

            if state == "success":
                result = record.get("resultJson") or {}
                if isinstance(result, str):
                    result = json.loads(result)
                result["cost"] = float(record.get("costCredits") or record.get("cost") or 0)
                return result
            if state in ("fail", "failed", "error"):
                raise GenerationError(f"Task {task_id} failed: {record.get('failMsg', 'unknown error')}")

        raise GenerationError(
            f"Task {task_id} timed out after {TASK_MAX_POLL_ATTEMPTS * self.poll_interval:.0f}s"
        )

    @staticmethod
    def _first_url(result: dict) -> str:
        urls = result.get("resultUrls") or []
        url = urls[0] if urls else result.get("url")
        if not url:
            raise GenerationError(f"Task finished without a result URL: {result}")
        return url

    # ── Text ─────────────────────────────────────────────────────────────

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> TextResult:
        body = {
            "model": MODEL_API_NAMES.get(model or "", model or DEFAULT_TEXT_MODEL),
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if output_schema is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "output", "schema": output_schema},
            }

        resp = await self._request_with_backoff("POST", "/chat/completions", json=body)
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise GenerationError("Text model returned no choices")
        content = choices[0].get("message", {}).get("content", "")

        output = content
        if output_schema is not None:
            try:
                output = json.loads(content)
            except json.JSONDecodeError as e:
                raise GenerationError(f"Text model returned invalid JSON: {e}") from e

        cost = float((data.get("usage") or {}).get("cost", 0) or 0)
        return TextResult(output=output, cost=cost)

    # ── Images & clips ───────────────────────────────────────────────────

    async def generate_image(
        self,
        prompt: str,
        reference_images: Optional[list[str]] = None,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> MediaResult:
        payload = {"prompt": prompt, "aspect_ratio": aspect_ratio}
        if reference_images:
            payload["image_urls"] = reference_images
        if resolution:
            payload["resolution"] = resolution
        result = await self._run_task(MODEL_API_NAMES.get(model or "nano-banana", model), payload)
        return MediaResult(url=self._first_url(result), cost=result["cost"])

    async def generate_clip(
        self,
        start_frame: str,
        end_frame: Optional[str],
        prompt: str,
        duration: int,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> MediaResult:
        payload = {
            "prompt": prompt,
            "image_url": start_frame,
            "duration": str(duration),
            "aspect_ratio": aspect_ratio,
        }
        if end_frame:
            payload["end_image_url"] = end_frame
        if resolution:
            payload["resolution"] = resolution
        result = await self._run_task(MODEL_API_NAMES.get(model or "seedance-1.0-pro", model), payload)
        return MediaResult(
            url=self._first_url(result),
            cost=result["cost"],
            duration=float(result.get("duration") or duration),
        )

    # ── Audio ────────────────────────────────────────────────────────────

    async def generate_speech(self, script: str, voice_id: str, language: str = "en") -> AudioResult:
        result = await self._run_task(SPEECH_MODEL, {
            "text": script, "voice": voice_id, "language_code": language,
        })
        return AudioResult(
            url=self._first_url(result),
            duration=float(result.get("duration") or 0),
            cost=result["cost"],
        )

    async def generate_music(self, prompt: str, duration: float) -> AudioResult:
        result = await self._run_task(MUSIC_MODEL, {
            "prompt": prompt, "music_length_ms": int(duration * 1000),
        })
        return AudioResult(
            url=self._first_url(result),
            duration=float(result.get("duration") or duration),
            cost=result["cost"],
        )

    async def generate_sound_effect(self, video_url: str, prompt: str, duration: float) -> AudioResult:
        result = await self._run_task(SFX_MODEL, {
            "video_url": video_url, "prompt": prompt, "duration": duration,
        })
        return AudioResult(
            url=self._first_url(result),
            duration=float(result.get("duration") or duration),
            cost=result["cost"],
        )
