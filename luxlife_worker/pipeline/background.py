"""
Background Generator — Replicate predictions.

Generates the cinematic backdrop behind the animated portrait.  This stage
is allowed to fail: any problem downgrades the order to an animation-only
delivery and is recorded in `pipeline.generation.fallback`.
"""

import asyncio
import logging
import re
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import ProviderError
from .models import BackgroundJobRecord, FallbackReason, FallbackRecord, utcnow
from .polling import linear_backoff, poll_until

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

REPLICATE_API_BASE = "https://api.replicate.com/v1"

MAX_POLL_ATTEMPTS = 30  # delays 1s, 2s, ... capped at 5s
TERMINAL_STATUSES = ("succeeded", "failed", "canceled")

NEGATIVE_PROMPT = "blurry, distorted, low quality, text, watermark, signature"

VIDEO_OUTPUT = re.compile(r"\.(mp4|mov|webm|mkv)$", re.IGNORECASE)


class BackgroundJob(BaseModel):
    id: Optional[str] = None
    status: str = "starting"
    output: Optional[list[Any]] = None
    error: Optional[str] = None
    urls: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict) -> "BackgroundJob":
        output = data.get("output")
        if output is not None and not isinstance(output, list):
            output = [output]
        error = data.get("error")
        urls = data.get("urls") if isinstance(data.get("urls"), dict) else {}
        return cls(
            id=data.get("id"),
            status=data.get("status") or "starting",
            output=output or None,
            error=str(error) if error else None,
            urls={k: v for k, v in urls.items() if isinstance(v, str)},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self, model_version: str) -> BackgroundJobRecord:
        return BackgroundJobRecord(
            prediction_id=self.id,
            model_version=model_version,
            status=self.status,
            output=self.output,
            error=self.error,
            get_url=self.urls.get("get"),
            cancel_url=self.urls.get("cancel"),
            updated_at=utcnow(),
        )


def video_output(job: BackgroundJob) -> Optional[str]:
    """First output, only if it is a URL that looks like a video file."""
    if not job.output:
        return None
    first = job.output[0]
    if not isinstance(first, str):
        return None
    return first if VIDEO_OUTPUT.search(first) else None


def _parse_job(resp: httpx.Response) -> BackgroundJob:
    try:
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return BackgroundJob.from_response(data)
    except ValueError as e:
        # JSONDecodeError and pydantic ValidationError both subclass ValueError
        raise ProviderError("Replicate", resp.status_code, f"malformed prediction body: {e}") from e


class ReplicateClient:
    def __init__(
        self,
        api_token: str,
        model_version: str,
        base_url: str = REPLICATE_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.api_token = api_token
        self.model_version = model_version
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._sleep = sleep

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def submit(self, prompt: str) -> BackgroundJob:
        payload = {
            "version": self.model_version,
            "input": {
                "prompt": prompt,
                "negative_prompt": NEGATIVE_PROMPT,
                "width": 1024,
                "height": 576,
                "num_outputs": 1,
                "num_inference_steps": 30,
                "scheduler": "K_EULER",
                "guidance_scale": 7.5,
            },
        }
        async with self._client(timeout=30) as client:
            resp = await client.post(f"{self.base_url}/predictions", headers=self.headers, json=payload)

        if not resp.is_success:
            raise ProviderError("Replicate", resp.status_code, resp.text)

        job = _parse_job(resp)
        logger.info(f"Replicate prediction submitted: id={job.id} status={job.status}")
        return job

    async def poll(self, job: BackgroundJob) -> BackgroundJob:
        """Wait for a terminal status; returns the last seen job if it never gets there."""
        get_url = job.urls.get("get")
        if not get_url:
            raise ProviderError("Replicate", None, "replicate_missing_get_url")

        async def fetch() -> BackgroundJob:
            async with self._client(timeout=15) as client:
                resp = await client.get(get_url, headers=self.headers)
            if not resp.is_success:
                raise ProviderError("Replicate", resp.status_code, resp.text)
            polled = _parse_job(resp)
            logger.info(f"Replicate poll: id={polled.id} status={polled.status}")
            return polled

        return await poll_until(
            fetch,
            is_terminal=lambda j: j.is_terminal,
            max_attempts=MAX_POLL_ATTEMPTS,
            backoff=linear_backoff(start=1, step=1, cap=5),
            initial=job,
            sleep=self._sleep,
            label=f"Replicate {job.id}",
        )


class BackgroundResult(BaseModel):
    video_url: Optional[str] = None
    record: BackgroundJobRecord = Field(default_factory=BackgroundJobRecord)
    fallback: FallbackRecord = Field(default_factory=FallbackRecord)


async def generate_background(client: ReplicateClient, prompt: str, order_id: str = "") -> BackgroundResult:
    """
    Submit and poll one prediction, classifying every failure into a fallback.

    Never raises: any failure leaves the order to continue animation-only.
    """
    result = BackgroundResult(record=BackgroundJobRecord(model_version=client.model_version))
    job: Optional[BackgroundJob] = None

    try:
        job = await client.submit(prompt)
        result.record = job.to_record(client.model_version)
        job = await client.poll(job)
        result.record = job.to_record(client.model_version)

        if job.status != "succeeded" or not job.output:
            raise ProviderError("Replicate", None, job.error or "Replicate did not return a successful result.")
    except Exception as e:
        insufficient = isinstance(e, ProviderError) and e.status_code == 402
        reason = (
            FallbackReason.REPLICATE_INSUFFICIENT_CREDITS
            if insufficient
            else FallbackReason.REPLICATE_GENERATION_FAILED
        )
        logger.warning(f"[{order_id}] Background generation failed, falling back: {e}")
        result.record.error = result.record.error or str(e)
        result.fallback = FallbackRecord.engaged(reason, details=str(e))
        return result

    url = video_output(job)
    if url is None:
        logger.warning(f"[{order_id}] Background output is not a video: {job.output}")
        result.fallback = FallbackRecord.engaged(
            FallbackReason.REPLICATE_RETURNED_IMAGE, details=", ".join(str(item) for item in job.output or [])
        )
        return result

    logger.info(f"[{order_id}] Background video ready: {url}")
    result.video_url = url
    return result
