"""
Talking-Head Animator — D-ID talks.

Lip-syncs the customer's portrait to the synthesized voice-over.  Unlike
the background stage there is no fallback here: if the talk never finishes
the order fails.
"""

import asyncio
import base64
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from .errors import ProviderError
from .polling import fixed_backoff, poll_until

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DID_API_BASE = "https://api.d-id.com"

MAX_POLL_ATTEMPTS = 60
POLL_INTERVAL = 3  # seconds, while the talk is still rendering
RETRY_INTERVAL = 2  # seconds, after a failed status request
TERMINAL_STATUSES = ("done", "error", "rejected")


class Talk(BaseModel):
    id: str
    status: str = "created"
    result_url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict) -> "Talk":
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("description") or error.get("kind") or str(error)
        return cls(
            id=data["id"],
            status=data.get("status") or "created",
            result_url=data.get("result_url"),
            error=str(error) if error else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DIDAnimator:
    def __init__(
        self,
        api_key: str,
        base_url: str = DID_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._sleep = sleep

    @property
    def headers(self) -> dict:
        token = base64.b64encode(f"{self.api_key}:".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }

    async def submit(self, image_url: str, audio_url: str) -> Talk:
        payload = {
            "script": {"type": "audio", "audio_url": audio_url},
            "source_url": image_url,
            "config": {"result_format": "mp4"},
        }
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            resp = await client.post(f"{self.base_url}/talks", headers=self.headers, json=payload)

        if not resp.is_success:
            raise ProviderError("D-ID", resp.status_code, resp.text)

        data = resp.json()
        if not data.get("id"):
            raise ProviderError("D-ID", resp.status_code, f"no talk id in response: {data}")

        talk = Talk.from_response(data)
        logger.info(f"D-ID talk submitted: id={talk.id}")
        return talk

    async def poll(self, talk: Talk) -> Talk:
        """Wait for done/error/rejected. Raises PollTimeoutError when the budget runs out."""

        async def fetch() -> Talk:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/talks/{talk.id}", headers=self.headers)
            if not resp.is_success:
                raise ProviderError("D-ID", resp.status_code, resp.text)
            try:
                data = resp.json()
                polled = Talk.from_response({**data, "id": talk.id})
            except (ValueError, TypeError) as e:
                # TypeError: body was JSON but not an object
                raise ProviderError("D-ID", resp.status_code, f"malformed talk body: {e}") from e
            logger.info(f"D-ID poll: id={talk.id} status={polled.status}")
            return polled

        return await poll_until(
            fetch,
            is_terminal=lambda t: t.is_terminal,
            max_attempts=MAX_POLL_ATTEMPTS,
            backoff=fixed_backoff(after_success=POLL_INTERVAL, after_failure=RETRY_INTERVAL),
            raise_on_exhaustion=True,
            sleep=self._sleep,
            label=f"D-ID talk {talk.id}",
        )
