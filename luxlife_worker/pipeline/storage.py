"""
R2 storage helpers for the order pipeline.

Object keys:
  uploads/{uid}/{order_id}/source.{ext}   — portrait uploaded by the web app
  videos/{uid}/{order_id}/voice.mp3       — synthesized voice-over
  videos/{uid}/{order_id}/final.mp4       — composed deliverable

Uses boto3 against the R2 S3 endpoint and httpx for plain downloads.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from luxlife_worker.config import Settings, get_settings

logger = logging.getLogger(__name__)

SIGNED_URL_TTL = 60 * 60  # 1 hour, longer than animation polling
DOWNLOAD_CHUNK_SIZE = 1024 * 64


# ── Helpers ──────────────────────────────────────────────────────────────────

def order_video_key(uid: str, order_id: str, filename: str) -> str:
    return f"videos/{uid}/{order_id}/{filename}"


def order_upload_key(uid: str, order_id: str, filename: str) -> str:
    return f"uploads/{uid}/{order_id}/{filename}"


async def download_to_file(url: str, destination: Path, timeout: float = 120) -> Path:
    """Stream a remote file to `destination`, creating parent directories."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        async with client.stream("GET", url) as resp:
            if resp.status_code >= 400:
                raise RuntimeError(f"failed_to_download {url} status={resp.status_code}")
            with open(destination, "wb") as fh:
                async for chunk in resp.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    fh.write(chunk)
    return destination


class R2Storage:
    """Object storage on Cloudflare R2 (S3 API)."""

    def __init__(self, settings: Optional[Settings] = None, s3_client=None):
        self._settings = settings or get_settings()
        self._s3 = s3_client

    @property
    def s3(self):
        if self._s3 is None:
            s = self._settings
            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{s.r2_account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=s.r2_access_key_id,
                aws_secret_access_key=s.r2_secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    @property
    def bucket(self) -> str:
        return self._settings.r2_bucket_name

    def token_url(self, key: str, token: str) -> str:
        """Permanent download URL carrying the object's download token."""
        base = self._settings.r2_public_url.rstrip("/")
        return f"{base}/{quote(key)}?token={token}"

    # ── Sync operations (run in a worker thread) ─────────────────────────

    def _exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def _upload(self, local_path: Path, key: str, content_type: str) -> str:
        token = str(uuid.uuid4())
        self.s3.upload_file(
            str(local_path),
            self.bucket,
            key,
            ExtraArgs={
                "ContentType": content_type,
                "Metadata": {"download-token": token},
            },
        )
        url = self.token_url(key, token)
        logger.info(f"Uploaded to R2: {key}")
        return url

    def _signed_url(self, key: str, expires_in: int) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    # ── Public API ───────────────────────────────────────────────────────

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._exists, key)

    async def upload_file(self, local_path: Path, key: str, content_type: str) -> str:
        """Upload a local file; returns the permanent token URL."""
        try:
            return await asyncio.to_thread(self._upload, local_path, key, content_type)
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

    async def signed_url(self, key: str, expires_in: int = SIGNED_URL_TTL) -> str:
        """Short-lived read URL for handing private objects to providers."""
        return await asyncio.to_thread(self._signed_url, key, expires_in)
