"""
S3/R2 storage helpers for the pipeline.

Final videos and thumbnails are re-hosted under:
  {user_id}/ambient/{job_id}/{kind}/{filename}

Uses boto3 against the R2 S3 endpoint and httpx for downloads.
"""

import os
import logging
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")


# ── Helpers ──────────────────────────────────────────────────────────────────

def build_media_path(user_id: Optional[str], job_id: str, kind: str, filename: str) -> str:
    """CDN key for a generated asset. `kind` is e.g. 'final', 'thumbnail'."""
    owner = user_id or "anonymous"
    return f"{owner}/ambient/{job_id}/{kind}/{filename}"


async def download_bytes(url: str, timeout: float = 120) -> bytes:
    """Download a file from a public URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


def r2_configured() -> bool:
    return bool(R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_PUBLIC_URL)


class R2ObjectStore:
    """ObjectStore backed by Cloudflare R2."""

    def __init__(self, client=None, bucket: str = R2_BUCKET_NAME, public_url: str = R2_PUBLIC_URL):
        self._client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    @property
    def s3(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._client

    def store_object(self, path: str, data: bytes, mime_type: str) -> str:
        """Upload bytes and return the permanent public URL."""
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=mime_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={path}: {e}")
            raise

        public_url = f"{self.public_url}/{path}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url
