"""
Late social publisher — one post fanned out to YouTube, TikTok, Instagram
and Facebook.

Connected accounts are looked up per platform on every publish; a platform
without a connected account is left out of the post.
"""

import os
import logging
from typing import Optional

import httpx

from .pipeline.errors import PublishError
from .pipeline.providers import PublishReceipt

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
LATE_API_KEY = os.environ.get("LATE_API_KEY", "")
LATE_API_BASE = os.environ.get("LATE_API_BASE", "https://getlate.dev/api/v1")

TIKTOK_SETTINGS = {
    "privacy_level": "PUBLIC_TO_EVERYONE",
    "allow_comment": True,
    "allow_duet": True,
    "allow_stitch": True,
    "content_preview_confirmed": True,
    "express_consent_given": True,
    "video_made_with_ai": True,
}


def build_platform_entry(platform: str, account_id: str, metadata: dict) -> dict:
    entry = {"platform": platform, "accountId": account_id}
    meta = metadata.get(platform)
    if not meta:
        return entry

    if platform == "youtube":
        entry["platformSpecificData"] = {
            "title": meta.get("title", ""),
            "visibility": meta.get("visibility", "public"),
        }
        entry["customContent"] = meta.get("description", "")
    else:
        hashtags = " ".join(meta.get("hashtags") or [])
        sep = " " if platform == "tiktok" else "\n\n"
        entry["customContent"] = f"{meta.get('caption', '')}{sep}{hashtags}".strip()
    return entry


def build_post(
    video_url: str,
    accounts: dict[str, str],
    metadata: dict,
    scheduled_for: Optional[str],
) -> dict:
    """Late `POST /posts` body. `accounts` maps platform → account id."""
    youtube = metadata.get("youtube") or {}
    main_content = youtube.get("description") or next(
        (m.get("caption") for p, m in metadata.items() if p != "youtube" and m.get("caption")),
        "",
    )
    hashtags: list[str] = []
    for platform in ("tiktok", "instagram", "facebook"):
        for tag in (metadata.get(platform) or {}).get("hashtags") or []:
            if tag not in hashtags:
                hashtags.append(tag)

    post = {
        "content": main_content,
        "mediaItems": [{"url": video_url, "type": "video"}],
        "platforms": [
            build_platform_entry(platform, account_id, metadata)
            for platform, account_id in accounts.items()
        ],
        "publishNow": scheduled_for is None,
        "hashtags": hashtags,
    }
    if youtube.get("title"):
        post["title"] = youtube["title"]
    if youtube.get("tags"):
        post["tags"] = youtube["tags"]
    if scheduled_for:
        post["scheduledFor"] = scheduled_for
    if "tiktok" in accounts:
        post["tiktokSettings"] = TIKTOK_SETTINGS
    return post


class LatePublisher:

    def __init__(
        self,
        api_key: str = LATE_API_KEY,
        base_url: str = LATE_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def _accounts(self, client: httpx.AsyncClient) -> dict[str, str]:
        resp = await client.get(f"{self.base_url}/accounts", headers=self._headers())
        resp.raise_for_status()
        accounts = {}
        for account in resp.json().get("accounts", []):
            platform = account.get("platform")
            if platform and platform not in accounts and account.get("isActive", True):
                accounts[platform] = account.get("_id") or account.get("id")
        return accounts

    async def publish(
        self,
        video_url: str,
        platforms: list[str],
        metadata: dict,
        scheduled_for: Optional[str] = None,
    ) -> PublishReceipt:
        async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
            connected = await self._accounts(client)
            accounts = {p: connected[p] for p in platforms if p in connected}
            if not accounts:
                raise PublishError(f"No connected accounts for {', '.join(platforms)}")

            missing = set(platforms) - set(accounts)
            if missing:
                logger.warning(f"Late: skipping platforms without accounts: {sorted(missing)}")

            resp = await client.post(
                f"{self.base_url}/posts",
                headers=self._headers(),
                json=build_post(video_url, accounts, metadata, scheduled_for),
            )

        if resp.status_code >= 400:
            raise PublishError(f"Late rejected post ({resp.status_code}): {resp.text[:300]}")

        post = resp.json().get("post") or {}
        logger.info(f"Late post created: {post.get('_id')} ({post.get('status')})")
        return PublishReceipt(
            post_id=post.get("_id", ""),
            status=post.get("status", "pending"),
            platforms=list(accounts),
        )
