"""
Facebook Page publishing sequences.

Flow (text):          POST /{page}/feed    message
Flow (single photo):  POST /{page}/photos  url + caption
Flow (multi photo):   POST /{page}/photos  url + published=false   (× N, concurrent)
                      POST /{page}/feed    message + attached_media=[{media_fbid}…]
Flow (story):         POST /{page}/photos  url + published=false
                      POST /{page}/photo_stories  photo_id

Scheduling is native: feed and photo calls carry ``published=false`` and
``scheduled_publish_time`` and Facebook holds the post until then.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Optional

from src.publish.graph import GraphClient
from src.publish.models import Placement
from src.publish.schedule import to_graph_timestamp

logger = logging.getLogger(__name__)


class FacebookPublishError(Exception):
    """Raised when a placement cannot be published with the given inputs."""


class FacebookPublisher:
    """Publishes to one Facebook Page with its page access token."""

    def __init__(self, graph: GraphClient, page_id: str, page_token: str) -> None:
        self.graph = graph
        self.page_id = page_id
        self.token = page_token

    @staticmethod
    def _schedule_params(scheduled_at: Optional[dt.datetime]) -> dict[str, Any]:
        if scheduled_at is None:
            return {}
        return {
            "published": False,
            "scheduled_publish_time": to_graph_timestamp(scheduled_at),
        }

    # ------------------------------------------------------------------
    # Single calls
    # ------------------------------------------------------------------

    async def post_text(self, message: str, scheduled_at: Optional[dt.datetime] = None) -> str:
        params = {"message": message, **self._schedule_params(scheduled_at)}
        body = await self.graph.post(f"{self.page_id}/feed", params, self.token)
        return body["id"]

    async def post_photo(
        self,
        image_url: str,
        caption: str = "",
        scheduled_at: Optional[dt.datetime] = None,
    ) -> str:
        params: dict[str, Any] = {"url": image_url, **self._schedule_params(scheduled_at)}
        if caption:
            params["caption"] = caption
        body = await self.graph.post(f"{self.page_id}/photos", params, self.token)
        return body.get("post_id") or body["id"]

    async def upload_unpublished_photo(self, image_url: str) -> str:
        body = await self.graph.post(
            f"{self.page_id}/photos",
            {"url": image_url, "published": False},
            self.token,
        )
        return body["id"]

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    async def post_multi_photo(
        self,
        image_urls: list[str],
        message: str = "",
        scheduled_at: Optional[dt.datetime] = None,
    ) -> str:
        """Unpublished photos first, then one feed post attaching them in order."""
        media_ids = await asyncio.gather(
            *(self.upload_unpublished_photo(url) for url in image_urls)
        )
        params: dict[str, Any] = {
            "attached_media": [{"media_fbid": media_id} for media_id in media_ids],
            **self._schedule_params(scheduled_at),
        }
        if message:
            params["message"] = message
        body = await self.graph.post(f"{self.page_id}/feed", params, self.token)
        logger.info("Page %s: multi-photo post %s (%d photos)", self.page_id, body["id"], len(media_ids))
        return body["id"]

    async def post_story(self, image_url: str) -> str:
        photo_id = await self.upload_unpublished_photo(image_url)
        body = await self.graph.post(
            f"{self.page_id}/photo_stories",
            {"photo_id": photo_id},
            self.token,
        )
        return body.get("post_id") or body.get("id") or photo_id

    async def publish(
        self,
        placement: Placement,
        caption: str,
        image_urls: list[str],
        scheduled_at: Optional[dt.datetime] = None,
    ) -> str:
        """Run the call sequence matching *placement* and the number of images."""
        if placement == Placement.STORY:
            if not image_urls:
                raise FacebookPublishError("Facebook stories require at least one image.")
            if scheduled_at is not None:
                raise FacebookPublishError("Facebook stories cannot be scheduled.")
            post_id = await self.post_story(image_urls[0])
        elif not image_urls:
            post_id = await self.post_text(caption, scheduled_at)
        elif len(image_urls) == 1:
            post_id = await self.post_photo(image_urls[0], caption, scheduled_at)
        else:
            post_id = await self.post_multi_photo(image_urls, caption, scheduled_at)

        logger.info(
            "Page %s: %s %s%s",
            self.page_id,
            placement.value,
            post_id,
            " (scheduled)" if scheduled_at else "",
        )
        return post_id
