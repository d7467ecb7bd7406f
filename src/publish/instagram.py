"""
Instagram Graph API container sequences.

Docs: https://developers.facebook.com/docs/instagram-api/guides/content-publishing

Instagram calls use the operator's user token, not the page token.

Flow (single image):
  1. POST /{ig_user_id}/media              image_url + caption     → container_id
  2. POST /{ig_user_id}/media_publish      creation_id             → media_id

Flow (carousel, up to 10 images):
  1. POST /{ig_user_id}/media for each image (is_carousel_item=true)   → child_ids
  2. POST /{ig_user_id}/media with CAROUSEL + children=[child_ids]     → parent_id
  3. POST /{ig_user_id}/media_publish with creation_id=parent_id       → media_id

Flow (story):
  1. POST /{ig_user_id}/media              image_url + media_type=STORIES
  2. POST /{ig_user_id}/media_publish

Step 2/3 is skipped for scheduled posts; the container id is stored instead
and published later by the runner.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Optional

from src.publish.graph import GraphClient
from src.publish.models import InstagramMediaType, Placement
from src.publish.schedule import to_graph_timestamp

logger = logging.getLogger(__name__)

_CAROUSEL_MAX = 10


class InstagramError(Exception):
    """Raised when a placement cannot be published with the given inputs."""


class InstagramClient:
    """
    Container operations for one Instagram Business account.

    Usage::

        ig = InstagramClient(graph, "1784…", user_token)
        container_id, media_type = await ig.create_container(Placement.FEED, urls, "Caption")
        media_id = await ig.publish_container(container_id)
    """

    def __init__(self, graph: GraphClient, account_id: str, access_token: str) -> None:
        self.graph = graph
        self.account_id = account_id
        self.token = access_token

    async def _post(self, path: str, params: dict[str, Any]) -> dict:
        return await self.graph.post(f"{self.account_id}/{path}", params, self.token)

    # ------------------------------------------------------------------
    # Container creation
    # ------------------------------------------------------------------

    async def create_image_container(
        self,
        image_url: str,
        caption: str = "",
        *,
        is_carousel_item: bool = False,
        scheduled_at: Optional[dt.datetime] = None,
    ) -> str:
        """
        Create a single-image media container.

        Returns the container_id (not yet published).
        """
        payload: dict[str, Any] = {"image_url": image_url}
        if is_carousel_item:
            payload["is_carousel_item"] = True
        else:
            if caption:
                payload["caption"] = caption
            if scheduled_at is not None:
                payload["scheduled_publish_time"] = to_graph_timestamp(scheduled_at)

        body = await self._post("media", payload)
        container_id: str = body["id"]
        logger.info("Created image container: %s", container_id)
        return container_id

    async def create_carousel_container(
        self,
        image_urls: list[str],
        caption: str = "",
        *,
        scheduled_at: Optional[dt.datetime] = None,
    ) -> str:
        """
        Create the child containers concurrently, then the carousel parent.

        Returns the parent container_id.
        """
        if len(image_urls) < 2:
            raise InstagramError("Carousel requires at least two images.")
        if len(image_urls) > _CAROUSEL_MAX:
            raise InstagramError(
                f"Instagram carousels support at most {_CAROUSEL_MAX} images "
                f"(got {len(image_urls)})."
            )

        children = await asyncio.gather(
            *(self.create_image_container(url, is_carousel_item=True) for url in image_urls)
        )
        payload: dict[str, Any] = {
            "media_type": InstagramMediaType.CAROUSEL.value,
            "children": ",".join(children),
        }
        if caption:
            payload["caption"] = caption
        if scheduled_at is not None:
            payload["scheduled_publish_time"] = to_graph_timestamp(scheduled_at)

        body = await self._post("media", payload)
        container_id: str = body["id"]
        logger.info("Created carousel container: %s (%d children)", container_id, len(children))
        return container_id

    async def create_story_container(self, image_url: str) -> str:
        body = await self._post(
            "media",
            {"image_url": image_url, "media_type": InstagramMediaType.STORIES.value},
        )
        container_id: str = body["id"]
        logger.info("Created story container: %s", container_id)
        return container_id

    async def create_container(
        self,
        placement: Placement,
        image_urls: list[str],
        caption: str = "",
        *,
        scheduled_at: Optional[dt.datetime] = None,
    ) -> tuple[str, InstagramMediaType]:
        """Create the container matching *placement* and the number of images."""
        if not image_urls:
            raise InstagramError("Instagram posts require at least one image.")

        if placement == Placement.STORY:
            return await self.create_story_container(image_urls[0]), InstagramMediaType.STORIES
        if len(image_urls) == 1:
            container_id = await self.create_image_container(
                image_urls[0], caption, scheduled_at=scheduled_at
            )
            return container_id, InstagramMediaType.IMAGE
        container_id = await self.create_carousel_container(
            image_urls, caption, scheduled_at=scheduled_at
        )
        return container_id, InstagramMediaType.CAROUSEL

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish_container(self, container_id: str) -> str:
        """
        Publish a previously created media container.

        Returns the media_id (the published post's ID).
        """
        body = await self._post("media_publish", {"creation_id": container_id})
        media_id: str = body["id"]
        logger.info("Published container %s → media %s", container_id, media_id)
        return media_id
