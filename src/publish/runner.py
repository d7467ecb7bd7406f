"""
Publishes scheduled Instagram containers once their instant has passed.

Instagram has no native scheduling for API-created containers, so the
dispatcher stores the container id and this runner calls ``media_publish``
later (from ``pagepost publish run-due``, typically under cron).

Containers expire after 24 hours. When publishing a stored container fails,
the runner rebuilds it once from the stored URLs and caption.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

from src.publish.graph import GraphAPIError, GraphClient
from src.publish.instagram import InstagramClient
from src.publish.models import (
    InstagramMediaType,
    Placement,
    ScheduledInstagramPost,
    ScheduleStatus,
)
from src.publish.schedule import utcnow
from src.publish.store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    post_id: str
    account_name: str
    status: ScheduleStatus
    media_id: Optional[str] = None
    error: Optional[str] = None
    rebuilt: bool = False


class ScheduledPostRunner:
    """
    Usage::

        with open_schedule_store() as store:
            async with GraphClient() as graph:
                outcomes = await ScheduledPostRunner(graph, store, token).run_due()
    """

    def __init__(self, graph: GraphClient, store: ScheduleStore, access_token: str) -> None:
        self.graph = graph
        self.store = store
        self.token = access_token

    async def run_due(
        self,
        now: Optional[dt.datetime] = None,
        dry_run: bool = False,
    ) -> list[RunOutcome]:
        """Publish every due record. Failures are recorded per record."""
        due = await asyncio.to_thread(self.store.list_due, now or utcnow())
        if not due:
            logger.info("No scheduled Instagram posts due")
            return []

        outcomes: list[RunOutcome] = []
        for post in due:
            if dry_run:
                logger.info("[dry-run] Would publish %s (%s)", post.id, post.account_name)
                outcomes.append(RunOutcome(post.id, post.account_name, post.status))
                continue
            if not await asyncio.to_thread(self.store.claim, post.id):
                logger.info("Scheduled post %s already claimed; skipping", post.id)
                continue
            outcomes.append(await self._publish(post))
        return outcomes

    async def _publish(self, post: ScheduledInstagramPost) -> RunOutcome:
        client = InstagramClient(self.graph, post.account_id, self.token)
        rebuilt = False
        creation_id = post.creation_id
        try:
            try:
                media_id = await client.publish_container(creation_id)
            except GraphAPIError as exc:
                if not post.media_urls:
                    raise
                logger.warning(
                    "Container %s could not be published (%s); rebuilding", creation_id, exc
                )
                placement = (
                    Placement.STORY
                    if post.media_type == InstagramMediaType.STORIES
                    else Placement.FEED
                )
                creation_id, _ = await client.create_container(
                    placement, post.media_urls, post.caption
                )
                rebuilt = True
                media_id = await client.publish_container(creation_id)
        except Exception as exc:
            logger.error("Scheduled post %s failed: %s", post.id, exc)
            await asyncio.to_thread(
                self.store.update_status,
                post.id,
                ScheduleStatus.FAILED,
                error=str(exc),
                creation_id=creation_id if rebuilt else None,
            )
            return RunOutcome(
                post.id, post.account_name, ScheduleStatus.FAILED, error=str(exc), rebuilt=rebuilt
            )

        await asyncio.to_thread(
            self.store.update_status,
            post.id,
            ScheduleStatus.PUBLISHED,
            media_id=media_id,
            creation_id=creation_id if rebuilt else None,
        )
        logger.info("Published scheduled post %s → media %s", post.id, media_id)
        return RunOutcome(
            post.id, post.account_name, ScheduleStatus.PUBLISHED, media_id=media_id, rebuilt=rebuilt
        )

    def cancel(self, post_id: str) -> bool:
        return self.store.cancel(post_id)
