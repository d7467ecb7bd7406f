"""
Multi-platform publish dispatch.

One submission fans out to every selected account, and within an account to
each platform that has a placement:

  validate ─► upload images (concurrent, order kept) ─► per account (concurrent)
                                                           ├─ facebook  (isolated)
                                                           └─ instagram (isolated)

A failure on one platform of one account becomes ``{success: false, error}``
for that slot only. Only ``BadRequest`` (before any network call) and
``UploadError`` (before any Graph call) abort the whole submission.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, Optional

from config.settings import Settings
from src.publish.facebook import FacebookPublisher
from src.publish.graph import GraphClient
from src.publish.instagram import InstagramClient, InstagramError
from src.publish.media import CloudinaryUploader
from src.publish.models import (
    Account,
    AccountResult,
    Placement,
    PlatformPlacements,
    PlatformResult,
    ScheduledInstagramPost,
    Submission,
)
from src.publish.schedule import utcnow
from src.publish.store import ScheduleStore, open_schedule_store

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], AbstractContextManager[ScheduleStore]]


class _LazyStore:
    """
    Opens the schedule store on first use and keeps it for the request.

    Store backends are blocking (pymongo, sqlite), so every call runs in a
    worker thread. Concurrent account branches share one store; the lock
    serialises access to it.
    """

    def __init__(self, factory: StoreFactory) -> None:
        self._factory = factory
        self._cm: Optional[AbstractContextManager[ScheduleStore]] = None
        self._store: Optional[ScheduleStore] = None
        self._lock = asyncio.Lock()

    def _open(self) -> ScheduleStore:
        cm = self._factory()
        self._store = cm.__enter__()
        self._cm = cm
        return self._store

    async def call(self, method: str, *args: Any) -> Any:
        async with self._lock:
            store = self._store
            if store is None:
                store = await asyncio.to_thread(self._open)
            return await asyncio.to_thread(getattr(store, method), *args)

    async def close(self) -> None:
        if self._cm is not None:
            cm, self._cm, self._store = self._cm, None, None
            await asyncio.to_thread(cm.__exit__, None, None, None)


class PublishDispatcher:
    """
    Publishes a ``Submission`` to Facebook Pages and Instagram accounts.

    Usage::

        async with GraphClient() as graph, CloudinaryUploader() as uploader:
            dispatcher = PublishDispatcher(graph, uploader)
            results = await dispatcher.dispatch(submission)
    """

    def __init__(
        self,
        graph: GraphClient,
        uploader: CloudinaryUploader,
        store_factory: Optional[StoreFactory] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if settings is None:
            from config.settings import settings as default_settings

            settings = default_settings
        self.graph = graph
        self.uploader = uploader
        self.settings = settings
        self.store_factory = store_factory or (lambda: open_schedule_store(self.settings))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def dispatch(self, submission: Submission) -> list[AccountResult]:
        submission.validate_content(self.settings.max_images)

        targets = submission.targets()
        if not targets:
            logger.warning("Submission has no account with a placement; nothing to publish")
            return []

        image_urls = await self.uploader.upload_all(submission.images)
        logger.info(
            "Dispatching to %d account(s) with %d image(s)%s",
            len(targets),
            len(image_urls),
            f", scheduled for {submission.scheduled_publish_time.isoformat()}"
            if submission.scheduled_publish_time
            else "",
        )

        store = _LazyStore(self.store_factory)
        try:
            return list(
                await asyncio.gather(
                    *(
                        self._dispatch_account(account, chosen, submission, image_urls, store)
                        for account, chosen in targets
                    )
                )
            )
        finally:
            await store.close()

    # ------------------------------------------------------------------
    # Per account
    # ------------------------------------------------------------------

    async def _dispatch_account(
        self,
        account: Account,
        chosen: PlatformPlacements,
        submission: Submission,
        image_urls: list[str],
        store: _LazyStore,
    ) -> AccountResult:
        result = AccountResult(accountName=account.display_name)
        jobs = []
        if chosen.facebook is not None:
            jobs.append(
                ("facebook", self._facebook(account, chosen.facebook, submission, image_urls))
            )
        if chosen.instagram is not None:
            jobs.append(
                (
                    "instagram",
                    self._instagram(account, chosen.instagram, submission, image_urls, store),
                )
            )

        outcomes = await asyncio.gather(*(coro for _, coro in jobs), return_exceptions=True)
        for (platform, _), outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("%s %s failed: %s", account.display_name, platform, outcome)
                outcome = PlatformResult.failed(outcome)
            setattr(result, platform, outcome)
        return result

    async def _facebook(
        self,
        account: Account,
        placement: Placement,
        submission: Submission,
        image_urls: list[str],
    ) -> PlatformResult:
        publisher = FacebookPublisher(self.graph, account.id, account.access_token)
        post_id = await publisher.publish(
            placement,
            submission.caption,
            image_urls,
            submission.scheduled_publish_time,
        )
        return PlatformResult.ok(post_id, scheduled=submission.is_scheduled)

    def _instagram_token(self, account: Account, submission: Submission) -> str:
        return (
            submission.user_access_token
            or self.settings.meta_user_access_token
            or account.access_token
        )

    async def _instagram(
        self,
        account: Account,
        placement: Placement,
        submission: Submission,
        image_urls: list[str],
        store: _LazyStore,
    ) -> PlatformResult:
        ig_id = account.instagram_id
        if not ig_id:
            raise InstagramError(
                f"{account.display_name} has no linked Instagram business account."
            )

        client = InstagramClient(self.graph, ig_id, self._instagram_token(account, submission))
        caption = "" if placement == Placement.STORY else submission.caption
        container_id, media_type = await client.create_container(
            placement,
            image_urls,
            caption,
            scheduled_at=submission.scheduled_publish_time,
        )

        if not submission.is_scheduled:
            media_id = await client.publish_container(container_id)
            return PlatformResult.ok(media_id)

        record = ScheduledInstagramPost(
            account_id=ig_id,
            account_name=account.display_name,
            creation_id=container_id,
            caption=caption,
            media_urls=list(image_urls),
            media_type=media_type,
            scheduled_publish_time=submission.scheduled_publish_time,
            created_at=utcnow(),
        )
        try:
            await store.call("add", record)
        except Exception as exc:
            # Graph has no container delete; the container expires on its own.
            logger.error(
                "Instagram container %s for %s is orphaned: schedule record not saved: %s",
                container_id,
                account.display_name,
                exc,
            )
            return PlatformResult.failed(
                f"Container {container_id} was created but the schedule could not be "
                f"saved: {exc}"
            )
        return PlatformResult.ok(container_id, scheduled=True)
