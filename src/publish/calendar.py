"""
Account listing and calendar feed.

The calendar shows, for a month or a week, what each selected account has
published and what is queued:

  GET /{page}/posts            published Facebook posts in [since, until]
  GET /{page}/scheduled_posts  Facebook-native scheduled posts
  GET /{ig}/media              published Instagram media in [since, until]
  + SCHEDULED records from the local Instagram schedule store
"""

from __future__ import annotations

import asyncio
import calendar as _calendar
import datetime as dt
import logging
from collections import defaultdict
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.publish.graph import GraphClient
from src.publish.models import Account, Platform
from src.publish.schedule import ensure_aware
from src.publish.store import ScheduleStore

logger = logging.getLogger(__name__)

ACCOUNT_FIELDS = "name,id,access_token,picture{url},instagram_business_account{name,username}"
FB_POST_FIELDS = (
    "message,full_picture,permalink_url,created_time,is_published,"
    "scheduled_publish_time,attachments{media,subattachments}"
)
IG_MEDIA_FIELDS = (
    "caption,media_url,thumbnail_url,permalink,timestamp,media_type,"
    "children{media_url,thumbnail_url,media_type}"
)
PAGE_LIMIT = 100


class CalendarView(str, Enum):
    MONTH = "month"
    WEEK = "week"


class CalendarItem(BaseModel):
    account_id: str
    account_name: str
    platform: Platform
    timestamp: dt.datetime
    text: str = ""
    media_urls: list[str] = Field(default_factory=list)
    permalink: Optional[str] = None
    is_scheduled: bool = False


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


async def list_accounts(graph: GraphClient, user_token: str) -> list[Account]:
    """Pages the operator manages, with page tokens and linked Instagram accounts."""
    rows = await graph.get_paginated("me/accounts", {"fields": ACCOUNT_FIELDS}, user_token)
    accounts = [Account.model_validate(row) for row in rows]
    logger.info("Fetched %d account(s)", len(accounts))
    return accounts


# ---------------------------------------------------------------------------
# Date range
# ---------------------------------------------------------------------------


def view_range(anchor: dt.date, view: CalendarView | str) -> tuple[dt.datetime, dt.datetime]:
    """
    Inclusive UTC range shown by *view* around *anchor*.

    Months run from the 1st 00:00 to the last day 23:59:59.999999; weeks run
    Sunday to Saturday.
    """
    view = CalendarView(view)
    if view == CalendarView.MONTH:
        first = anchor.replace(day=1)
        last = anchor.replace(day=_calendar.monthrange(anchor.year, anchor.month)[1])
    else:
        # date.weekday(): Monday == 0, so Sunday is 6
        first = anchor - dt.timedelta(days=(anchor.weekday() + 1) % 7)
        last = first + dt.timedelta(days=6)
    start = dt.datetime.combine(first, dt.time.min, tzinfo=dt.timezone.utc)
    end = dt.datetime.combine(last, dt.time.max, tzinfo=dt.timezone.utc)
    return start, end


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _parse_graph_time(value: object) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(value, dt.timezone.utc)
    text = str(value)
    if text.isdigit():
        return dt.datetime.fromtimestamp(int(text), dt.timezone.utc)
    # Graph returns "2024-05-01T10:00:00+0000"
    if len(text) > 5 and text[-5] in "+-" and text[-3] != ":":
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return ensure_aware(dt.datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        logger.debug("Unparseable Graph timestamp: %r", value)
        return None


def _facebook_media(post: dict) -> list[str]:
    urls: list[str] = []
    for attachment in (post.get("attachments") or {}).get("data", []):
        subs = (attachment.get("subattachments") or {}).get("data", [])
        for sub in subs or [attachment]:
            src = ((sub.get("media") or {}).get("image") or {}).get("src")
            if src:
                urls.append(src)
    if not urls and post.get("full_picture"):
        urls.append(post["full_picture"])
    return urls


def _facebook_item(account: Account, post: dict, scheduled: bool) -> Optional[CalendarItem]:
    when = _parse_graph_time(
        post.get("scheduled_publish_time") if scheduled else post.get("created_time")
    ) or _parse_graph_time(post.get("created_time"))
    if when is None:
        return None
    return CalendarItem(
        account_id=account.id,
        account_name=account.display_name,
        platform=Platform.FACEBOOK,
        timestamp=when,
        text=post.get("message") or "",
        media_urls=_facebook_media(post),
        permalink=post.get("permalink_url"),
        is_scheduled=scheduled,
    )


def _instagram_item(account: Account, media: dict) -> Optional[CalendarItem]:
    when = _parse_graph_time(media.get("timestamp"))
    if when is None:
        return None
    children = (media.get("children") or {}).get("data", [])
    urls = [c.get("media_url") or c.get("thumbnail_url") for c in children] or [
        media.get("media_url") or media.get("thumbnail_url")
    ]
    return CalendarItem(
        account_id=account.id,
        account_name=account.display_name,
        platform=Platform.INSTAGRAM,
        timestamp=when,
        text=media.get("caption") or "",
        media_urls=[u for u in urls if u],
        permalink=media.get("permalink"),
    )


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------


async def _account_items(
    graph: GraphClient,
    account: Account,
    start: dt.datetime,
    end: dt.datetime,
    user_token: str,
) -> list[CalendarItem]:
    since, until = int(start.timestamp()), int(end.timestamp())
    window = {"since": since, "until": until, "limit": PAGE_LIMIT}
    try:
        published, scheduled = await asyncio.gather(
            graph.get_paginated(
                f"{account.id}/posts",
                {"fields": FB_POST_FIELDS, **window},
                account.access_token,
            ),
            graph.get_paginated(
                f"{account.id}/scheduled_posts",
                {"fields": FB_POST_FIELDS, "limit": PAGE_LIMIT},
                account.access_token,
            ),
        )
        items = [_facebook_item(account, p, scheduled=False) for p in published]
        items += [_facebook_item(account, p, scheduled=True) for p in scheduled]

        if account.instagram_id:
            media = await graph.get_paginated(
                f"{account.instagram_id}/media",
                {"fields": IG_MEDIA_FIELDS, **window},
                user_token or account.access_token,
            )
            items += [_instagram_item(account, m) for m in media]
    except Exception as exc:
        logger.warning("Calendar fetch failed for %s: %s", account.display_name, exc)
        return []
    # scheduled_posts has no since/until filter
    return [item for item in items if item is not None and start <= item.timestamp <= end]


def _stored_items(
    store: ScheduleStore,
    accounts: list[Account],
    start: dt.datetime,
    end: dt.datetime,
) -> list[CalendarItem]:
    by_ig = {a.instagram_id: a for a in accounts if a.instagram_id}
    if not by_ig:
        return []
    return [
        CalendarItem(
            account_id=by_ig[post.account_id].id,
            account_name=post.account_name or by_ig[post.account_id].display_name,
            platform=Platform.INSTAGRAM,
            timestamp=post.scheduled_publish_time,
            text=post.caption,
            media_urls=post.media_urls,
            is_scheduled=True,
        )
        for post in store.list_between(start, end, list(by_ig))
        if post.account_id in by_ig
    ]


async def fetch_calendar(
    graph: GraphClient,
    accounts: list[Account],
    start: dt.datetime,
    end: dt.datetime,
    user_token: str = "",
    store: Optional[ScheduleStore] = None,
) -> list[CalendarItem]:
    """All items for *accounts* in [start, end], sorted by time."""
    per_account = await asyncio.gather(
        *(_account_items(graph, account, start, end, user_token) for account in accounts)
    )
    items = [item for group in per_account for item in group]
    if store is not None:
        items += await asyncio.to_thread(_stored_items, store, accounts, start, end)
    items.sort(key=lambda item: item.timestamp)
    return items


def group_by_day(items: list[CalendarItem]) -> dict[dt.date, dict[str, list[CalendarItem]]]:
    """day → account name → items, days in ascending order."""
    grouped: dict[dt.date, dict[str, list[CalendarItem]]] = defaultdict(lambda: defaultdict(list))
    for item in sorted(items, key=lambda i: i.timestamp):
        grouped[item.timestamp.date()][item.account_name].append(item)
    return {day: dict(accounts) for day, accounts in sorted(grouped.items())}
