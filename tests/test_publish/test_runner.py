"""
Tests for src/publish/runner.py
"""

from __future__ import annotations

import datetime as dt
from pathlib import Path

import httpx
import pytest

from src.publish.graph import GraphClient
from src.publish.models import InstagramMediaType, ScheduledInstagramPost, ScheduleStatus
from src.publish.runner import ScheduledPostRunner
from src.publish.store import SqliteScheduleStore
from tests.fakes import GRAPH_BASE, GraphRecorder


@pytest.fixture()
def store(tmp_path: Path) -> SqliteScheduleStore:
    return SqliteScheduleStore(tmp_path / "sched.db")


def _past(minutes: int = 5) -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=minutes)


def _make_post(**kwargs) -> ScheduledInstagramPost:
    defaults = dict(
        account_id="IG1",
        account_name="Page",
        creation_id="C1",
        caption="Later",
        media_urls=["https://cdn.test/a.jpg"],
        media_type=InstagramMediaType.IMAGE,
        scheduled_publish_time=_past(),
    )
    defaults.update(kwargs)
    return ScheduledInstagramPost(**defaults)


class TestRunDue:
    @pytest.mark.asyncio
    async def test_publishes_due_container(
        self, recorder: GraphRecorder, graph: GraphClient, store: SqliteScheduleStore
    ) -> None:
        post = store.add(_make_post())

        outcomes = await ScheduledPostRunner(graph, store, "USER").run_due()

        assert recorder.paths() == ["IG1/media_publish"]
        assert recorder.calls[0].params == {"creation_id": "C1"}
        assert recorder.calls[0].token == "USER"
        assert outcomes[0].status == ScheduleStatus.PUBLISHED
        saved = store.get(post.id)
        assert saved.status == ScheduleStatus.PUBLISHED
        assert saved.media_id == "media_publish-1"

    @pytest.mark.asyncio
    async def test_future_posts_untouched(
        self, recorder: GraphRecorder, graph: GraphClient, store: SqliteScheduleStore
    ) -> None:
        future = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=1)
        store.add(_make_post(scheduled_publish_time=future))

        assert await ScheduledPostRunner(graph, store, "USER").run_due() == []
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_calls(
        self, recorder: GraphRecorder, graph: GraphClient, store: SqliteScheduleStore
    ) -> None:
        post = store.add(_make_post())

        outcomes = await ScheduledPostRunner(graph, store, "USER").run_due(dry_run=True)

        assert len(outcomes) == 1
        assert recorder.calls == []
        assert store.get(post.id).status == ScheduleStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_expired_container_is_rebuilt_once(self, store: SqliteScheduleStore) -> None:
        def responder(call):
            if call.path == "IG1/media_publish" and call.params["creation_id"] == "C1":
                return {"error": {"code": 24, "message": "Container expired"}}
            if call.path == "IG1/media":
                return {"id": "NEW"}
            return {"id": "MEDIA"}

        recorder = GraphRecorder(responder)
        graph = GraphClient(GRAPH_BASE, transport=httpx.MockTransport(recorder))
        post = store.add(_make_post())

        outcomes = await ScheduledPostRunner(graph, store, "USER").run_due()

        assert recorder.paths() == ["IG1/media_publish", "IG1/media", "IG1/media_publish"]
        assert recorder.calls[1].params["caption"] == "Later"
        assert outcomes[0].rebuilt is True
        saved = store.get(post.id)
        assert saved.status == ScheduleStatus.PUBLISHED
        assert saved.creation_id == "NEW"
        assert saved.media_id == "MEDIA"

    @pytest.mark.asyncio
    async def test_failure_is_recorded_per_post(self, store: SqliteScheduleStore) -> None:
        def responder(call):
            if call.path.startswith("IG_BAD/"):
                return {"error": {"code": 190, "message": "Invalid token"}}
            return {"id": "MEDIA"}

        graph = GraphClient(GRAPH_BASE, transport=httpx.MockTransport(GraphRecorder(responder)))
        bad = store.add(_make_post(account_id="IG_BAD", scheduled_publish_time=_past(30)))
        good = store.add(_make_post(scheduled_publish_time=_past(10)))

        outcomes = await ScheduledPostRunner(graph, store, "USER").run_due()

        assert [o.status for o in outcomes] == [ScheduleStatus.FAILED, ScheduleStatus.PUBLISHED]
        assert store.get(bad.id).status == ScheduleStatus.FAILED
        assert "Invalid token" in store.get(bad.id).error
        assert store.get(good.id).status == ScheduleStatus.PUBLISHED


class TestCancel:
    def test_cancel_marks_cancelled(self, graph: GraphClient, store: SqliteScheduleStore) -> None:
        post = store.add(_make_post())
        runner = ScheduledPostRunner(graph, store, "USER")

        assert runner.cancel(post.id) is True
        assert store.get(post.id).status == ScheduleStatus.CANCELLED
        assert runner.cancel(post.id) is False
