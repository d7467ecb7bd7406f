"""
Tests for src/api/app.py — FastAPI TestClient with dependency overrides.
"""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from config.settings import Settings, settings
from src.api.app import app, get_graph, get_settings, get_store_factory, get_uploader
from src.publish.graph import GraphClient
from src.publish.media import UploadError
from src.publish.models import InstagramMediaType, ScheduledInstagramPost
from src.publish.store import SqliteScheduleStore
from tests.fakes import GRAPH_BASE, FakeUploader, GraphRecorder, store_factory

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path) -> SqliteScheduleStore:
    return SqliteScheduleStore(tmp_path / "api.db")


@pytest.fixture()
def uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture()
def client(recorder: GraphRecorder, uploader: FakeUploader, store, test_settings: Settings):
    async def _graph():
        yield GraphClient(GRAPH_BASE, transport=httpx.MockTransport(recorder))

    async def _uploader():
        yield uploader

    app.dependency_overrides[get_graph] = _graph
    app.dependency_overrides[get_uploader] = _uploader
    app.dependency_overrides[get_store_factory] = lambda: store_factory(store)
    app.dependency_overrides[get_settings] = lambda: test_settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _form(**kwargs) -> dict:
    data = {
        "text": "hello",
        "placements": json.dumps({"A": {"facebook": "feed"}}),
        "accounts": json.dumps([{"id": "A", "name": "Page A", "accessToken": "t1"}]),
        "userAccessToken": "USER",
    }
    data.update(kwargs)
    return data


def _jpeg(name: str = "a.jpg") -> tuple:
    return ("files", (name, b"\xff\xd8fake", "image/jpeg"))


# ---------------------------------------------------------------------------
# POST /api/publish
# ---------------------------------------------------------------------------


class TestPublishEndpoint:
    def test_text_post_success(self, client: TestClient, recorder: GraphRecorder) -> None:
        resp = client.post("/api/publish", data=_form())

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "sucesso",
            "results": [{"accountName": "Page A", "facebook": {"success": True, "id": "feed-1"}}],
        }
        assert recorder.calls[0].params == {"message": "hello"}

    def test_partial_failure_is_still_200(self, client: TestClient, recorder: GraphRecorder) -> None:
        recorder.responder = lambda call: {"error": {"code": 190, "message": "Invalid token"}}

        resp = client.post("/api/publish", data=_form())

        assert resp.status_code == 200
        result = resp.json()["results"][0]
        assert result["facebook"] == {"success": False, "error": "Invalid token"}

    def test_files_uploaded_in_order(self, client: TestClient, uploader: FakeUploader) -> None:
        files = [_jpeg("1.jpg"), _jpeg("2.jpg"), _jpeg("3.jpg")]
        resp = client.post("/api/publish", data=_form(), files=files)

        assert resp.status_code == 200
        assert [i.filename for i in uploader.uploaded] == ["1.jpg", "2.jpg", "3.jpg"]

    def test_empty_submission_is_400(self, client: TestClient, recorder: GraphRecorder) -> None:
        resp = client.post("/api/publish", data=_form(text=""))

        assert resp.status_code == 400
        assert "error" in resp.json()
        assert recorder.calls == []

    def test_malformed_json_is_400(self, client: TestClient) -> None:
        resp = client.post("/api/publish", data=_form(placements="{not json"))

        assert resp.status_code == 400
        assert "placements" in resp.json()["error"]

    def test_schedule_too_soon_is_400(self, client: TestClient, recorder: GraphRecorder) -> None:
        soon = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(minutes=5)).isoformat()
        resp = client.post("/api/publish", data=_form(scheduled_publish_time=soon))

        assert resp.status_code == 400
        assert "20 minutes" in resp.json()["error"]
        assert recorder.calls == []

    def test_scheduled_instagram_is_stored(
        self, client: TestClient, recorder: GraphRecorder, store: SqliteScheduleStore
    ) -> None:
        when = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=1)).isoformat()
        accounts = [
            {"id": "A", "name": "Page A", "access_token": "t1", "instagram_business_account": {"id": "IG1"}}
        ]
        resp = client.post(
            "/api/publish",
            data=_form(
                accounts=json.dumps(accounts),
                placements=json.dumps({"A": {"instagram": "feed"}}),
                scheduled_publish_time=when,
            ),
            files=[_jpeg("1.jpg"), _jpeg("2.jpg")],
        )

        assert resp.status_code == 200
        assert resp.json()["results"][0]["instagram"]["scheduled"] is True
        assert "IG1/media_publish" not in recorder.paths()
        saved = store.list_all()
        assert len(saved) == 1
        assert len(saved[0].media_urls) == 2

    def test_upload_error_is_500_with_details(self, client: TestClient, uploader: FakeUploader) -> None:
        uploader.error = UploadError("host down")

        resp = client.post("/api/publish", data=_form(), files=[_jpeg()])

        assert resp.status_code == 500
        assert resp.json()["details"] == "host down"
        assert "error" in resp.json()

    def test_get_is_405(self, client: TestClient) -> None:
        resp = client.get("/api/publish")

        assert resp.status_code == 405
        assert resp.json() == {"error": "Method Not Allowed"}


# ---------------------------------------------------------------------------
# Other endpoints
# ---------------------------------------------------------------------------


class TestAccountsEndpoint:
    def test_lists_accounts_with_header_token(self, client: TestClient, recorder: GraphRecorder) -> None:
        recorder.responder = lambda call: {"data": [{"id": "A", "name": "Page A", "access_token": "pt"}]}

        resp = client.get("/api/accounts", headers={"X-Access-Token": "USER"})

        assert resp.status_code == 200
        assert resp.json() == [{"id": "A", "name": "Page A", "access_token": "pt"}]
        assert recorder.calls[0].token == "USER"

    def test_missing_token_is_400(self, client: TestClient) -> None:
        resp = client.get("/api/accounts")
        assert resp.status_code == 400


class TestCalendarEndpoint:
    def test_week_view(self, client: TestClient, recorder: GraphRecorder) -> None:
        def responder(call):
            if call.path == "me/accounts":
                return {"data": [{"id": "A", "name": "Page A", "access_token": "pt"}]}
            if call.path == "A/posts":
                return {"data": [{"message": "hi", "created_time": "2024-05-13T10:00:00+0000"}]}
            return {"data": []}

        recorder.responder = responder

        resp = client.get(
            "/api/calendar",
            params={"view": "week", "date": "2024-05-15"},
            headers={"X-Access-Token": "USER"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["start"].startswith("2024-05-12")
        assert [i["text"] for i in body["items"]] == ["hi"]


class TestScheduledEndpoints:
    def _seed(self, store: SqliteScheduleStore) -> ScheduledInstagramPost:
        return store.add(
            ScheduledInstagramPost(
                account_id="IG1",
                creation_id="C1",
                media_urls=["u"],
                media_type=InstagramMediaType.IMAGE,
                scheduled_publish_time=dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=2),
            )
        )

    def test_list(self, client: TestClient, store: SqliteScheduleStore) -> None:
        post = self._seed(store)
        resp = client.get("/api/scheduled")

        assert resp.status_code == 200
        assert resp.json()[0]["id"] == post.id
        assert resp.json()[0]["creationId"] == "C1"

    def test_cancel(self, client: TestClient, store: SqliteScheduleStore) -> None:
        post = self._seed(store)

        assert client.delete(f"/api/scheduled/{post.id}").status_code == 200
        assert store.get(post.id).status.value == "CANCELLED"
        assert client.delete(f"/api/scheduled/{post.id}").status_code == 404


def test_health(client: TestClient) -> None:
    assert client.get("/api/health").json()["status"] == "ok"


def test_startup_configures_logging() -> None:
    with patch("src.api.app.configure_logging") as configure:
        with TestClient(app) as started:
            started.get("/api/health")
    configure.assert_called_once_with(settings.log_level)
