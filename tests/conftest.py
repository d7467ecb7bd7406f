"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from config.settings import Settings
from src.publish.graph import GraphClient
from tests.fakes import GRAPH_BASE, GraphRecorder


@pytest.fixture
def recorder() -> GraphRecorder:
    return GraphRecorder()


@pytest.fixture
def graph(recorder: GraphRecorder) -> GraphClient:
    return GraphClient(GRAPH_BASE, transport=httpx.MockTransport(recorder))


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        meta_user_access_token="",
        schedule_backend="sqlite",
        schedule_db_path=tmp_path / "schedule.db",
        cloudinary_cloud_name="demo",
        cloudinary_upload_preset="preset",
    )
