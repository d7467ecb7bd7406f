"""Test doubles for the Graph API, the media host and the schedule store."""

from __future__ import annotations

import itertools
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qsl

import httpx

from src.publish.models import ImageFile

GRAPH_BASE = "https://graph.test/v23.0"


@dataclass
class GraphCall:
    method: str
    path: str            # without the version prefix, e.g. "A/feed"
    params: dict         # form body for POST, query for GET (token removed)
    token: Optional[str]


class GraphRecorder:
    """
    ``httpx.MockTransport`` handler that records every Graph call.

    ``responder(call)`` returns the JSON body for a call; the default answers
    each POST with a fresh ``{"id": "<edge>-<n>"}``.
    """

    def __init__(self, responder: Optional[Callable[[GraphCall], dict]] = None) -> None:
        self.calls: list[GraphCall] = []
        self.responder = responder or self.default_responder
        self._counter = itertools.count(1)

    def default_responder(self, call: GraphCall) -> dict:
        if call.method == "GET":
            return {"data": []}
        edge = call.path.rsplit("/", 1)[-1]
        return {"id": f"{edge}-{next(self._counter)}"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.split("/v23.0/", 1)[-1]
        query = dict(request.url.params)
        token = query.pop("access_token", None)
        if request.method == "POST":
            params = dict(parse_qsl(request.content.decode(), keep_blank_values=True))
        else:
            params = query
        call = GraphCall(request.method, path, params, token)
        self.calls.append(call)
        return httpx.Response(200, json=self.responder(call))

    def paths(self, method: str = "POST") -> list[str]:
        return [c.path for c in self.calls if c.method == method]

    def calls_to(self, path: str) -> list[GraphCall]:
        return [c for c in self.calls if c.path == path]


class FakeUploader:
    """Stands in for ``CloudinaryUploader``: one URL per image, in order."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.uploaded: list[ImageFile] = []

    async def upload_all(self, images: list[ImageFile]) -> list[str]:
        if self.error is not None:
            raise self.error
        self.uploaded.extend(images)
        return [f"https://cdn.test/{i}-{img.filename}" for i, img in enumerate(images)]


def store_factory(store):
    """A store factory that hands out *store* without closing it."""
    return lambda: nullcontext(store)


def make_image(name: str = "a.jpg", content_type: str = "image/jpeg") -> ImageFile:
    return ImageFile(filename=name, content_type=content_type, data=b"\xff\xd8fake")
