"""
Meta Graph API call helper.

Every write is a single form-encoded POST against the fixed versioned base
URL, with the bearer token passed as the ``access_token`` query parameter:

  POST https://graph.facebook.com/v23.0/{path}?access_token=…
  Content-Type: application/x-www-form-urlencoded

A response body containing an ``error`` object raises ``GraphAPIError``
carrying the upstream ``code`` and ``message``; anything else is returned as
parsed JSON.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

_GRAPH_BASE = "https://graph.facebook.com/v23.0"


class GraphAPIError(Exception):
    """Raised when the Graph API returns an error response."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        *,
        error_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.error_type = error_type

    @classmethod
    def from_body(cls, error: dict) -> "GraphAPIError":
        return cls(
            error.get("message", str(error)),
            error.get("code"),
            error_type=error.get("type"),
        )


def encode_params(params: dict[str, Any]) -> dict[str, str]:
    """Render a parameter map as Graph form fields."""
    out: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        elif isinstance(value, (list, dict)):
            out[key] = json.dumps(value, separators=(",", ":"))
        else:
            out[key] = str(value)
    return out


class GraphClient:
    """
    Async wrapper around the Graph API.

    Usage::

        async with GraphClient() as graph:
            body = await graph.post("123/feed", {"message": "hello"}, page_token)
            pages = await graph.get_paginated("me/accounts", {"fields": "id,name"}, user_token)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        from config.settings import settings

        self.base_url = (base_url or settings.graph_base_url or _GRAPH_BASE).rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.http_timeout,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _path(path: str) -> str:
        return "/" + path.lstrip("/")

    @staticmethod
    def _parse(resp: httpx.Response) -> dict:
        try:
            body = resp.json()
        except ValueError as exc:
            raise GraphAPIError(
                f"Non-JSON response from Graph API (HTTP {resp.status_code})",
                resp.status_code,
            ) from exc
        if isinstance(body, dict) and "error" in body:
            error = body["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise GraphAPIError.from_body(error)
        return body

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def post(self, path: str, params: dict[str, Any], token: str) -> dict:
        """POST *params* form-encoded to *path*; raise ``GraphAPIError`` on error."""
        resp = await self._http.post(
            self._path(path),
            params={"access_token": token},
            data=encode_params(params),
        )
        body = self._parse(resp)
        logger.debug("POST %s -> %s", path, body)
        return body

    async def get(self, path: str, params: Optional[dict[str, Any]], token: str) -> dict:
        query = encode_params(params or {})
        query["access_token"] = token
        resp = await self._http.get(self._path(path), params=query)
        return self._parse(resp)

    async def get_paginated(
        self,
        path: str,
        params: Optional[dict[str, Any]],
        token: str,
        *,
        max_pages: int = 50,
    ) -> list[dict]:
        """Follow ``paging.next`` links and return the concatenated ``data`` lists."""
        body = await self.get(path, params, token)
        items: list[dict] = list(body.get("data", []))
        pages = 1
        next_url = (body.get("paging") or {}).get("next")
        while next_url and pages < max_pages:
            body = self._parse(await self._http.get(next_url))
            items.extend(body.get("data", []))
            next_url = (body.get("paging") or {}).get("next")
            pages += 1
        return items

    # ------------------------------------------------------------------
    # Context manager / cleanup
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
