"""
HTTP surface.

  POST   /api/publish          multipart submission → per-account results
  GET    /api/accounts         Pages (and linked Instagram accounts) of the operator
  GET    /api/calendar         published + scheduled posts for a month/week
  GET    /api/scheduled        stored Instagram schedule records
  DELETE /api/scheduled/{id}   cancel a stored Instagram schedule record
  GET    /api/health

Run with ``pagepost serve`` or ``uvicorn src.api.app:app``.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import Settings, settings
from src.api.middleware import RequestLoggingMiddleware
from src.logging_setup import configure_logging
from src.publish.calendar import CalendarView, fetch_calendar, list_accounts, view_range
from src.publish.dispatcher import PublishDispatcher, StoreFactory
from src.publish.graph import GraphAPIError, GraphClient
from src.publish.media import CloudinaryUploader, UploadError
from src.publish.models import BadRequest, ImageFile, ScheduleStatus, Submission
from src.publish.schedule import parse_instant, validate_schedule_time, window_from_settings
from src.publish.store import PersistenceError, open_schedule_store

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("pagepost API %s starting", __version__)
    yield


app = FastAPI(title="pagepost", version=__version__, lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Access-Token"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_settings() -> Settings:
    return settings


async def get_graph() -> AsyncIterator[GraphClient]:
    async with GraphClient() as graph:
        yield graph


async def get_uploader() -> AsyncIterator[CloudinaryUploader]:
    async with CloudinaryUploader() as uploader:
        yield uploader


def get_store_factory(cfg: Settings = Depends(get_settings)) -> StoreFactory:
    return lambda: open_schedule_store(cfg)


def get_dispatcher(
    graph: GraphClient = Depends(get_graph),
    uploader: CloudinaryUploader = Depends(get_uploader),
    store_factory: StoreFactory = Depends(get_store_factory),
    cfg: Settings = Depends(get_settings),
) -> PublishDispatcher:
    return PublishDispatcher(graph, uploader, store_factory, cfg)


def _user_token(header_token: Optional[str], cfg: Settings) -> str:
    token = header_token or cfg.meta_user_access_token
    if not token:
        raise BadRequest("A user access token is required (X-Access-Token header).")
    return token


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(BadRequest)
async def bad_request_handler(request: Request, exc: BadRequest) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": errors or "Invalid request."})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 405:
        return JSONResponse(status_code=405, content={"error": "Method Not Allowed"})
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def _server_error(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": "Server error.", "details": str(exc)})


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    logger.error("Media upload failed: %s", exc)
    return _server_error(exc)


@app.exception_handler(GraphAPIError)
async def graph_error_handler(request: Request, exc: GraphAPIError) -> JSONResponse:
    logger.error("Graph API error on %s: %s", request.url.path, exc)
    return _server_error(exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Schedule store error on %s: %s", request.url.path, exc)
    return _server_error(exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _server_error(exc)


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


def _load_json(field: str, raw: str, default: object) -> object:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BadRequest(f"Field '{field}' is not valid JSON.") from exc


async def _read_images(files: Optional[list[UploadFile]]) -> list[ImageFile]:
    images = []
    for upload in files or []:
        images.append(
            ImageFile(
                filename=upload.filename or "image",
                content_type=upload.content_type or "application/octet-stream",
                data=await upload.read(),
            )
        )
    return images


@app.post("/api/publish")
async def publish(
    text: str = Form(""),
    placements: str = Form("{}"),
    accounts: str = Form("[]"),
    userAccessToken: Optional[str] = Form(None),
    scheduled_publish_time: Optional[str] = Form(None),
    files: Optional[list[UploadFile]] = File(None),
    dispatcher: PublishDispatcher = Depends(get_dispatcher),
    cfg: Settings = Depends(get_settings),
) -> dict:
    scheduled_at = None
    if scheduled_publish_time:
        scheduled_at = validate_schedule_time(
            parse_instant(scheduled_publish_time), **window_from_settings(cfg)
        )

    try:
        submission = Submission(
            text=text,
            placements=_load_json("placements", placements, {}),
            accounts=_load_json("accounts", accounts, []),
            user_access_token=userAccessToken,
            scheduled_publish_time=scheduled_at,
            images=await _read_images(files),
        )
    except ValidationError as exc:
        raise BadRequest(f"Invalid submission: {exc.error_count()} field error(s): {exc}") from exc

    results = await dispatcher.dispatch(submission)
    return {"status": "sucesso", "results": [r.to_dict() for r in results]}


# ---------------------------------------------------------------------------
# Accounts and calendar
# ---------------------------------------------------------------------------


@app.get("/api/accounts")
async def accounts(
    x_access_token: Optional[str] = Header(None),
    graph: GraphClient = Depends(get_graph),
    cfg: Settings = Depends(get_settings),
) -> list[dict]:
    found = await list_accounts(graph, _user_token(x_access_token, cfg))
    return [a.model_dump(mode="json", exclude_none=True) for a in found]


@app.get("/api/calendar")
async def calendar(
    view: CalendarView = Query(CalendarView.MONTH),
    date: Optional[dt.date] = Query(None),
    account_id: Optional[list[str]] = Query(None),
    x_access_token: Optional[str] = Header(None),
    graph: GraphClient = Depends(get_graph),
    store_factory: StoreFactory = Depends(get_store_factory),
    cfg: Settings = Depends(get_settings),
) -> dict:
    token = _user_token(x_access_token, cfg)
    start, end = view_range(date or dt.date.today(), view)

    found = await list_accounts(graph, token)
    if account_id:
        found = [a for a in found if a.id in account_id]

    store_cm = store_factory()
    store = await run_in_threadpool(store_cm.__enter__)
    try:
        items = await fetch_calendar(graph, found, start, end, token, store=store)
    finally:
        await run_in_threadpool(store_cm.__exit__, None, None, None)
    return {
        "view": view.value,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "items": [item.model_dump(mode="json") for item in items],
    }


# ---------------------------------------------------------------------------
# Stored Instagram schedule
# ---------------------------------------------------------------------------


@app.get("/api/scheduled")
def scheduled(
    status: Optional[ScheduleStatus] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    store_factory: StoreFactory = Depends(get_store_factory),
) -> list[dict]:
    with store_factory() as store:
        posts = store.list_all(status=status, limit=limit)
    return [p.model_dump(mode="json", by_alias=True) for p in posts]


@app.delete("/api/scheduled/{post_id}")
def cancel_scheduled(
    post_id: str,
    store_factory: StoreFactory = Depends(get_store_factory),
) -> dict:
    with store_factory() as store:
        cancelled = store.cancel(post_id)
    if not cancelled:
        raise StarletteHTTPException(404, f"No scheduled post {post_id} to cancel.")
    return {"status": "cancelled", "id": post_id}


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok", "version": __version__}

