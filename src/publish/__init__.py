"""
Publishing package — Facebook Pages, Instagram, media host, schedule store.
"""

from src.publish.dispatcher import PublishDispatcher
from src.publish.facebook import FacebookPublisher, FacebookPublishError
from src.publish.graph import GraphAPIError, GraphClient
from src.publish.instagram import InstagramClient, InstagramError
from src.publish.media import CloudinaryUploader, UploadError
from src.publish.models import AccountResult, BadRequest, PlatformResult, Submission
from src.publish.runner import ScheduledPostRunner
from src.publish.schedule import ScheduleError
from src.publish.store import (
    MongoScheduleStore,
    PersistenceError,
    ScheduleStore,
    SqliteScheduleStore,
    open_schedule_store,
)

__all__ = [
    "PublishDispatcher",
    "FacebookPublisher",
    "FacebookPublishError",
    "GraphClient",
    "GraphAPIError",
    "InstagramClient",
    "InstagramError",
    "CloudinaryUploader",
    "UploadError",
    "Submission",
    "AccountResult",
    "PlatformResult",
    "BadRequest",
    "ScheduleError",
    "ScheduledPostRunner",
    "ScheduleStore",
    "MongoScheduleStore",
    "SqliteScheduleStore",
    "PersistenceError",
    "open_schedule_store",
]
