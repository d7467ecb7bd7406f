"""
Publishing data models.

A ``Submission`` is the single typed request the composer produces and the
dispatcher consumes:

  accounts   — Facebook Pages (page token + optional linked Instagram account)
  placements — account id → {facebook: feed|story, instagram: feed|story}
  text       — one caption shared by every target
  images     — 0..10 images; order is the carousel order
  scheduled_publish_time — optional instant; absent means publish now
"""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

MAX_IMAGES = 10


class BadRequest(Exception):
    """Raised when a submission fails baseline validation."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Platform(str, Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


class Placement(str, Enum):
    FEED = "feed"
    STORY = "story"


class ScheduleStatus(str, Enum):
    SCHEDULED = "SCHEDULED"     # container created, waiting for its instant
    PUBLISHING = "PUBLISHING"   # picked up by the runner
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class InstagramMediaType(str, Enum):
    IMAGE = "IMAGE"
    CAROUSEL = "CAROUSEL"
    STORIES = "STORIES"


# ---------------------------------------------------------------------------
# Accounts and placements
# ---------------------------------------------------------------------------


class InstagramAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    username: Optional[str] = None
    name: Optional[str] = None


class Account(BaseModel):
    """A Facebook Page as returned by ``me/accounts``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str = ""
    access_token: str = Field(
        default="",
        validation_alias=AliasChoices("accessToken", "access_token"),
    )
    instagram_business_account: Optional[InstagramAccount] = Field(
        default=None,
        validation_alias=AliasChoices(
            "instagramBusinessAccount", "instagram_business_account"
        ),
    )

    @property
    def instagram_id(self) -> Optional[str]:
        if self.instagram_business_account is None:
            return None
        return self.instagram_business_account.id

    @property
    def display_name(self) -> str:
        return self.name or self.id


class PlatformPlacements(BaseModel):
    """Per-account placement choice. A missing platform is not published to."""

    model_config = ConfigDict(extra="ignore")

    facebook: Optional[Placement] = None
    instagram: Optional[Placement] = None

    @field_validator("facebook", "instagram", mode="before")
    @classmethod
    def _blank_is_none(cls, v: object) -> object:
        if v in ("", "none", None):
            return None
        return v

    @property
    def is_empty(self) -> bool:
        return self.facebook is None and self.instagram is None

    def placements(self) -> list[Placement]:
        return [p for p in (self.facebook, self.instagram) if p is not None]


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class ImageFile(BaseModel):
    """An image as received from the composer, before upload."""

    filename: str = "image.jpg"
    content_type: str = "image/jpeg"
    data: bytes = Field(repr=False)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class Submission(BaseModel):
    text: str = ""
    placements: dict[str, PlatformPlacements] = Field(default_factory=dict)
    accounts: list[Account] = Field(default_factory=list)
    user_access_token: Optional[str] = None
    scheduled_publish_time: Optional[dt.datetime] = None
    images: list[ImageFile] = Field(default_factory=list)

    @field_validator("scheduled_publish_time")
    @classmethod
    def _assume_utc(cls, v: Optional[dt.datetime]) -> Optional[dt.datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=dt.timezone.utc)
        return v

    @field_validator("user_access_token", mode="before")
    @classmethod
    def _blank_token_is_none(cls, v: object) -> object:
        return v or None

    @property
    def is_scheduled(self) -> bool:
        return self.scheduled_publish_time is not None

    @property
    def caption(self) -> str:
        return self.text

    def validate_content(self, max_images: int = MAX_IMAGES) -> None:
        """Reject submissions that could never produce a post."""
        if not self.text.strip() and not self.images:
            raise BadRequest("A caption or at least one image is required.")
        if len(self.images) > max_images:
            raise BadRequest(
                f"At most {max_images} images per submission (got {len(self.images)})."
            )
        bad = [img.filename for img in self.images if not img.is_image]
        if bad:
            raise BadRequest(f"Only image files are accepted: {', '.join(bad)}")

    def targets(self) -> list[tuple[Account, PlatformPlacements]]:
        """Accounts that have at least one placement, in submission order."""
        out = []
        for account in self.accounts:
            chosen = self.placements.get(account.id)
            if chosen is not None and not chosen.is_empty:
                out.append((account, chosen))
        return out


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PlatformResult(BaseModel):
    success: bool
    error: Optional[str] = None
    id: Optional[str] = None
    scheduled: Optional[bool] = None

    @classmethod
    def ok(cls, post_id: Optional[str] = None, *, scheduled: bool = False) -> "PlatformResult":
        return cls(success=True, id=post_id, scheduled=scheduled or None)

    @classmethod
    def failed(cls, error: object) -> "PlatformResult":
        return cls(success=False, error=str(error))


class AccountResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_name: str = Field(alias="accountName")
    facebook: Optional[PlatformResult] = None
    instagram: Optional[PlatformResult] = None

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Scheduled Instagram record
# ---------------------------------------------------------------------------


class ScheduledInstagramPost(BaseModel):
    """
    A deferred Instagram container, one document in ``scheduled_instagram_posts``.

    Instagram has no native schedule primitive, so the container id and the
    inputs needed to rebuild it are kept until the runner publishes it.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = ""
    account_id: str
    account_name: str = ""
    creation_id: str
    caption: str = ""
    media_urls: list[str] = Field(default_factory=list)
    media_type: InstagramMediaType = InstagramMediaType.IMAGE
    scheduled_publish_time: dt.datetime
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    published_at: Optional[dt.datetime] = None
    media_id: Optional[str] = None
    error: Optional[str] = None

    def model_post_init(self, __context: object) -> None:  # noqa: D401
        if not self.id:
            self.id = uuid.uuid4().hex[:12]

    @field_validator("scheduled_publish_time", "created_at", "published_at")
    @classmethod
    def _assume_utc(cls, v: Optional[dt.datetime]) -> Optional[dt.datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=dt.timezone.utc)
        return v

    def is_due(self, now: Optional[dt.datetime] = None) -> bool:
        now = now or dt.datetime.now(dt.timezone.utc)
        return self.status == ScheduleStatus.SCHEDULED and self.scheduled_publish_time <= now

    def to_document(self) -> dict:
        """camelCase document with plain string enum values."""
        doc = self.model_dump(by_alias=True)
        doc["status"] = self.status.value
        doc["mediaType"] = self.media_type.value
        return doc
