"""
Composer state — account/placement selection, ordered images, schedule.

The composer holds what the operator has picked and turns it into the one
``Submission`` the dispatcher accepts, or into the multipart form the
``/api/publish`` endpoint expects:

  text                    caption ("" when every placement is a story)
  placements              JSON  {account_id: {facebook?, instagram?}}
  accounts                JSON  selected accounts, Graph field names
  userAccessToken         operator token for Instagram calls
  scheduled_publish_time  ISO 8601 UTC, only when scheduling
  files                   repeated image parts, in carousel order
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Optional

from config.settings import settings
from src.composer.crop import CropBox, crop_to_jpeg
from src.publish.models import (
    MAX_IMAGES,
    Account,
    BadRequest,
    ImageFile,
    Placement,
    Platform,
    PlatformPlacements,
    Submission,
)
from src.publish.schedule import validate_schedule_time, window_from_settings

logger = logging.getLogger(__name__)


class Composer:
    """
    Usage::

        composer = Composer(accounts)
        composer.toggle_account("123")
        composer.add_images([ImageFile(filename="a.jpg", data=raw)])
        composer.text = "Hello"
        submission = composer.build_submission(user_token)
    """

    def __init__(self, accounts: list[Account], max_images: int = MAX_IMAGES) -> None:
        self.accounts = accounts
        self.max_images = max_images
        self.text = ""
        self.images: list[ImageFile] = []
        self.placements: dict[str, PlatformPlacements] = {}
        self.scheduled_at: Optional[dt.datetime] = None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _account(self, account_id: str) -> Account:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise KeyError(account_id)

    @property
    def selected_ids(self) -> list[str]:
        """Selected account ids, in account-list order."""
        return [a.id for a in self.accounts if a.id in self.placements]

    def toggle_account(self, account_id: str) -> bool:
        """Select or deselect an account. Returns True if it is now selected."""
        account = self._account(account_id)
        if account_id in self.placements:
            del self.placements[account_id]
            return False
        self.placements[account_id] = PlatformPlacements(
            facebook=Placement.FEED,
            instagram=Placement.FEED if account.instagram_id else None,
        )
        return True

    def set_placement(
        self,
        account_id: str,
        platform: Platform | str,
        placement: Optional[Placement | str],
    ) -> None:
        platform = Platform(platform)
        account = self._account(account_id)
        if account_id not in self.placements:
            raise ValueError(f"Account {account_id} is not selected.")
        if platform == Platform.INSTAGRAM and placement and not account.instagram_id:
            raise ValueError(f"{account.display_name} has no linked Instagram account.")
        setattr(
            self.placements[account_id],
            platform.value,
            Placement(placement) if placement else None,
        )

    @property
    def is_story_only(self) -> bool:
        """Every selected account targets stories only, so no caption applies."""
        if not self.placements:
            return False
        return all(
            chosen.placements() and all(p == Placement.STORY for p in chosen.placements())
            for chosen in self.placements.values()
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def add_images(self, files: list[ImageFile]) -> int:
        """
        Append image files, ignoring anything that is not an image.

        Raises ``ValueError`` (adding nothing) if the total would exceed the
        limit. Returns the number of images added.
        """
        accepted = [f for f in files if f.is_image]
        if len(self.images) + len(accepted) > self.max_images:
            raise ValueError(f"At most {self.max_images} images can be added.")
        self.images.extend(accepted)
        return len(accepted)

    def remove_image(self, index: int) -> ImageFile:
        return self.images.pop(index)

    def move_image(self, src: int, dst: int) -> None:
        """Drag *src* onto position *dst*; the others shift to make room."""
        image = self.images.pop(src)
        self.images.insert(dst, image)

    def crop_image(self, index: int, box: CropBox, aspect: str = "1:1") -> ImageFile:
        """Replace the image at *index* with its JPEG crop."""
        cropped = ImageFile(
            filename=f"cropped-{index}.jpg",
            content_type="image/jpeg",
            data=crop_to_jpeg(self.images[index].data, box, aspect),
        )
        self.images[index] = cropped
        logger.debug("Cropped image %d to %s", index, aspect)
        return cropped

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def schedule(self, when: dt.datetime, now: Optional[dt.datetime] = None) -> dt.datetime:
        self.scheduled_at = validate_schedule_time(when, now, **window_from_settings(settings))
        return self.scheduled_at

    def clear_schedule(self) -> None:
        self.scheduled_at = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def build_submission(
        self,
        user_access_token: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> Submission:
        if not self.placements:
            raise BadRequest("Select at least one account.")
        if self.scheduled_at is not None:
            validate_schedule_time(self.scheduled_at, now, **window_from_settings(settings))

        submission = Submission(
            text="" if self.is_story_only else self.text,
            placements={k: v.model_copy() for k, v in self.placements.items()},
            accounts=[self._account(i) for i in self.selected_ids],
            user_access_token=user_access_token,
            scheduled_publish_time=self.scheduled_at,
            images=list(self.images),
        )
        submission.validate_content(self.max_images)
        return submission


def to_multipart(submission: Submission) -> tuple[dict[str, str], list[tuple]]:
    """``(data, files)`` for ``httpx.post(url, data=data, files=files)``."""
    data = {
        "text": submission.text,
        "placements": json.dumps(
            {k: v.model_dump(mode="json", exclude_none=True) for k, v in submission.placements.items()}
        ),
        "accounts": json.dumps(
            [a.model_dump(mode="json", exclude_none=True) for a in submission.accounts]
        ),
        "userAccessToken": submission.user_access_token or "",
    }
    if submission.scheduled_publish_time is not None:
        data["scheduled_publish_time"] = (
            submission.scheduled_publish_time.astimezone(dt.timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )
    files = [
        ("files", (image.filename, image.data, image.content_type))
        for image in submission.images
    ]
    return data, files
