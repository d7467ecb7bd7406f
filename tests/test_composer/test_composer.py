"""
Tests for src/composer
"""

from __future__ import annotations

import datetime as dt
import io
import json

import pytest
from PIL import Image

from src.composer import Composer, CropBox, to_multipart
from src.composer.crop import crop_to_jpeg, fit_box
from src.publish.models import Account, BadRequest, ImageFile, Placement, Platform
from src.publish.schedule import ScheduleError
from tests.fakes import make_image

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_accounts() -> list[Account]:
    return [
        Account.model_validate(
            {"id": "A", "name": "Page A", "access_token": "ta", "instagram_business_account": {"id": "IG1"}}
        ),
        Account.model_validate({"id": "B", "name": "Page B", "access_token": "tb"}),
    ]


def _make_composer() -> Composer:
    return Composer(_make_accounts())


def _png(width: int, height: int, mode: str = "RGBA") -> ImageFile:
    buf = io.BytesIO()
    Image.new(mode, (width, height), (200, 10, 10, 255) if mode == "RGBA" else (200, 10, 10)).save(
        buf, format="PNG"
    )
    return ImageFile(filename="src.png", content_type="image/png", data=buf.getvalue())


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelection:
    def test_toggle_defaults_placements(self) -> None:
        composer = _make_composer()
        assert composer.toggle_account("A") is True
        assert composer.toggle_account("B") is True

        assert composer.placements["A"].facebook == Placement.FEED
        assert composer.placements["A"].instagram == Placement.FEED
        assert composer.placements["B"].instagram is None

    def test_toggle_twice_deselects(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        assert composer.toggle_account("A") is False
        assert "A" not in composer.placements

    def test_unknown_account(self) -> None:
        with pytest.raises(KeyError):
            _make_composer().toggle_account("Z")

    def test_instagram_placement_needs_linked_account(self) -> None:
        composer = _make_composer()
        composer.toggle_account("B")
        with pytest.raises(ValueError, match="no linked Instagram"):
            composer.set_placement("B", Platform.INSTAGRAM, "story")

    def test_story_only_detection(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        assert not composer.is_story_only
        composer.set_placement("A", "facebook", "story")
        composer.set_placement("A", "instagram", Placement.STORY)
        assert composer.is_story_only

    def test_account_with_no_platform_is_not_story_only(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        composer.set_placement("A", "facebook", None)
        composer.set_placement("A", "instagram", None)
        assert not composer.is_story_only


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class TestImages:
    def test_non_images_ignored(self) -> None:
        composer = _make_composer()
        added = composer.add_images([make_image("a.jpg"), make_image("notes.txt", "text/plain")])
        assert added == 1
        assert [i.filename for i in composer.images] == ["a.jpg"]

    def test_over_limit_adds_nothing(self) -> None:
        composer = _make_composer()
        composer.add_images([make_image(f"{i}.jpg") for i in range(8)])
        with pytest.raises(ValueError, match="At most 10"):
            composer.add_images([make_image(f"x{i}.jpg") for i in range(3)])
        assert len(composer.images) == 8

    def test_move_image_reorders(self) -> None:
        composer = _make_composer()
        composer.add_images([make_image(f"{n}.jpg") for n in "abcd"])
        composer.move_image(0, 2)
        assert [i.filename for i in composer.images] == ["b.jpg", "c.jpg", "a.jpg", "d.jpg"]

    def test_remove_image(self) -> None:
        composer = _make_composer()
        composer.add_images([make_image(f"{n}.jpg") for n in "ab"])
        composer.remove_image(0)
        assert [i.filename for i in composer.images] == ["b.jpg"]

    def test_crop_replaces_in_place_as_jpeg(self) -> None:
        composer = _make_composer()
        composer.add_images([make_image("first.jpg"), _png(400, 300)])

        cropped = composer.crop_image(1, CropBox(0, 0, 400, 300), "4:5")

        assert composer.images[1] is cropped
        assert cropped.filename == "cropped-1.jpg"
        assert cropped.content_type == "image/jpeg"
        with Image.open(io.BytesIO(cropped.data)) as img:
            assert img.format == "JPEG"
            assert img.size == (240, 300)
        assert composer.images[0].filename == "first.jpg"


class TestCrop:
    def test_fit_box_square_is_centred(self) -> None:
        assert fit_box(CropBox(0, 0, 400, 200), "1:1", (400, 200)) == CropBox(100, 0, 200, 200)

    def test_fit_box_clamps_to_image(self) -> None:
        box = fit_box(CropBox(50, 50, 1000, 1000), "1:1", (200, 100))
        assert box.left + box.width <= 200
        assert box.top + box.height <= 100

    def test_unknown_aspect(self) -> None:
        with pytest.raises(ValueError, match="Unsupported aspect"):
            fit_box(CropBox(0, 0, 10, 10), "16:9", (10, 10))

    def test_rgba_converted(self) -> None:
        data = crop_to_jpeg(_png(100, 100).data, CropBox(0, 0, 100, 100))
        with Image.open(io.BytesIO(data)) as img:
            assert img.mode == "RGB"


# ---------------------------------------------------------------------------
# Schedule and submission
# ---------------------------------------------------------------------------


class TestSubmission:
    def test_schedule_window_enforced(self) -> None:
        composer = _make_composer()
        now = dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc)
        with pytest.raises(ScheduleError):
            composer.schedule(now + dt.timedelta(minutes=5), now)
        with pytest.raises(ScheduleError):
            composer.schedule(now + dt.timedelta(days=30), now)
        assert composer.schedule(now + dt.timedelta(hours=1), now) == now + dt.timedelta(hours=1)

    def test_no_account_selected(self) -> None:
        composer = _make_composer()
        composer.text = "hi"
        with pytest.raises(BadRequest, match="at least one account"):
            composer.build_submission()

    def test_no_content(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        with pytest.raises(BadRequest):
            composer.build_submission()

    def test_story_only_blanks_caption(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        composer.set_placement("A", "facebook", "story")
        composer.set_placement("A", "instagram", "story")
        composer.text = "caption"
        composer.add_images([make_image()])

        assert composer.build_submission().text == ""

    def test_only_selected_accounts_in_list_order(self) -> None:
        composer = _make_composer()
        composer.toggle_account("B")
        composer.toggle_account("A")
        composer.text = "x"
        sub = composer.build_submission("USER")
        assert [a.id for a in sub.accounts] == ["A", "B"]
        assert sub.user_access_token == "USER"

    def test_to_multipart_field_names(self) -> None:
        composer = _make_composer()
        composer.toggle_account("A")
        composer.text = "hello"
        composer.add_images([make_image("1.jpg"), make_image("2.jpg")])
        composer.scheduled_at = dt.datetime(2030, 1, 1, 12, tzinfo=dt.timezone.utc)
        sub = composer.build_submission("USER", now=dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc))

        data, files = to_multipart(sub)

        assert set(data) == {"text", "placements", "accounts", "userAccessToken", "scheduled_publish_time"}
        assert data["scheduled_publish_time"] == "2030-01-01T12:00:00Z"
        assert json.loads(data["placements"]) == {"A": {"facebook": "feed", "instagram": "feed"}}
        accounts = json.loads(data["accounts"])
        assert accounts[0]["access_token"] == "ta"
        assert accounts[0]["instagram_business_account"]["id"] == "IG1"
        assert [f[0] for f in files] == ["files", "files"]
        assert [f[1][0] for f in files] == ["1.jpg", "2.jpg"]

    def test_to_multipart_omits_schedule_when_immediate(self) -> None:
        composer = _make_composer()
        composer.toggle_account("B")
        composer.text = "now"
        data, files = to_multipart(composer.build_submission())
        assert "scheduled_publish_time" not in data
        assert files == []
