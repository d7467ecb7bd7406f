"""
Image crop for the composer (Pillow).

A crop box is fitted to one of the two aspect ratios Instagram feed accepts
without letterboxing, then re-encoded as JPEG.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from fractions import Fraction

from PIL import Image

ASPECT_RATIOS: dict[str, Fraction] = {
    "1:1": Fraction(1, 1),   # square
    "4:5": Fraction(4, 5),   # portrait
}

JPEG_QUALITY = 92


@dataclass(frozen=True)
class CropBox:
    """Crop area in source-image pixels."""

    left: int
    top: int
    width: int
    height: int


def fit_box(box: CropBox, aspect: str, image_size: tuple[int, int]) -> CropBox:
    """
    Shrink *box* around its centre to *aspect*, clamped to the image.

    Raises ``ValueError`` for an unknown aspect or an empty box.
    """
    if aspect not in ASPECT_RATIOS:
        raise ValueError(f"Unsupported aspect ratio {aspect!r}; use one of {sorted(ASPECT_RATIOS)}")
    ratio = ASPECT_RATIOS[aspect]
    img_w, img_h = image_size

    left = max(0, box.left)
    top = max(0, box.top)
    width = min(box.width, img_w - left)
    height = min(box.height, img_h - top)
    if width <= 0 or height <= 0:
        raise ValueError("Crop box lies outside the image.")

    if Fraction(width, height) > ratio:
        new_w, new_h = int(height * ratio), height
    else:
        new_w, new_h = width, int(width / ratio)
    new_w, new_h = max(1, new_w), max(1, new_h)

    return CropBox(
        left=left + (width - new_w) // 2,
        top=top + (height - new_h) // 2,
        width=new_w,
        height=new_h,
    )


def crop_to_jpeg(data: bytes, box: CropBox, aspect: str = "1:1") -> bytes:
    """Crop encoded image *data* and return JPEG bytes."""
    with Image.open(io.BytesIO(data)) as img:
        fitted = fit_box(box, aspect, img.size)
        cropped = img.crop(
            (fitted.left, fitted.top, fitted.left + fitted.width, fitted.top + fitted.height)
        )
        if cropped.mode != "RGB":
            cropped = cropped.convert("RGB")
        out = io.BytesIO()
        cropped.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()
