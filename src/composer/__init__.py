"""
Composer — builds publish submissions from operator choices.
"""

from src.composer.crop import ASPECT_RATIOS, CropBox, crop_to_jpeg
from src.composer.state import Composer, to_multipart

__all__ = ["Composer", "to_multipart", "CropBox", "crop_to_jpeg", "ASPECT_RATIOS"]
