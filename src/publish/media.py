"""
Media host uploads (Cloudinary).

Graph API calls take public image URLs, so every image in a submission is
uploaded first and replaced by its ``secure_url``.

  POST https://api.cloudinary.com/v1_1/{cloud}/image/upload
       file=<bytes>  upload_preset=…                      (unsigned)
       file=<bytes>  api_key=… timestamp=… signature=…    (signed)

Uploads run concurrently; the returned URLs keep submission order.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Optional

import httpx

from src.publish.models import ImageFile

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Raised when an image cannot be uploaded to the media host."""


def sign_params(params: dict[str, str], api_secret: str) -> str:
    """Cloudinary request signature: SHA-1 of the sorted params plus the secret."""
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] != "")
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryUploader:
    """
    Upload images to Cloudinary and return their public URLs.

    Configure either ``upload_preset`` (unsigned) or ``api_key`` +
    ``api_secret`` (signed). Values default to the app settings.
    """

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        upload_preset: Optional[str] = None,
        folder: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        from config.settings import settings

        self.cloud_name = cloud_name if cloud_name is not None else settings.cloudinary_cloud_name
        self.api_key = api_key if api_key is not None else settings.cloudinary_api_key
        self.api_secret = api_secret if api_secret is not None else settings.cloudinary_api_secret
        self.upload_preset = (
            upload_preset if upload_preset is not None else settings.cloudinary_upload_preset
        )
        self.folder = folder if folder is not None else settings.cloudinary_folder
        self._http = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.http_timeout,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/upload"

    def is_configured(self) -> bool:
        return bool(self.cloud_name) and bool(
            self.upload_preset or (self.api_key and self.api_secret)
        )

    def _form(self) -> dict[str, str]:
        form: dict[str, str] = {}
        if self.folder:
            form["folder"] = self.folder
        if self.upload_preset:
            form["upload_preset"] = self.upload_preset
            return form
        form["timestamp"] = str(int(time.time()))
        form["signature"] = sign_params(form, self.api_secret)
        form["api_key"] = self.api_key
        return form

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload(self, image: ImageFile) -> str:
        """Upload one image and return its ``secure_url``."""
        if not self.is_configured():
            raise UploadError(
                "Cloudinary not configured: set CLOUDINARY_CLOUD_NAME and either "
                "CLOUDINARY_UPLOAD_PRESET or CLOUDINARY_API_KEY/CLOUDINARY_API_SECRET."
            )
        files = {"file": (image.filename, image.data, image.content_type)}
        try:
            resp = await self._http.post(self.endpoint, data=self._form(), files=files)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise UploadError(
                f"Upload of {image.filename!r} failed: HTTP {exc.response.status_code} "
                f"{exc.response.text[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise UploadError(f"Upload of {image.filename!r} failed: {exc}") from exc

        url = payload.get("secure_url")
        if not url:
            raise UploadError(f"Upload of {image.filename!r} returned no secure_url.")
        logger.info("Uploaded %s → %s", image.filename, url)
        return url

    async def upload_all(self, images: list[ImageFile]) -> list[str]:
        """
        Upload every image concurrently.

        URLs are written back by original index, so the result follows the
        submission order whatever order the uploads finish in. Any failure
        raises ``UploadError``.
        """
        urls: list[Optional[str]] = [None] * len(images)

        async def _upload_at(index: int, image: ImageFile) -> None:
            urls[index] = await self.upload(image)

        outcomes = await asyncio.gather(
            *(_upload_at(i, image) for i, image in enumerate(images)),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if isinstance(outcome, UploadError):
                    raise outcome
                raise UploadError(str(outcome)) from outcome
        return [url for url in urls if url is not None]

    # ------------------------------------------------------------------
    # Context manager / cleanup
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "CloudinaryUploader":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
