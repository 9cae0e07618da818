"""Thin blob-store adapter over Django's storage API.

The order engine only keeps the returned URL/path; it never reads the bytes
back. Storage failures surface as ``DependencyError``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass

from django.conf import settings
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import DependencyError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class StoredBlob:
    path: str
    url: str


def decode_data_url(data_url: str) -> tuple[bytes, str]:
    """Split a ``data:image/png;base64,...`` payload into bytes and content type."""
    header, sep, encoded = (data_url or "").partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise ValidationError({"signature": "Signature must be a base64 data URL."})
    content_type = header[len("data:"):].split(";", 1)[0] or "image/png"
    try:
        return base64.b64decode(encoded, validate=True), content_type
    except (binascii.Error, ValueError) as exc:
        raise ValidationError({"signature": "Signature is not valid base64."}) from exc


def _check_image(content: bytes, content_type: str, field: str) -> str:
    extension = ALLOWED_IMAGE_TYPES.get(content_type)
    if extension is None:
        raise ValidationError({field: f"Unsupported image type: {content_type}."})
    if not content:
        raise ValidationError({field: "Image is empty."})
    if len(content) > settings.REPAIRS_MAX_UPLOAD_BYTES:
        raise ValidationError({field: f"Image exceeds {settings.REPAIRS_MAX_UPLOAD_BYTES} bytes."})
    return extension


def store_image(content: bytes, *, content_type: str, folder: str, field: str = "image") -> StoredBlob:
    extension = _check_image(content, content_type, field)
    stamp = timezone.now().strftime("%Y%m%d%H%M%S")
    name = f"{settings.REPAIRS_BLOB_PREFIX}/{folder.strip('/')}/{stamp}-{uuid.uuid4().hex[:12]}.{extension}"
    try:
        path = default_storage.save(name, ContentFile(content))
        url = default_storage.url(path)
    except OSError as exc:
        logger.exception("blob_store_write_failed")
        raise DependencyError("Could not store the image.") from exc
    return StoredBlob(path=path, url=url)


def store_uploaded_file(uploaded, *, folder: str, field: str = "photos") -> StoredBlob:
    content_type = getattr(uploaded, "content_type", None) or "application/octet-stream"
    if uploaded.size is not None and uploaded.size > settings.REPAIRS_MAX_UPLOAD_BYTES:
        raise ValidationError({field: f"Image exceeds {settings.REPAIRS_MAX_UPLOAD_BYTES} bytes."})
    return store_image(uploaded.read(), content_type=content_type, folder=folder, field=field)


def delete_blob(path: str) -> None:
    try:
        default_storage.delete(path)
    except OSError as exc:
        logger.exception("blob_store_delete_failed")
        raise DependencyError("Could not delete the stored image.") from exc
