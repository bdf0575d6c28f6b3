from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from typing import Any

import config

ALLOWED_CONTENT_TYPES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class UploadRejected(ValueError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def public_url(file_ref: str) -> str:
    """Turn a stored reference into something the completion prompt can cite."""
    base = config.env("PUBLIC_UPLOAD_BASE_URL")
    if not base:
        return file_ref
    return f"{base.rstrip('/')}/{file_ref}"


def save_upload(
    store: Any,
    user_id: str,
    data: bytes,
    content_type: str | None,
    *,
    upload_dir: str | None = None,
    max_bytes: int | None = None,
) -> str:
    """Write an image to disk, record it, and return its opaque reference."""
    max_bytes = config.upload_max_bytes() if max_bytes is None else max_bytes
    if not data:
        raise UploadRejected("Empty upload.")
    if len(data) > max_bytes:
        raise UploadRejected(f"Upload exceeds {max_bytes} bytes.")
    suffix = ALLOWED_CONTENT_TYPES.get((content_type or "").lower())
    if suffix is None:
        raise UploadRejected("Only PNG, JPEG, WebP and GIF images are accepted.")

    base = upload_dir or config.upload_dir()
    os.makedirs(base, exist_ok=True)
    upload_id = uuid.uuid4().hex
    file_ref = f"{upload_id}{suffix}"
    with open(os.path.join(base, file_ref), "wb") as f:
        f.write(data)
    store.insert_upload(
        upload_id=upload_id,
        user_id=user_id,
        file_ref=file_ref,
        content_type=content_type,
        size_bytes=len(data),
        now=_now_utc(),
    )
    return file_ref


def delete_uploads(file_refs: list[str], *, upload_dir: str | None = None) -> None:
    base = upload_dir or config.upload_dir()
    for file_ref in file_refs:
        path = os.path.join(base, os.path.basename(file_ref))
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
