from __future__ import annotations

import logging
import os
import sqlite3
import time
from urllib.parse import quote, unquote, urlparse

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)

PUBLIC_MARKER = "/object/public/"
PUBLIC_PREFIX = "/storage/v1/object/public"

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageError(Exception):
    pass


class InvalidStorageURL(StorageError):
    pass


def content_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def object_path_for(user_id: int, filename: str) -> str:
    safe_name = secure_filename(filename) or "file"
    return f"{user_id}/{int(time.time() * 1000)}_{safe_name}"


def public_url(bucket: str, path: str, base_url: str = "") -> str:
    return f"{base_url.rstrip('/')}{PUBLIC_PREFIX}/{quote(bucket)}/{quote(path)}"


def parse_public_url(url: str) -> tuple[str, str]:
    """Split a public object URL into ``(bucket, path)``.

    Expected shape: ``<host>/storage/v1/object/public/<bucket>/<path>``.
    """
    try:
        pathname = urlparse(url).path
    except ValueError as exc:
        raise InvalidStorageURL("Invalid storage public URL") from exc

    if PUBLIC_MARKER not in pathname:
        raise InvalidStorageURL("Invalid storage public URL")

    after = pathname.split(PUBLIC_MARKER, 1)[1]
    bucket, _, object_path = after.partition("/")
    bucket = unquote(bucket)
    object_path = unquote(object_path)

    if not bucket or not object_path:
        raise InvalidStorageURL("Invalid bucket or path")
    return bucket, object_path


def upload(
    db: sqlite3.Connection,
    bucket: str,
    path: str,
    content: bytes,
    content_type: str | None = None,
    owner_id: int | None = None,
) -> str:
    if not content:
        raise StorageError("Uploaded file is empty.")

    try:
        db.execute(
            """
            INSERT INTO storage_objects (bucket, path, content, content_type, owner_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (bucket, path, content, content_type or content_type_for(path), owner_id),
        )
    except sqlite3.IntegrityError as exc:
        raise StorageError("The resource already exists") from exc

    logger.info(f"Stored object {bucket}/{path} ({len(content)} bytes)")
    return path


def download(db: sqlite3.Connection, bucket: str, path: str) -> tuple[bytes, str]:
    row = db.execute(
        "SELECT content, content_type FROM storage_objects WHERE bucket = ? AND path = ?",
        (bucket, path),
    ).fetchone()
    if not row:
        raise StorageError("Object not found")
    return row["content"], row["content_type"] or content_type_for(path)


def remove(db: sqlite3.Connection, bucket: str, path: str) -> bool:
    cursor = db.execute(
        "DELETE FROM storage_objects WHERE bucket = ? AND path = ?",
        (bucket, path),
    )
    return cursor.rowcount > 0


def filename_of(path: str) -> str:
    return os.path.basename(path) or "file"
