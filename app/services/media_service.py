import asyncio
import mimetypes
import secrets
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.media_store import LocalMediaStore, MediaStoreError, get_media_store

logger = get_logger("media_service")

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}
KNOWN_EXTENSIONS = frozenset(
    {"jpg", "jpeg", "png", "gif", "webp", "mp3", "wav", "ogg", "opus", "mp4", "webm", "pdf", "doc", "docx"}
)
UNKNOWN_EXTENSION = "bin"


class MediaFetchError(Exception):
    pass


@dataclass
class MaterializedMedia:
    url: str
    durable: bool
    storage_key: Optional[str] = None
    error: Optional[str] = None


def _suffix(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    suffix = PurePosixPath(path).suffix.lstrip(".").lower()
    return suffix if suffix in KNOWN_EXTENSIONS else None


def guess_extension(content_type: Optional[str], source_url: str, suggested_name: Optional[str] = None) -> str:
    """Extension from the content-type, then the source URL path, then the suggested name."""
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]
        guessed = mimetypes.guess_extension(mime)
        if guessed and guessed.lstrip(".") in KNOWN_EXTENSIONS:
            return guessed.lstrip(".")

    try:
        url_path = urlparse(source_url).path
    except ValueError:
        url_path = None
    return _suffix(url_path) or _suffix(suggested_name) or UNKNOWN_EXTENSION


def build_storage_key(media_type: str, extension: str) -> str:
    return f"{media_type}/{int(time.time() * 1000)}_{secrets.token_hex(4)}.{extension}"


async def download_media(url: str, *, max_bytes: int, timeout: float) -> tuple[bytes, str]:
    """Stream a remote media file into memory. Raises MediaFetchError on any failure."""
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        raise MediaFetchError(f"unsupported_scheme:{parsed.scheme}")

    data = bytearray()
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise MediaFetchError(f"http_status:{response.status_code}")
                content_type = response.headers.get("content-type") or "application/octet-stream"
                async for chunk in response.aiter_bytes():
                    if not chunk:
                        continue
                    data.extend(chunk)
                    if len(data) > max_bytes:
                        raise MediaFetchError("too_large")
    except httpx.HTTPError as exc:
        raise MediaFetchError(f"download_failed:{exc}") from exc

    return bytes(data), content_type


async def materialize(
    source_url: str,
    media_type: str,
    suggested_name: Optional[str] = None,
    *,
    store: Optional[LocalMediaStore] = None,
) -> MaterializedMedia:
    """Copy a remote media file into durable storage and return its durable URL.

    On any failure the origin URL is returned with ``durable=False``; losing the
    durable copy must never lose the message.
    """
    store = store or get_media_store()
    if store.owns_url(source_url):
        return MaterializedMedia(url=source_url, durable=True)

    timeout = settings.http_timeout_seconds
    context = {"source_url": source_url, "media_type": media_type, "suggested_name": suggested_name}
    try:
        if not store.signing_secret:
            raise MediaStoreError("MEDIA_SIGNING_SECRET not configured")
        data, content_type = await asyncio.wait_for(
            download_media(source_url, max_bytes=settings.media_max_bytes, timeout=timeout),
            timeout=timeout,
        )
        key = build_storage_key(media_type, guess_extension(content_type, source_url, suggested_name))
        store.put_bytes(key, data, content_type)
        url = store.signed_url(key)
    except (MediaFetchError, MediaStoreError) as exc:
        logger.warning("Media materialization failed, keeping origin URL", extra={"context": {**context, "error": str(exc)}})
        return MaterializedMedia(url=source_url, durable=False, error=str(exc))
    except asyncio.TimeoutError:
        logger.warning("Media materialization timed out, keeping origin URL", extra={"context": context})
        return MaterializedMedia(url=source_url, durable=False, error="timeout")

    logger.info("Media materialized", extra={"context": {**context, "storage_key": key, "size_bytes": len(data)}})
    return MaterializedMedia(url=url, durable=True, storage_key=key)
