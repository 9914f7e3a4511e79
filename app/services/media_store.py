"""Durable media storage on the local filesystem, published through signed URLs."""

import hashlib
import hmac
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("media_store")


class MediaStoreError(Exception):
    pass


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class LocalMediaStore:
    def __init__(
        self,
        root_dir: str,
        *,
        signing_secret: Optional[str],
        public_base_url: str,
        default_ttl_seconds: int,
        extra_hosts: Optional[list[str]] = None,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.signing_secret = signing_secret
        self.public_base_url = public_base_url.rstrip("/")
        self.default_ttl_seconds = default_ttl_seconds
        self.extra_hosts = [host.lower() for host in (extra_hosts or [])]

    @property
    def media_prefix(self) -> str:
        return f"{self.public_base_url}/media/"

    def resolve_path(self, key: str) -> Path:
        base_dir = self.root_dir.resolve()
        target = (base_dir / _normalize_media_path(key)).resolve()
        if base_dir not in target.parents:
            raise MediaStoreError(f"Invalid media path: {key}")
        return target

    def put_bytes(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        target = self.resolve_path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise MediaStoreError(f"write_failed:{exc}") from exc
        logger.debug(f"Stored media {key} ({len(data)} bytes, {content_type})")

    def signed_url(self, key: str, *, ttl_seconds: Optional[int] = None) -> str:
        if not self.signing_secret:
            raise MediaStoreError("MEDIA_SIGNING_SECRET not configured")
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires = int(time.time()) + max(int(ttl), 60)
        normalized_path = _normalize_media_path(key)
        signature = _sign_media_path(normalized_path, expires, self.signing_secret)
        return f"{self.media_prefix}{quote(normalized_path, safe='/')}?expires={expires}&sig={signature}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        if not self.signing_secret:
            logger.error("MEDIA_SIGNING_SECRET not configured")
            return False
        if not signature or expires < int(time.time()):
            return False
        expected = _sign_media_path(_normalize_media_path(key), expires, self.signing_secret)
        return hmac.compare_digest(expected, signature)

    def owns_url(self, url: str) -> bool:
        """True when the URL already points at durable storage."""
        if not url:
            return False
        if url.startswith(self.media_prefix):
            return True
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            return False
        return bool(host) and any(host == h or host.endswith(f".{h}") for h in self.extra_hosts)


_media_store: Optional[LocalMediaStore] = None


def get_media_store() -> LocalMediaStore:
    global _media_store
    if _media_store is None:
        _media_store = LocalMediaStore(
            settings.media_storage_dir,
            signing_secret=settings.media_signing_secret,
            public_base_url=settings.public_base_url,
            default_ttl_seconds=settings.media_url_ttl_seconds,
            extra_hosts=settings.durable_hosts,
        )
    return _media_store
